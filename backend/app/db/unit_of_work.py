from collections.abc import Callable
import logging
from typing import TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import AttemptFinalizedError, ConcurrentModificationError


logger = logging.getLogger(__name__)

T = TypeVar('T')


def run_in_transaction(db: Session, operation: Callable[[], T], *, retries: int = 1) -> T:
    """
    Run `operation` and commit.

    A lost-update race on a versioned row is retried from scratch `retries` times
    before being reported. An `AttemptFinalizedError` still commits: the expiry
    sweep finalizes the attempt before the request itself is rejected, and that
    finalization has to persist.
    """
    for run in range(retries + 1):
        try:
            result = operation()
            db.commit()
            return result
        except AttemptFinalizedError:
            try:
                db.commit()
            except StaleDataError:
                db.rollback()
            raise
        except StaleDataError as exc:
            db.rollback()
            if run >= retries:
                raise ConcurrentModificationError(
                    'The attempt was modified by another request, please retry',
                ) from exc
            logger.info('Retrying after concurrent attempt update (run %s)', run + 1)
        except Exception:
            db.rollback()
            raise
    raise AssertionError('unreachable')
