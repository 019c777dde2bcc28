from typing import Any

from fastapi import status


class AttemptEngineError(Exception):
    """
    Base class for business-rule violations raised by the attempt engine.

    Each subclass maps to one HTTP status. `error_code` is a stable machine label
    the client uses to pick a message; `context` carries extra fields the client
    needs to render it (remaining attempts, the id of an existing attempt, ...).
    """

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_code: str = 'BAD_REQUEST'

    def __init__(self, message: str, *, error_code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            'success': False,
            'message': self.message,
            'error_code': self.error_code,
        }
        payload.update(self.context)
        return payload


class NotFoundError(AttemptEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = 'NOT_FOUND'


class NotEligibleError(AttemptEngineError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = 'NOT_ELIGIBLE'


class AttemptFinalizedError(AttemptEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = 'ATTEMPT_FINALIZED'


class ForbiddenError(AttemptEngineError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = 'FORBIDDEN'


class AlreadyGradedError(AttemptEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = 'ALREADY_GRADED'


class PayloadValidationError(AttemptEngineError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_code = 'VALIDATION_ERROR'


class StorageError(AttemptEngineError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = 'STORAGE_ERROR'


class ConcurrentModificationError(AttemptEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = 'CONCURRENT_MODIFICATION'
