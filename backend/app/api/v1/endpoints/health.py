import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db


logger = logging.getLogger(__name__)

router = APIRouter(tags=['health'])


@router.get('/health')
def health(db: Session = Depends(get_db)) -> dict[str, str]:
    try:
        db.execute(text('SELECT 1'))
        database = 'connected'
    except SQLAlchemyError as exc:
        logger.warning('Health check could not reach the database: %s', exc)
        database = 'unavailable'
    return {'status': 'ok', 'database': database, 'environment': settings.APP_ENV}
