from app.services import (
    attempt_service,
    catalog_service,
    grade_service,
    manual_grading_service,
    scoring_service,
    storage_service,
    timer_service,
)

__all__ = [
    'attempt_service',
    'catalog_service',
    'grade_service',
    'manual_grading_service',
    'scoring_service',
    'storage_service',
    'timer_service',
]
