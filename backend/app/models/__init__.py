from app.models.attempt import Attempt
from app.models.catalog import Assessment, Enrollment
from app.models.grade import Grade

__all__ = [
    'Assessment',
    'Attempt',
    'Enrollment',
    'Grade',
]
