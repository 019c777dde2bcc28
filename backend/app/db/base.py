from app.db.base_class import Base
from app.models.attempt import Attempt
from app.models.catalog import Assessment, Enrollment
from app.models.grade import Grade


__all__ = [
    'Assessment',
    'Attempt',
    'Base',
    'Enrollment',
    'Grade',
]
