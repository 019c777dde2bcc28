import os
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL', 'sqlite://')

os.environ.setdefault('DATABASE_URL', TEST_DATABASE_URL)
os.environ.setdefault('JWT_SECRET_KEY', 'test-access-secret-32-chars-min-0001')
os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('CORS_ORIGINS', 'http://localhost:3001')
os.environ.setdefault('LOG_LEVEL', 'DEBUG')

from app.core.security import ROLE_ADMIN, ROLE_STUDENT, ROLE_TUTOR, create_access_token
from app.db.base import Base
from app.db.session import get_db
from app.main import app
from app.models.attempt import Attempt
from app.models.catalog import Assessment, Enrollment
from app.services.storage_service import LocalBlobStorage, get_blob_storage


if TEST_DATABASE_URL.startswith('sqlite'):
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # pysqlite manages transactions itself and breaks SAVEPOINT; hand control back to SQLAlchemy.
    @event.listens_for(engine, 'connect')
    def _sqlite_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _sqlite_begin(connection) -> None:
        connection.exec_driver_sql('BEGIN')

else:
    engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)

TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

ADMIN_ID = uuid.UUID('00000000-0000-0000-0000-00000000a001')
TUTOR_ID = uuid.UUID('00000000-0000-0000-0000-00000000b001')
OWNER_ID = uuid.UUID('00000000-0000-0000-0000-00000000c001')
LEARNER_ID = uuid.UUID('00000000-0000-0000-0000-00000000d001')
OTHER_LEARNER_ID = uuid.UUID('00000000-0000-0000-0000-00000000d002')
COURSE_ID = uuid.UUID('00000000-0000-0000-0000-00000000e001')


@pytest.fixture(autouse=True)
def setup_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield

    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def upload_root(tmp_path) -> str:
    return str(tmp_path / 'uploads')


@pytest.fixture()
def client(db_session: Session, upload_root: str) -> Generator[TestClient, None, None]:
    def _override_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_blob_storage] = lambda: LocalBlobStorage(upload_root)

    with TestClient(app) as api_client:
        yield api_client

    app.dependency_overrides.clear()


def auth_header(user_id: uuid.UUID, *roles: str) -> dict[str, str]:
    token = create_access_token(str(user_id), roles=list(roles) or [ROLE_STUDENT])
    return {'Authorization': f'Bearer {token}'}


def learner_headers(user_id: uuid.UUID = LEARNER_ID) -> dict[str, str]:
    return auth_header(user_id, ROLE_STUDENT)


def tutor_headers() -> dict[str, str]:
    return auth_header(TUTOR_ID, ROLE_TUTOR)


def admin_headers() -> dict[str, str]:
    return auth_header(ADMIN_ID, ROLE_ADMIN)


def owner_headers() -> dict[str, str]:
    return auth_header(OWNER_ID, ROLE_STUDENT)


def mcq_question(question_id: str = 'q1', *, correct: int = 1, marks: float = 10, options: int = 4, **extra) -> dict:
    return {
        'id': question_id,
        'type': 'mcq',
        'prompt': f'Pick the right option for {question_id}',
        'options': [{'text': f'Option {index}', 'is_correct': index == correct} for index in range(options)],
        'positive_marks': marks,
        **extra,
    }


def subjective_question(question_id: str = 's1', *, marks: float = 10) -> dict:
    return {'id': question_id, 'type': 'subjective', 'prompt': 'Explain your reasoning', 'marks': marks}


def file_question(question_id: str = 'f1', *, marks: float = 5, type_label: str = 'file_upload') -> dict:
    return {'id': question_id, 'type': type_label, 'prompt': 'Upload your work', 'marks': marks, 'file_type': 'pdf'}


def create_assessment(
    db: Session,
    *,
    questions: list[dict] | None = None,
    kind: str = 'exam',
    enroll: tuple[uuid.UUID, ...] = (LEARNER_ID,),
    **overrides,
) -> Assessment:
    values = {
        'kind': kind,
        'course_id': COURSE_ID,
        'owner_id': OWNER_ID,
        'title': f'Sample {kind}',
        'sections': [
            {'id': 'sec-1', 'title': 'Section 1', 'questions': questions if questions is not None else [mcq_question()]}
        ],
        'duration_minutes': 30,
        'is_published': True,
    }
    values.update(overrides)
    assessment = Assessment(**values)
    db.add(assessment)
    for user_id in enroll:
        if not db.query(Enrollment).filter_by(course_id=values['course_id'], user_id=user_id).first():
            db.add(Enrollment(course_id=values['course_id'], user_id=user_id, is_enrolled=True))
    db.commit()
    return assessment


def age_attempt(db: Session, attempt_id: uuid.UUID | str, *, minutes: int) -> Attempt:
    attempt = db.get(Attempt, uuid.UUID(str(attempt_id)))
    attempt.started_at = datetime.now(UTC) - timedelta(minutes=minutes)
    db.commit()
    return attempt
