from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local test runs).
JSONDocument = JSON().with_variant(JSONB(), 'postgresql')


class Base(DeclarativeBase):
    pass
