from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from app.core.config import settings


ROLE_ADMIN = 'admin'
ROLE_TUTOR = 'tutor'
ROLE_STUDENT = 'student'


class TokenDecodeError(Exception):
    pass


@dataclass(frozen=True)
class Principal:
    id: UUID
    is_admin: bool = False
    is_tutor: bool = False
    is_student: bool = True

    @property
    def is_staff(self) -> bool:
        return self.is_admin or self.is_tutor


def create_access_token(subject: str, roles: list[str] | None = None) -> str:
    data: dict[str, Any] = {
        'sub': subject,
        'token_type': 'access',
        'roles': list(roles or [ROLE_STUDENT]),
        'exp': datetime.now(UTC) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(data, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise TokenDecodeError('Invalid access token') from exc

    if payload.get('token_type') != 'access':
        raise TokenDecodeError('Unexpected token type for access token')
    return payload


def principal_from_claims(payload: dict[str, Any]) -> Principal:
    subject = payload.get('sub')
    if not subject:
        raise TokenDecodeError('Invalid access token subject')
    try:
        user_id = UUID(str(subject))
    except ValueError as exc:
        raise TokenDecodeError('Invalid access token subject') from exc

    roles = {str(role) for role in payload.get('roles') or []}
    return Principal(
        id=user_id,
        is_admin=ROLE_ADMIN in roles,
        is_tutor=ROLE_TUTOR in roles,
        is_student=ROLE_STUDENT in roles,
    )
