from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.core.security import Principal, TokenDecodeError, decode_access_token, principal_from_claims


# Tokens are issued by the platform's auth service; this API only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl='/api/v1/auth/login')


def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    try:
        return principal_from_claims(decode_access_token(token))
    except TokenDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid access token') from exc


def require_staff(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Insufficient role permissions',
        )
    return principal
