from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import JWT_ALGORITHM, JWT_SECRET
from .errors import Unauthenticated

security = HTTPBearer(auto_error=False)


def verify_identity(token: str) -> str:
    """Return the subject id carried by a bearer token; fails closed."""
    if not token:
        raise Unauthenticated("Missing bearer token")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthenticated("Invalid token") from exc
    subject_id = payload.get("sub")
    if not isinstance(subject_id, str) or not subject_id:
        raise Unauthenticated("Invalid authentication credentials")
    return subject_id


def require_subject(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None:
        raise Unauthenticated("Missing bearer token")
    return verify_identity(credentials.credentials)


def optional_subject(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    # A token that is present must still be valid.
    if credentials is None:
        return None
    return verify_identity(credentials.credentials)
