import logging
from typing import Optional

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

import crud
from database import get_db
from errors import AuthorizationError

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_user_id(token: str, secret: Optional[str], audience: Optional[str] = None) -> Optional[str]:
    """Return the ``sub`` of a valid HS256 access token, or None."""
    if not secret:
        logger.error("JWT_SECRET not set, rejecting bearer token")
        return None

    options = {} if audience else {"verify_aud": False}
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"], audience=audience, options=options)
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        return None
    return payload.get("sub")


def get_current_user_id(request: Request) -> str:
    token = _bearer_token(request)
    if not token:
        raise AuthorizationError("Unauthorized", status_code=401)

    settings = request.app.state.settings
    user_id = decode_user_id(token, settings.jwt_secret, settings.jwt_audience)
    if not user_id:
        raise AuthorizationError("Unauthorized", status_code=401)
    return user_id


def require_admin(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)) -> str:
    if not crud.is_admin(db, user_id):
        raise AuthorizationError("Admin access required", status_code=403)
    return user_id
