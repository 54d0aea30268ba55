from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import logging
import uuid

from jose import jwt, JWTError

from storefront.config import get_settings
from storefront.models.user import User, get_db
from storefront.services.authorization import Caller

logger = logging.getLogger(__name__)

http_bearer = HTTPBearer(auto_error=False)


# ===== JWT helpers =====
def create_access_token(subject, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": str(subject), "exp": expire, "iat": now, "nbf": now, "jti": uuid.uuid4().hex}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_subject(token: str) -> int:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    sub = payload.get("sub")
    if not sub or not str(sub).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return int(sub)


def get_current_caller(
    token: HTTPAuthorizationCredentials = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> Caller:
    """Resolve the caller once per request; the core never looks at headers again."""
    if not token or not token.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = decode_subject(token.credentials)
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning("Token for unknown user id %s", user_id)
        raise HTTPException(status_code=401, detail="Invalid user")
    return Caller(user_id=user.id, role=user.role)
