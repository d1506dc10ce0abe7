from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from database import get_db
from models import User
from config import ACCESS_TOKEN_EXPIRE_MINUTES, INTERNAL_API_KEY, SECRET_KEY as _CONFIGURED_SECRET
import logging
import secrets

logger = logging.getLogger(__name__)


_raw_secret = _CONFIGURED_SECRET
if not _raw_secret:
    _raw_secret = secrets.token_urlsafe(64)
    logging.warning("SECRET_KEY was not set; generated a temporary secret. Configure SECRET_KEY for stable auth tokens.")

SECRET_KEY = _raw_secret
ALGORITHM = "HS256"


security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create a JWT access token. ``sub`` carries the user's email."""
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    """Verify and decode a JWT token."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    try:
        return db.query(User).filter(User.email == email).first()
    except Exception as e:
        logger.error(f"Error querying user {email}: {e}")
        raise


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """Get current user from the bearer token, returning None if not authenticated."""
    if not credentials:
        return None
    payload = verify_token(credentials.credentials)
    if payload is None:
        return None
    email = payload.get("sub")
    if not email:
        return None
    return get_user_by_email(db, email)


def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Require authentication - raises exception if not authenticated."""
    user = get_current_user(credentials, db)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user"
        )

    return user


def require_role(required_role: str):
    """Decorator factory to require specific role."""
    def role_dependency(
        user: User = Depends(require_auth)
    ) -> User:
        role_hierarchy = {"owner": 4, "admin": 3, "moderator": 2, "user": 1}
        user_level = role_hierarchy.get(user.role, 0)
        required_level = role_hierarchy.get(required_role, 999)

        if user_level < required_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions"
            )
        return user
    return role_dependency


require_admin = require_role("admin")


def require_internal_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Shared bearer used by the external scheduler for /internal routes."""
    if not INTERNAL_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API is not configured"
        )
    if not credentials or not secrets.compare_digest(credentials.credentials, INTERNAL_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
