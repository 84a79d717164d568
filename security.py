import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from database import get_db

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

PBKDF2_ITERATIONS = 200_000


def get_password_hash(password: str) -> str:
    """Hash a password with salted PBKDF2-SHA256 (salt$digest)"""
    salt = os.urandom(16).hex()
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS).hex()
    return f"{salt}${digest}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    try:
        salt, digest = hashed_password.split("$", 1)
    except (AttributeError, ValueError):
        return False
    candidate = hashlib.pbkdf2_hmac(
        "sha256", plain_password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS
    ).hex()
    return hmac.compare_digest(candidate, digest)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def create_user_token(user: Dict[str, Any]) -> str:
    return create_access_token(
        data={"sub": user["id"], "email": user["email"], "name": user.get("name"), "role": user["role"]},
        expires_delta=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Dict[str, Any]:
    """Verify JWT bearer token and return its claims"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    try:
        payload = jwt.decode(credentials.credentials, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )
    return payload


def get_current_user(claims: Dict[str, Any] = Depends(verify_token), db=Depends(get_db)) -> Dict[str, Any]:
    """Resolve the token subject to its stored user. Role comes from storage, not the token."""
    user = db.get_user(claims["sub"])
    if not user:
        logger.warning(f"[AUTH] Token subject {claims['sub']} no longer exists")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed. Invalid or expired token.",
        )
    return {**user, "_claims": claims}


def ensure_bootstrap_admin(db) -> None:
    """Create the admin account from ADMIN_EMAIL / ADMIN_PASSWORD if it does not exist yet."""
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        return
    email = config.ADMIN_EMAIL.strip().lower()
    if db.get_user_by_email(email):
        return
    db.create_user({
        "email": email,
        "name": config.ADMIN_NAME,
        "role": "admin",
        "password": get_password_hash(config.ADMIN_PASSWORD),
    })
    logger.info(f"✅ Bootstrap admin created: {email}")
