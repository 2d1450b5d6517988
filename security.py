import hashlib
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import settings
from database import get_db, now, serialize_doc

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PRIVATE_FIELDS = (
    "password_hash",
    "verification_token",
    "verification_token_expire",
    "reset_password_token",
    "reset_password_expire",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = now() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def make_one_time_token() -> Tuple[str, str]:
    """Return (raw, digest). The raw value is emailed, only the digest is stored."""
    raw = secrets.token_hex(20)
    return raw, hash_one_time_token(raw)


def hash_one_time_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    for field in PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def _load_user(database: Database, token: str) -> Dict[str, Any]:
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = database["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User no longer exists")
    return public_user(user)


# Dependencies

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    database: Database = Depends(get_db),
) -> Dict[str, Any]:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _load_user(database, token)


def get_optional_user(
    authorization: Optional[str] = Header(default=None),
    database: Database = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    """Attach the user when a valid token is sent; guests pass through."""
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return _load_user(database, token)
    except HTTPException:
        return None


def require_admin(current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user
