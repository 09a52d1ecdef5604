import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson.objectid import ObjectId
from bson.errors import InvalidId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import db
from errors import Forbidden, NotAuthenticated

JWT_ALGO = "HS256"
TOKEN_TTL = timedelta(days=7)
PBKDF2_ROUNDS = 120_000

# auto_error=False so a missing header is a 401 rather than FastAPI's default
security = HTTPBearer(auto_error=False)


def jwt_secret() -> str:
    return os.getenv("JWT_SECRET", "devsecret")


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, expected = (password_hash or "").partition("$")
    if not salt or not expected:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return hmac.compare_digest(digest, expected)


def create_token(user_id: str, is_admin: bool) -> str:
    exp = datetime.now(timezone.utc) + TOKEN_TTL
    payload = {"sub": user_id, "isAdmin": bool(is_admin), "exp": exp}
    return jwt.encode(payload, jwt_secret(), algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, jwt_secret(), algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise NotAuthenticated("Not authorized, token failed")


def load_user(user_id: str) -> Optional[dict]:
    try:
        return db["user"].find_one({"_id": ObjectId(user_id)})
    except (InvalidId, TypeError):
        return None


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise NotAuthenticated()
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise NotAuthenticated("Invalid token payload")
    user = load_user(user_id)
    if not user:
        raise NotAuthenticated("User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise Forbidden("Admin only")
    return user
