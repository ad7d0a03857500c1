import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
import structlog

from errors import Forbidden, Unauthorized
from schemas import Role
from settings import Settings

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)

PBKDF2_ROUNDS = 120_000


class Identity(BaseModel):
    user_id: str
    role: Role

    @property
    def oid(self) -> ObjectId:
        return ObjectId(self.user_id)

    @property
    def is_seller(self) -> bool:
        return self.role == Role.shopkeeper


# ----------------------- Passwords -----------------------

def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"pbkdf2_sha256${PBKDF2_ROUNDS}${salt}${digest}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    try:
        scheme, rounds, salt, digest = stored.split("$")
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(rounds)).hex()
    return hmac.compare_digest(candidate, digest)


# ----------------------- Tokens -----------------------

def create_token(user_id: str, role: str, settings: Settings) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=settings.jwt_expire_days)
    payload = {"id": user_id, "role": role, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


# ----------------------- Dependencies -----------------------

def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise Unauthorized()
    settings: Settings = request.app.state.settings
    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("id")
    role = payload.get("role")
    if not user_id or not ObjectId.is_valid(str(user_id)) or role not in (Role.customer.value, Role.shopkeeper.value):
        raise Unauthorized("Invalid token payload")
    return Identity(user_id=user_id, role=role)


def require_role(role: Role):
    def checker(user: Identity = Depends(get_current_user)) -> Identity:
        if user.role != role:
            logger.info("role_rejected", user_id=user.user_id, role=user.role.value, required=role.value)
            raise Forbidden()
        return user

    return checker
