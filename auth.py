"""Admin authentication: bcrypt passwords and bearer JWTs."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from jose import jwt, JWTError
from passlib.context import CryptContext
from pymongo.database import Database

from config import Settings, get_settings
from database import create_document, get_db, to_object_id
from errors import ForbiddenError, UnauthorizedError
from schemas import Role, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_token(user: dict, settings: Settings) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", Role.customer.value),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def authenticate(db: Database, email: str, password: str) -> Optional[dict]:
    user = db["user"].find_one({"email": email.strip().lower(), "is_active": True})
    if not user or not verify_password(password, user.get("password_hash", "")):
        return None
    return user


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Authorization header must be a bearer token")
    try:
        payload = jwt.decode(token.strip(), settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")
    oid = to_object_id(payload.get("sub", ""))
    user = db["user"].find_one({"_id": oid, "is_active": True}) if oid else None
    if not user:
        raise UnauthorizedError("Invalid token user")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != Role.admin.value:
        raise ForbiddenError("Admin only")
    return user


def actor_of(user: dict) -> str:
    return user.get("email") or str(user["_id"])


def seed_admin(db: Database, settings: Settings) -> bool:
    """Create the bootstrap admin from ADMIN_EMAIL / ADMIN_PASSWORD if missing."""
    if not settings.admin_email or not settings.admin_password:
        return False
    email = settings.admin_email.strip().lower()
    if db["user"].find_one({"email": email}):
        return False
    user = User(email=email, password_hash=hash_password(settings.admin_password), role=Role.admin)
    create_document(db, "user", user)
    logger.info("Seeded admin user %s", email)
    return True
