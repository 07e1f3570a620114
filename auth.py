import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from schemas import ADMIN_ROLES
from storage import Storage

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# --------------------- Passwords & codes ---------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password_hash"}


# --------------------- Tokens ---------------------

def create_token(settings: Settings, user_id: str, role: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(days=settings.token_expire_days)
    return jwt.encode({"id": user_id, "role": role, "exp": expire}, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(settings: Settings, token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        return None


# --------------------- Dependencies ---------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    storage = request.app.state.storage
    if storage is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return storage


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_current_user(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> dict:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_token(settings, token)
    if not payload or not payload.get("id"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = storage.get_user_by_id(payload["id"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_optional_user(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
) -> Optional[dict]:
    token = _bearer_token(authorization)
    if not token:
        return None
    payload = decode_token(settings, token)
    if not payload or not payload.get("id"):
        return None
    return storage.get_user_by_id(payload["id"])


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") in ADMIN_ROLES


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    # role is read from the stored user, so demotions apply to live tokens
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def require_superadmin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "superadmin":
        raise HTTPException(status_code=403, detail="Only super admin can change roles")
    return user
