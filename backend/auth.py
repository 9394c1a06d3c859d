# auth.py — Authentication & role-based access for TaskWise
# Features:
# - JWT access/refresh tokens with JTI for revocation
# - 3-tier roles (sysadmin, depadmin, user)
# - Account approval states (pending, approved, suspended)
# - Password policy enforcement (min 12 chars)
# - Brute force protection
# - Bootstrap sysadmin via SYSADMIN_EMAIL

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import ERROR_CATALOGUE
from models import User, UserRole, UserStatus, RevokedToken
from task_engine import Actor

logger = logging.getLogger("taskwise.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
SYSADMIN_EMAIL = os.getenv("SYSADMIN_EMAIL", "").strip().lower()
MIN_PASSWORD_LENGTH = 12
MIN_DISPLAY_NAME_LENGTH = 2
PASSWORD_RULES = [
    (lambda p: len(p) >= MIN_PASSWORD_LENGTH, f"Password needs at least {MIN_PASSWORD_LENGTH} characters"),
    (lambda p: any(c.isupper() for c in p), "Password needs an upper-case letter"),
    (lambda p: any(c.isdigit() for c in p), "Password needs a digit"),
]
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()


class LoginThrottle:
    """Sliding-window count of failed sign-ins per email (per process)"""

    def __init__(self, limit: int = MAX_LOGIN_ATTEMPTS, window_minutes: int = LOGIN_LOCKOUT_MINUTES):
        self.limit = limit
        self.window = timedelta(minutes=window_minutes)
        self._failures: Dict[str, List[datetime]] = defaultdict(list)

    def check(self, email: str) -> None:
        horizon = datetime.now(timezone.utc) - self.window
        recent = [t for t in self._failures[email] if t > horizon]
        self._failures[email] = recent
        if len(recent) >= self.limit:
            minutes = int(self.window.total_seconds() // 60)
            raise HTTPException(status_code=429, detail=f"Too many sign-in attempts. Retry in {minutes} minutes.")

    def failed(self, email: str) -> None:
        self._failures[email].append(datetime.now(timezone.utc))

    def reset(self, email: str) -> None:
        self._failures.pop(email, None)


login_throttle = LoginThrottle()


# ============================================================
# ROLE HIERARCHY & PERMISSIONS
# ============================================================

ROLE_HIERARCHY = {
    UserRole.SYSADMIN: 3,
    UserRole.DEPADMIN: 2,
    UserRole.USER: 1,
}

ROLE_PERMISSIONS = {
    UserRole.SYSADMIN: [
        "tasks:read", "tasks:write", "tasks:reopen", "tasks:sweep", "tasks:delete_all",
        "users:read", "users:write",
        "departments:write",
        "errors:read",
        "ai:summarize",
    ],
    UserRole.DEPADMIN: [
        "tasks:read", "tasks:write", "tasks:reopen", "tasks:sweep",
        "users:read", "users:write",
        "errors:read",
        "ai:summarize",
    ],
    UserRole.USER: [
        "tasks:read", "tasks:write",
        "ai:summarize",
    ],
}


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    display_name: str
    website: str = ""  # Honeypot; humans never see this field

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        for rule, message in PASSWORD_RULES:
            if not rule(v):
                raise ValueError(message)
        return v

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < MIN_DISPLAY_NAME_LENGTH:
            raise ValueError(f"Display name must be at least {MIN_DISPLAY_NAME_LENGTH} characters")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    status: str
    department: Optional[str] = None
    photo_url: Optional[str] = None
    permissions: List[str] = []

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.SYSADMIN.value, UserRole.DEPADMIN.value)

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=UserRole(self.role), department=self.department)


class RefreshRequest(BaseModel):
    refresh_token: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and account handling"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        if user_data.website:
            logger.warning(f"Honeypot field filled on registration for {user_data.email}")
            raise HTTPException(status_code=400, detail="Registration rejected")

        email = user_data.email.lower()
        result = await db.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="User already exists")

        bootstrap = bool(SYSADMIN_EMAIL) and email == SYSADMIN_EMAIL
        new_user = User(
            email=email,
            display_name=user_data.display_name,
            password_hash=AuthService.hash_password(user_data.password),
            role=UserRole.SYSADMIN if bootstrap else UserRole.USER,
            status=UserStatus.APPROVED if bootstrap else UserStatus.PENDING,
        )
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
        logger.info(f"Registered {email} as {new_user.role.value} ({new_user.status.value})")
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        email = email.lower()
        login_throttle.check(email)

        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            login_throttle.failed(email)
            return None

        login_throttle.reset(email)
        user.last_login_at = datetime.now(timezone.utc)
        db.add(user)
        await db.commit()
        return user

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        result = await db.execute(select(RevokedToken).where(RevokedToken.jti == jti))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))
        await db.commit()

    @staticmethod
    def get_user_permissions(role: UserRole) -> List[str]:
        try:
            return ROLE_PERMISSIONS.get(UserRole(role), ROLE_PERMISSIONS[UserRole.USER])
        except (ValueError, KeyError):
            return ROLE_PERMISSIONS[UserRole.USER]

    @staticmethod
    def token_payload(user: User) -> Dict[str, Any]:
        return {"sub": user.id, "email": user.email, "role": user.role.value}

    @staticmethod
    def to_current_user(user: User) -> CurrentUser:
        return CurrentUser(
            id=user.id,
            email=user.email,
            display_name=user.display_name or "",
            role=user.role.value,
            status=user.status.value,
            department=user.department,
            photo_url=user.photo_url,
            permissions=AuthService.get_user_permissions(user.role),
        )

    @staticmethod
    async def resolve_token(token: str, db: AsyncSession) -> CurrentUser:
        """Access token → current user, checking type, revocation and existence."""
        payload = AuthService.verify_token(token)

        if payload.get("type") != "access":
            raise HTTPException(status_code=401, detail="Invalid token type")

        jti = payload.get("jti")
        if jti and await AuthService.is_token_revoked(jti, db):
            raise HTTPException(status_code=401, detail="Token has been revoked")

        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")

        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise HTTPException(status_code=401, detail="User not found")

        return AuthService.to_current_user(user)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    return await AuthService.resolve_token(credentials.credentials, db)


def account_state_error(user: CurrentUser) -> Optional[HTTPException]:
    if user.status == UserStatus.PENDING.value:
        return HTTPException(status_code=403, detail=ERROR_CATALOGUE["TW-AUTH-002"]["message"])
    if user.status == UserStatus.SUSPENDED.value:
        return HTTPException(status_code=403, detail=ERROR_CATALOGUE["TW-AUTH-004"]["message"])
    return None


async def require_approved(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Pending and suspended accounts may sign in but not touch data"""
    error = account_state_error(user)
    if error is not None:
        raise error
    return user


def require_permission(*scopes: str):
    """Dependency factory: require user to have specific permission scopes"""
    async def _check(user: CurrentUser = Depends(require_approved)) -> CurrentUser:
        for scope in scopes:
            if scope not in user.permissions:
                raise HTTPException(
                    status_code=403,
                    detail=f"Missing required permission: {scope}",
                )
        return user
    return _check


def require_min_role(min_role: UserRole):
    """Dependency factory: require user role level >= min_role"""
    async def _check(user: CurrentUser = Depends(require_approved)) -> CurrentUser:
        user_level = ROLE_HIERARCHY.get(UserRole(user.role), 0)
        if user_level < ROLE_HIERARCHY.get(min_role, 0):
            raise HTTPException(status_code=403, detail="Insufficient role level")
        return user
    return _check


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
