# auth.py - Authentication for the GRCompliance API
# Features:
# - JWT access/refresh tokens with JTI for revocation
# - Authentication assurance level (aal1/aal2) carried as a token claim
# - TOTP second factor (pyotp) to step a session up to aal2
# - Password policy enforcement (min 12 chars)
# - Brute force protection

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
import pyotp
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import Unauthorized, Conflict
from models import User, UserRole, RevokedToken, AuthAssurance
from audit import record_audit, EntityCreated

logger = logging.getLogger("grc.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or len(SECRET_KEY) < 32:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or too short. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MFA_ISSUER = os.getenv("MFA_ISSUER", "GRCompliance")
MIN_PASSWORD_LENGTH = 12
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer(auto_error=False)


class LoginThrottle:
    """Failed-attempt counter per key (email, or user id for TOTP) over a sliding window (per process)"""

    def __init__(self, max_attempts: int = MAX_LOGIN_ATTEMPTS, window_minutes: int = LOGIN_LOCKOUT_MINUTES, action: str = "login"):
        self.action = action
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)
        self._failures: Dict[str, List[datetime]] = defaultdict(list)

    def check(self, key: str) -> None:
        cutoff = datetime.now(timezone.utc) - self.window
        recent = [t for t in self._failures[key] if t > cutoff]
        self._failures[key] = recent
        if len(recent) >= self.max_attempts:
            logger.warning(f"{self.action.capitalize()} locked for {key} after {len(recent)} failures")
            raise HTTPException(
                status_code=429,
                detail=f"Too many {self.action} attempts. Try again in {self.window.seconds // 60} minutes.",
            )

    def fail(self, key: str) -> None:
        self._failures[key].append(datetime.now(timezone.utc))

    def clear(self, key: Optional[str] = None) -> None:
        if key is None:
            self._failures.clear()
        else:
            self._failures.pop(key, None)


login_throttle = LoginThrottle()
mfa_throttle = LoginThrottle(action="verification")


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    display_name: str = ""

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not any(c.isupper() for c in v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not any(c.isdigit() for c in v):
            raise ValueError("Password must contain at least one digit")
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
    is_active: bool
    aal: str = AuthAssurance.AAL1.value
    jti: Optional[str] = None
    token_exp: Optional[int] = None


class RefreshRequest(BaseModel):
    refresh_token: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and second-factor handling"""

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
    def token_claims(user: User, aal: AuthAssurance = AuthAssurance.AAL1) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "email": user.email,
            "role": user.role.value if isinstance(user.role, UserRole) else user.role,
            "aal": aal.value,
        }

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthorized("Token expired", code="GRC-AUTH-002")
        except JWTError:
            raise Unauthorized("Invalid token", code="GRC-AUTH-002")

    # --- Second factor ---

    @staticmethod
    def generate_mfa_secret() -> str:
        return pyotp.random_base32()

    @staticmethod
    def provisioning_uri(secret: str, email: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=MFA_ISSUER)

    @staticmethod
    def verify_totp(secret: str, code: str) -> bool:
        if not secret or not code:
            return False
        # Accept one step of clock drift either side
        return pyotp.TOTP(secret).verify(code.strip(), valid_window=1)

    # --- Accounts ---

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        result = await db.execute(select(User).where(User.email == user_data.email))
        if result.scalar_one_or_none():
            raise Conflict("User already exists")

        display_name = user_data.display_name or user_data.email.split("@")[0]
        new_user = User(
            email=user_data.email,
            display_name=display_name,
            password_hash=AuthService.hash_password(user_data.password),
            role=UserRole.USER,
            is_active=True,
        )
        db.add(new_user)
        await db.flush()

        record_audit(
            db, user_id=new_user.id, action="register", entity_type="user",
            entity_id=new_user.id, details=EntityCreated(name=new_user.email),
        )
        await db.commit()
        await db.refresh(new_user)
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession, request: Optional[Request] = None) -> Optional[User]:
        login_throttle.check(email)

        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            login_throttle.fail(email)
            logger.info(f"Failed login for {email}")
            return None

        if not user.is_active or user.deleted_at is not None:
            return None

        login_throttle.clear(email)
        user.last_login_at = datetime.now(timezone.utc)

        record_audit(
            db, user_id=user.id, action="login", entity_type="user", entity_id=user.id,
            request=request,
        )
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


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> Optional[CurrentUser]:
    """Resolve the caller's identity, or None when no bearer token was sent.

    A token that is present but invalid, revoked or bound to an inactive
    account is an error rather than an anonymous call.
    """
    if credentials is None:
        return None

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise Unauthorized("Invalid token type", code="GRC-AUTH-002")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthorized("Token has been revoked", code="GRC-AUTH-002")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Invalid token", code="GRC-AUTH-002")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active or user.deleted_at is not None:
        raise Unauthorized("User not found or inactive")

    aal = payload.get("aal")
    if aal not in (AuthAssurance.AAL1.value, AuthAssurance.AAL2.value):
        aal = AuthAssurance.AAL1.value

    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        role=user.role.value if isinstance(user.role, UserRole) else user.role,
        is_active=user.is_active,
        aal=aal,
        jti=jti,
        token_exp=payload.get("exp"),
    )


async def get_current_user(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    if user is None:
        raise Unauthorized()
    return user
