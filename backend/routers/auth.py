# routers/auth.py - Authentication endpoints with token revocation and TOTP step-up
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    get_current_user, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES, mfa_throttle,
)
from access import AccessContext, public
from audit import record_audit, EntityUpdated, StatusChanged
from database import get_db_session
from errors import Unauthorized, NotFound, GRCError, PreconditionFailed
from models import User, UserRole, AuthAssurance, AuditSeverity

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=12)


class MfaEnrollOut(BaseModel):
    secret: str
    provisioning_uri: str


class MfaVerify(BaseModel):
    code: str = Field(..., min_length=6, max_length=8)


class InvalidMfaCode(GRCError):
    status_code = 400
    code = "GRC-AUTH-005"


def _build_token_response(user_obj: User, aal: AuthAssurance = AuthAssurance.AAL1) -> TokenResponse:
    """Build token response from a user ORM instance"""
    token_data = AuthService.token_claims(user_obj, aal)
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "display_name": user_obj.display_name or "",
            "role": user_obj.role.value if isinstance(user_obj.role, UserRole) else user_obj.role,
            "mfa_enabled": bool(user_obj.mfa_enabled),
            "aal": aal.value,
        },
    )


async def _load_user(user_id: str, db: AsyncSession) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user_obj = result.scalar_one_or_none()
    if not user_obj:
        raise NotFound("User not found")
    return user_obj


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    _: AccessContext = Depends(public),
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    _: AccessContext = Depends(public),
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens.

    Password login always yields an aal1 session; callers with MFA enabled
    step up through /mfa/verify.
    """
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, request
    )
    if not user:
        raise Unauthorized("Invalid credentials")
    return _build_token_response(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise Unauthorized("Invalid token type. Expected refresh token.", code="GRC-AUTH-002")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthorized("Refresh token has been revoked", code="GRC-AUTH-002")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active or user.deleted_at is not None:
        raise Unauthorized("User not found or inactive")

    # A refreshed session keeps the assurance level it was issued with
    aal = AuthAssurance.AAL2 if payload.get("aal") == AuthAssurance.AAL2.value else AuthAssurance.AAL1
    return _build_token_response(user, aal)


@router.post("/logout")
async def logout(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the presented access token"""
    if user.jti:
        expires_at = (
            datetime.fromtimestamp(user.token_exp, tz=timezone.utc)
            if user.token_exp else datetime.now(timezone.utc)
        )
        record_audit(db, user_id=user.id, action="logout", entity_type="user", entity_id=user.id, request=request)
        await AuthService.revoke_token(user.jti, user.id, expires_at, db)

    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "role": user.role,
        "is_active": user.is_active,
        "aal": user.aal,
    }


@router.post("/change-password")
async def change_password(
    data: PasswordChange,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password"""
    user_obj = await _load_user(user.id, db)
    if not AuthService.verify_password(data.current_password, user_obj.password_hash):
        raise Unauthorized("Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(data.new_password)
    record_audit(
        db, user_id=user.id, action="change_password", entity_type="user", entity_id=user.id,
        details=EntityUpdated(fields=["password"]), severity=AuditSeverity.WARNING, request=request,
    )
    await db.commit()
    return {"status": "password_changed", "message": "Password updated successfully"}


# ============================================================
# SECOND FACTOR
# ============================================================

@router.post("/mfa/enroll", response_model=MfaEnrollOut)
async def enroll_mfa(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue a fresh TOTP secret; it becomes active after the first successful verify"""
    user_obj = await _load_user(user.id, db)
    # Replacing an active factor needs a session that already proved it
    if user_obj.mfa_enabled and user.aal != AuthAssurance.AAL2.value:
        raise PreconditionFailed("Re-enrolling MFA requires an aal2 session")
    secret = AuthService.generate_mfa_secret()
    user_obj.mfa_secret = secret
    record_audit(
        db, user_id=user.id, action="mfa_enroll", entity_type="user", entity_id=user.id,
        details=EntityUpdated(fields=["mfa_secret"]), request=request,
    )
    await db.commit()
    return MfaEnrollOut(secret=secret, provisioning_uri=AuthService.provisioning_uri(secret, user_obj.email))


@router.post("/mfa/verify", response_model=TokenResponse)
async def verify_mfa(
    data: MfaVerify,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Check a TOTP code and return tokens at aal2"""
    user_obj = await _load_user(user.id, db)
    if not user_obj.mfa_secret:
        raise InvalidMfaCode("MFA is not enrolled for this account")
    mfa_throttle.check(user.id)
    if not AuthService.verify_totp(user_obj.mfa_secret, data.code):
        mfa_throttle.fail(user.id)
        record_audit(
            db, user_id=user.id, action="mfa_failed", entity_type="user", entity_id=user.id,
            severity=AuditSeverity.WARNING, request=request,
        )
        await db.commit()
        raise InvalidMfaCode("Invalid verification code")

    mfa_throttle.clear(user.id)
    if not user_obj.mfa_enabled:
        user_obj.mfa_enabled = True
        record_audit(
            db, user_id=user.id, action="mfa_enabled", entity_type="user", entity_id=user.id,
            details=StatusChanged(from_status="disabled", to_status="enabled"), request=request,
        )
    await db.commit()
    return _build_token_response(user_obj, AuthAssurance.AAL2)
