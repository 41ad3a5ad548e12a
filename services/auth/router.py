"""
services/auth/router.py
Email/mobile + password authentication with OTP verification.
Implements: Register → Login → JWT issue → Refresh (rotation) → Logout
"""

import logging
from datetime import timedelta
from typing import List, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, status
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import (
    Otp,
    OtpChannel,
    OtpPurpose,
    Session,
    User,
    UserRole,
    UserStatus,
)
from shared.schemas.schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OtpRequest,
    OtpVerifyRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenPairResponse,
    UserResponse,
    UserUpdateRequest,
)
from shared.utils.dates import as_utc, utcnow
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    generate_otp,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_password,
)
from tasks.notification_tasks import send_otp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE = "refresh_token"
OTP_REQUESTS_PER_WINDOW = 5
OTP_REQUEST_WINDOW_SECONDS = 600


# ── Helpers ───────────────────────────────────────────────────

def _channel_for(identifier: str) -> OtpChannel:
    return OtpChannel.EMAIL if "@" in identifier else OtpChannel.MOBILE


async def _find_user(db: AsyncSession, identifier: str) -> Optional[User]:
    """Look up by email (case-insensitive) or mobile number."""
    identifier = identifier.strip()
    result = await db.execute(
        select(User).where(or_(User.email == identifier.lower(), User.mobile == identifier))
    )
    return result.scalar_one_or_none()


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    request: Request,
    response: Response,
) -> TokenPairResponse:
    """Open a session, store only the refresh hash, and set the refresh cookie."""
    raw_refresh, hashed_refresh = create_refresh_token()
    session = Session(
        user_id=user.id,
        refresh_token_hash=hashed_refresh,
        expires_at=utcnow() + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        user_agent=(request.headers.get("user-agent") or "")[:500] or None,
        ip_address=request.client.host if request.client else None,
    )
    db.add(session)
    await db.flush()

    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
        session_id=str(session.id),
    )

    # httpOnly cookie for web clients; mobile clients use the body
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path="/auth",
    )

    return TokenPairResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


async def _revoke_all_sessions(
    db: AsyncSession, user_id: UUID, keep: Optional[UUID] = None
) -> None:
    query = update(Session).where(Session.user_id == user_id, Session.revoked_at.is_(None))
    if keep:
        query = query.where(Session.id != keep)
    await db.execute(query.values(revoked_at=utcnow()).execution_options(synchronize_session=False))


async def _issue_otp(
    db: AsyncSession,
    user: Optional[User],
    channel: OtpChannel,
    target: str,
    purpose: OtpPurpose,
) -> None:
    code = generate_otp()
    db.add(Otp(
        user_id=user.id if user else None,
        channel=channel,
        target=target,
        code_hash=hash_token(code),
        purpose=purpose,
        expires_at=utcnow() + timedelta(minutes=settings.OTP_EXPIRE_MINUTES),
    ))
    await db.flush()
    send_otp.delay(channel.value, target, code, purpose.value)
    logger.info(f"OTP issued for {purpose.value} via {channel.value}")


async def _consume_otp(
    db: AsyncSession,
    channel: OtpChannel,
    target: str,
    purpose: OtpPurpose,
    code: str,
) -> Otp:
    """Check the newest live code; wrong guesses count toward the attempt cap."""
    result = await db.execute(
        select(Otp)
        .where(
            Otp.channel == channel,
            Otp.target == target,
            Otp.purpose == purpose,
            Otp.consumed_at.is_(None),
        )
        .order_by(Otp.created_at.desc())
        .limit(1)
    )
    otp = result.scalar_one_or_none()
    if not otp or as_utc(otp.expires_at) < utcnow():
        raise HTTPException(status_code=400, detail="Code expired or not found")
    if otp.attempts >= settings.OTP_MAX_ATTEMPTS:
        raise HTTPException(status_code=400, detail="Too many attempts, request a new code")

    if hash_token(code) != otp.code_hash:
        otp.attempts += 1
        await db.commit()
        raise HTTPException(status_code=400, detail="Invalid code")

    otp.consumed_at = utcnow()
    return otp


# ── Registration & Login ──────────────────────────────────────

@router.post("/register", response_model=TokenPairResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Create a customer account, send an email verification code and sign in."""
    clauses = [User.email == data.email]
    if data.mobile:
        clauses.append(User.mobile == data.mobile)
    if await db.scalar(select(User.id).where(or_(*clauses))):
        raise HTTPException(status_code=409, detail="Email or mobile already registered")

    user = User(
        name=data.name,
        email=data.email,
        mobile=data.mobile,
        password_hash=hash_password(data.password),
        role=UserRole.CUSTOMER,
        status=UserStatus.ACTIVE,
    )
    db.add(user)
    await db.flush()

    await _issue_otp(db, user, OtpChannel.EMAIL, user.email, OtpPurpose.VERIFY)
    logger.info(f"User {user.id} registered")
    return await _issue_tokens(user, db, request, response)


@router.post("/login", response_model=TokenPairResponse)
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """
    Password login by email or mobile.
    Repeated failures lock the account for ACCOUNT_LOCK_MINUTES.
    """
    user = await _find_user(db, data.identifier)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.status == UserStatus.DISABLED:
        raise HTTPException(status_code=403, detail="User account is disabled")

    now = utcnow()
    if user.locked_until and as_utc(user.locked_until) > now:
        raise HTTPException(status_code=403, detail="Account locked, try again later")

    if not verify_password(data.password, user.password_hash):
        user.failed_login_attempts += 1
        if user.failed_login_attempts >= settings.MAX_FAILED_LOGIN_ATTEMPTS:
            user.locked_until = now + timedelta(minutes=settings.ACCOUNT_LOCK_MINUTES)
            user.status = UserStatus.LOCKED
            user.failed_login_attempts = 0
            logger.warning(f"User {user.id} locked after repeated failed logins")
        await db.commit()
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user.failed_login_attempts = 0
    user.locked_until = None
    user.status = UserStatus.ACTIVE
    user.last_login_at = now
    return await _issue_tokens(user, db, request, response)


# ── OTP ───────────────────────────────────────────────────────

@router.post("/otp/request", response_model=MessageResponse)
async def request_otp(
    data: OtpRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Send a one-time code. The response never reveals whether the target exists."""
    target = data.target.strip().lower() if data.channel == OtpChannel.EMAIL else data.target.strip()
    allowed = await RedisCache(redis).check_rate_limit(
        f"otp_requests:{target}", OTP_REQUESTS_PER_WINDOW, OTP_REQUEST_WINDOW_SECONDS
    )
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many code requests, try again later")

    user = await _find_user(db, target)
    if user and user.status != UserStatus.DISABLED:
        await _issue_otp(db, user, data.channel, target, data.purpose)
    return MessageResponse(message="If the account exists, a code has been sent")


@router.post("/otp/verify", response_model=Union[TokenPairResponse, MessageResponse])
async def verify_otp(
    data: OtpVerifyRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """
    purpose=verify marks the email/mobile as verified.
    purpose=login signs the user in.
    """
    if data.purpose == OtpPurpose.RESET:
        raise HTTPException(status_code=400, detail="Use /auth/password/reset for reset codes")

    target = data.target.strip().lower() if data.channel == OtpChannel.EMAIL else data.target.strip()
    otp = await _consume_otp(db, data.channel, target, data.purpose, data.code)

    user = await db.scalar(select(User).where(User.id == otp.user_id)) if otp.user_id else None
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.status == UserStatus.DISABLED:
        raise HTTPException(status_code=403, detail="User account is disabled")

    if data.channel == OtpChannel.EMAIL:
        user.email_verified = True
    else:
        user.mobile_verified = True

    if data.purpose == OtpPurpose.LOGIN:
        user.last_login_at = utcnow()
        return await _issue_tokens(user, db, request, response)
    return MessageResponse(message=f"{data.channel.value.capitalize()} verified")


# ── Password ──────────────────────────────────────────────────

@router.post("/password/forgot", response_model=MessageResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    identifier = data.identifier.strip()
    channel = _channel_for(identifier)
    target = identifier.lower() if channel == OtpChannel.EMAIL else identifier

    allowed = await RedisCache(redis).check_rate_limit(
        f"otp_requests:{target}", OTP_REQUESTS_PER_WINDOW, OTP_REQUEST_WINDOW_SECONDS
    )
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many code requests, try again later")

    user = await _find_user(db, identifier)
    if user and user.status != UserStatus.DISABLED:
        await _issue_otp(db, user, channel, target, OtpPurpose.RESET)
    return MessageResponse(message="If the account exists, a reset code has been sent")


@router.post("/password/reset", response_model=MessageResponse)
async def reset_password(data: ResetPasswordRequest, db: AsyncSession = Depends(get_db)):
    """Set a new password with a reset code. Signs out every session."""
    identifier = data.identifier.strip()
    channel = _channel_for(identifier)
    target = identifier.lower() if channel == OtpChannel.EMAIL else identifier
    otp = await _consume_otp(db, channel, target, OtpPurpose.RESET, data.code)

    user = await db.scalar(select(User).where(User.id == otp.user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    user.password_hash = hash_password(data.new_password)
    user.failed_login_attempts = 0
    user.locked_until = None
    if user.status == UserStatus.LOCKED:
        user.status = UserStatus.ACTIVE
    await _revoke_all_sessions(db, user.id)
    logger.info(f"Password reset for user {user.id}")
    return MessageResponse(message="Password has been reset, please log in again")


@router.post("/password/change", response_model=MessageResponse)
async def change_password(
    data: ChangePasswordRequest,
    token_data: TokenData = Depends(get_token_data),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Change password and sign out all other sessions."""
    if not verify_password(data.current_password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    current_user.password_hash = hash_password(data.new_password)
    keep = UUID(token_data.session_id) if token_data.session_id else None
    await _revoke_all_sessions(db, current_user.id, keep=keep)
    return MessageResponse(message="Password changed")


# ── Tokens & Sessions ─────────────────────────────────────────

@router.post("/refresh", response_model=TokenPairResponse)
async def refresh_token(
    request: Request,
    response: Response,
    data: Optional[RefreshRequest] = None,
    refresh_token_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db),
):
    """
    Exchange a refresh token for a new pair (rotation).
    Presenting an already-rotated token revokes every session of the user.
    """
    raw_token = data.refresh_token if data else refresh_token_cookie
    if not raw_token:
        raise HTTPException(status_code=401, detail="Refresh token required")

    result = await db.execute(
        select(Session).where(Session.refresh_token_hash == hash_token(raw_token))
    )
    session = result.scalar_one_or_none()
    if not session:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    if session.revoked_at is not None:
        await _revoke_all_sessions(db, session.user_id)
        await db.commit()
        logger.warning(f"Refresh token reuse detected for user {session.user_id}")
        raise HTTPException(status_code=401, detail="Session invalid, please log in again")

    if as_utc(session.expires_at) < utcnow():
        raise HTTPException(status_code=401, detail="Refresh token expired")

    user = await db.scalar(select(User).where(User.id == session.user_id))
    if not user or user.status == UserStatus.DISABLED:
        raise HTTPException(status_code=401, detail="User not found")

    result = await db.execute(
        update(Session)
        .where(Session.id == session.id, Session.revoked_at.is_(None))
        .values(revoked_at=utcnow(), last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise HTTPException(status_code=401, detail="Session invalid, please log in again")

    return await _issue_tokens(user, db, request, response)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    data: Optional[LogoutRequest] = None,
    token_data: TokenData = Depends(get_token_data),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token and revoke its session."""
    await RedisCache(redis).revoke_token(token_data.jti, get_token_remaining_ttl(token_data.payload))

    query = update(Session).where(Session.user_id == current_user.id, Session.revoked_at.is_(None))
    if data and data.refresh_token:
        query = query.where(Session.refresh_token_hash == hash_token(data.refresh_token))
    elif token_data.session_id:
        query = query.where(Session.id == UUID(token_data.session_id))
    else:
        query = None

    if query is not None:
        await db.execute(query.values(revoked_at=utcnow()).execution_options(synchronize_session=False))

    response.delete_cookie(key=REFRESH_COOKIE, path="/auth")
    return MessageResponse(message="Logged out successfully")


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(
    token_data: TokenData = Depends(get_token_data),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Session)
        .where(
            Session.user_id == current_user.id,
            Session.revoked_at.is_(None),
            Session.expires_at > utcnow(),
        )
        .order_by(Session.created_at.desc())
    )
    sessions = []
    for s in result.scalars().all():
        item = SessionResponse.model_validate(s)
        item.current = str(s.id) == token_data.session_id
        sessions.append(item)
    return sessions


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Session)
        .where(
            Session.id == session_id,
            Session.user_id == current_user.id,
            Session.revoked_at.is_(None),
        )
        .values(revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise HTTPException(status_code=404, detail="Session not found")
    return MessageResponse(message="Session revoked")


# ── Profile ───────────────────────────────────────────────────

@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updates = data.model_dump(exclude_unset=True)
    mobile = updates.get("mobile")
    if mobile and mobile != current_user.mobile:
        taken = await db.scalar(
            select(User.id).where(User.mobile == mobile, User.id != current_user.id)
        )
        if taken:
            raise HTTPException(status_code=409, detail="Mobile number already in use")
        current_user.mobile_verified = False

    for field, value in updates.items():
        setattr(current_user, field, value)
    await db.flush()
    return UserResponse.model_validate(current_user)
