"""
services/auth/router.py
Authentication endpoints: email/password and Google OAuth2.
Implements: Register / Login / Google callback → JWT issue → Refresh → Logout
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Body, Cookie, Depends, HTTPException, Request, Response, status
from jose import JWTError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.wallet import ledger
from shared.middleware.auth import get_current_user
from shared.models.models import (
    GuardianProfile,
    OAuthProvider,
    RefreshToken,
    StudentProfile,
    TeacherProfile,
    User,
    UserRole,
    VerificationRequest,
)
from shared.schemas.schemas import AuthResponse, LoginRequest, RefreshRequest, RegisterRequest, TokenResponse, UserResponse
from shared.utils.responses import FieldValidationError, success
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_access_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE_PATH = "/auth"

# ── OAuth Setup ───────────────────────────────────────────────
oauth = OAuth()
oauth.register(
    name="google",
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": "openid email profile"},
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
)


# ── Helpers ───────────────────────────────────────────────────

async def provision_role(db: AsyncSession, user: User) -> None:
    """Create the role profile and wallet a new account starts with."""
    if user.role == UserRole.TEACHER:
        db.add(TeacherProfile(user_id=user.id, timezone="Africa/Lagos"))
        db.add(VerificationRequest(teacher_id=user.id))
        await ledger.get_teacher_wallet(db, user.id)
    elif user.role == UserRole.STUDENT:
        db.add(StudentProfile(user_id=user.id))
        await ledger.get_student_wallet(db, user.id)
    elif user.role == UserRole.GUARDIAN:
        db.add(GuardianProfile(user_id=user.id))
    await db.flush()


async def _find_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(func.lower(User.email) == email.lower()))
    return result.scalar_one_or_none()


async def _get_or_create_user(
    db: AsyncSession,
    oauth_provider: OAuthProvider,
    oauth_id: str,
    email: str,
    name: str,
    avatar_url: Optional[str],
) -> User:
    """Get existing user by OAuth ID or create a new one."""
    # Try find by oauth provider + id
    result = await db.execute(
        select(User).where(
            User.oauth_provider == oauth_provider,
            User.oauth_id == oauth_id,
        )
    )
    user = result.scalar_one_or_none()

    if not user:
        # Try find by email (password account with the same email)
        existing = await _find_by_email(db, email)
        if existing:
            # Link this OAuth provider to existing account
            existing.oauth_provider = oauth_provider
            existing.oauth_id = oauth_id
            existing.avatar_url = existing.avatar_url or avatar_url
            return existing

        # Brand new user; OAuth sign-ups start as students
        user = User(
            oauth_provider=oauth_provider,
            oauth_id=oauth_id,
            email=email.lower(),
            name=name or email.split("@")[0],
            avatar_url=avatar_url,
            role=UserRole.STUDENT,
        )
        db.add(user)
        await db.flush()
        await provision_role(db, user)

    return user


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token in DB and set cookie."""
    # Access token
    access_token, jti = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )

    # Refresh token
    raw_refresh, hashed_refresh = create_refresh_token()
    expires_at = datetime.now(timezone.utc) + timedelta(
        days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS
    )

    db_token = RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=expires_at,
        user_agent=(request.headers.get("user-agent") or "")[:500] or None,
        ip_address=request.client.host if request.client else None,
    )
    db.add(db_token)
    user.last_login_at = datetime.now(timezone.utc)

    # Set httpOnly cookie for refresh token (web clients)
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path=REFRESH_COOKIE_PATH,
    )

    return access_token, raw_refresh


async def _auth_payload(user: User, db: AsyncSession, response: Response, request: Request) -> AuthResponse:
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.flush()
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


# ── Email / Password ──────────────────────────────────────────

@router.post("/register", status_code=status.HTTP_201_CREATED, summary="Create an account")
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """
    Creates the user with its role profile. Teachers also get an earnings
    wallet and a pending verification request; students get a wallet.
    """
    if await _find_by_email(db, data.email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email is already registered")

    user = User(
        name=data.name,
        email=data.email.lower(),
        phone=data.phone,
        password_hash=hash_password(data.password),
        role=UserRole(data.role),
    )
    db.add(user)
    await db.flush()
    await provision_role(db, user)

    logger.info(f"Registered {user.role.value} account {user.id}")
    return success(await _auth_payload(user, db, response, request), "Account created")


@router.post("/login", summary="Email/password login")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    user = await _find_by_email(db, data.email)
    if (
        not user
        or user.deleted_at is not None
        or not user.password_hash
        or not verify_password(data.password, user.password_hash)
    ):
        raise FieldValidationError(
            {"email": ["These credentials do not match our records."]},
            message="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    return success(await _auth_payload(user, db, response, request), "Logged in")


# ── Google OAuth2 ─────────────────────────────────────────────

@router.get("/google", summary="Initiate Google OAuth2 login")
async def google_login(request: Request):
    """
    Redirects the user to Google's OAuth2 consent page.
    The client should open this URL in a browser/webview.
    """
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=503, detail="Google login is not configured")
    redirect_uri = settings.GOOGLE_REDIRECT_URI
    return await oauth.google.authorize_redirect(request, redirect_uri)


@router.get("/google/callback", summary="Google OAuth2 callback")
async def google_callback(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Handles Google OAuth2 callback. Issues JWT access token + refresh token."""
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {e.error}",
        )
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("email"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not fetch user info from Google",
        )

    user = await _get_or_create_user(
        db=db,
        oauth_provider=OAuthProvider.GOOGLE,
        oauth_id=userinfo["sub"],
        email=userinfo["email"],
        name=userinfo.get("name", ""),
        avatar_url=userinfo.get("picture"),
    )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    return success(await _auth_payload(user, db, response, request))


# ── Session ───────────────────────────────────────────────────

@router.post("/refresh", summary="Refresh access token")
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    # Accept from cookie (web) or request body (mobile)
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token is revoked.
    """
    raw_token = (body.refresh_token if body else None) or refresh_token_cookie
    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required",
        )

    # Find token in DB
    token_hash = hash_token(raw_token)
    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == token_hash,
            RefreshToken.is_revoked == False,  # noqa: E712
        )
    )
    db_token = result.scalar_one_or_none()

    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )

    expires_at = db_token.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at < datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    # Load user
    result = await db.execute(
        select(User).where(User.id == db_token.user_id, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    # Rotate: revoke old token, issue new ones
    db_token.is_revoked = True

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.flush()

    return success({
        **TokenResponse(
            access_token=access_token,
            expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        ).model_dump(),
        "refresh_token": raw_refresh,
    })


@router.post("/logout", summary="Logout user")
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Revoke refresh token + add JWT to deny-list in Redis.
    Clears httpOnly cookie.
    """
    # Add current access token JTI to Redis deny-list
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            payload = verify_access_token(auth_header[7:])
        except JWTError as e:
            logger.warning(f"Logout with unverifiable token for user {current_user.id}: {e}")
        else:
            jti = payload.get("jti")
            ttl = get_token_remaining_ttl(payload)
            if jti and ttl > 0:
                await RedisCache(redis).revoke_token(jti, ttl)

    # Revoke refresh token
    raw_refresh = (body.refresh_token if body else None) or refresh_token_cookie
    if raw_refresh:
        result = await db.execute(
            select(RefreshToken).where(
                RefreshToken.token_hash == hash_token(raw_refresh),
                RefreshToken.user_id == current_user.id,
            )
        )
        db_token = result.scalar_one_or_none()
        if db_token:
            db_token.is_revoked = True

    # Clear cookie
    response.delete_cookie(key="refresh_token", path=REFRESH_COOKIE_PATH)
    await db.flush()

    return success(None, "Logged out successfully")


@router.get("/me", summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return success(UserResponse.model_validate(current_user))
