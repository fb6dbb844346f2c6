"""
services/auth/router.py
OAuth2 (Google) authentication endpoints.
Implements: Login → Callback → JWT issue → Refresh → Logout
Tokens carry no role; /auth/me resolves it on every call.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.identity.resolver import ActorContext, RoleResolver
from shared.middleware.auth import TokenData, get_actor, get_resolver, get_token_data
from shared.models.models import OAuthProvider, Profile, RefreshToken, User
from shared.schemas.schemas import ActorResponse, AuthCallbackResponse, MessageResponse, TokenResponse
from shared.utils.security import (
    build_callback_url,
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_token,
)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE_PATH = "/auth/refresh"

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


# ── Helper ────────────────────────────────────────────────────

async def _get_or_create_user(
    db: AsyncSession,
    oauth_provider: OAuthProvider,
    oauth_id: str,
    email: str,
    name: str,
    avatar_url: Optional[str],
) -> User:
    """
    Get existing user by OAuth ID or create a new one with an empty profile.
    No role row is written; new accounts resolve to the default `user` role.
    """
    result = await db.execute(
        select(User).where(
            User.oauth_provider == oauth_provider,
            User.oauth_id == oauth_id,
        )
    )
    user = result.scalar_one_or_none()

    if not user:
        # Same email from another provider: link it
        result = await db.execute(select(User).where(User.email == email))
        existing = result.scalar_one_or_none()
        if existing:
            existing.oauth_provider = oauth_provider
            existing.oauth_id = oauth_id
            existing.avatar_url = avatar_url or existing.avatar_url
            return existing

        user = User(
            oauth_provider=oauth_provider,
            oauth_id=oauth_id,
            email=email,
            name=name,
            avatar_url=avatar_url,
        )
        db.add(user)
        await db.flush()
        db.add(Profile(id=user.id, full_name=name or None))
        await db.flush()

    return user


def _set_refresh_cookie(response: Response, raw_refresh: str) -> None:
    """httpOnly cookie for web clients; mobile clients use the body instead."""
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path=REFRESH_COOKIE_PATH,
    )


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Only the refresh token's hash is stored."""
    access_token, _ = create_access_token(user_id=str(user.id), email=user.email)

    raw_refresh, hashed_refresh = create_refresh_token()
    expires_at = datetime.now(timezone.utc) + timedelta(
        days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS
    )

    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=expires_at,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    ))

    return access_token, raw_refresh


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ── Endpoints ─────────────────────────────────────────────────

@router.get("/google", summary="Initiate Google OAuth2 login")
async def google_login(request: Request):
    """
    Redirects the user to Google's OAuth2 consent page.
    The client should open this URL in a browser/webview.
    """
    return await oauth.google.authorize_redirect(request, settings.GOOGLE_REDIRECT_URI)


@router.get(
    "/google/callback",
    response_model=AuthCallbackResponse,
    summary="Google OAuth2 callback",
)
async def google_callback(
    request: Request,
    response: Response,
    redirect: bool = Query(False, description="Redirect to the frontend with tokens in the URL fragment"),
    db: AsyncSession = Depends(get_db),
    resolver: RoleResolver = Depends(get_resolver),
):
    """
    Handles Google OAuth2 callback. Issues JWT access token + refresh token.
    Returns JSON by default, or redirects to FRONTEND_URL/auth/callback#... for browsers.
    """
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {e.error}",
        )
    userinfo = token.get("userinfo")
    if not userinfo:
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

    access_token, raw_refresh = await _issue_tokens(user, db, request)
    await db.commit()

    expires_in = settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60
    if redirect:
        redirect_response = RedirectResponse(
            build_callback_url(access_token, raw_refresh, expires_in),
            status_code=status.HTTP_302_FOUND,
        )
        _set_refresh_cookie(redirect_response, raw_refresh)
        return redirect_response

    # Fresh lookup: a sign-in may follow a role change made elsewhere.
    actor = await resolver.resolve(user.id, refresh=True)
    _set_refresh_cookie(response, raw_refresh)
    return AuthCallbackResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=expires_in,
        actor=ActorResponse.model_validate(actor),
    )


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Refresh access token",
)
async def refresh_token(
    request: Request,
    response: Response,
    # Accept from cookie (web) or request body (mobile)
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token is revoked.
    """
    raw_token = refresh_token_cookie
    if not raw_token:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        raw_token = body.get("refresh_token") if isinstance(body, dict) else None

    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required",
        )

    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked.is_(False),
        )
    )
    db_token = result.scalar_one_or_none()

    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )

    if _as_aware(db_token.expires_at) < datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    result = await db.execute(select(User).where(User.id == db_token.user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True

    access_token, raw_refresh = await _issue_tokens(user, db, request)
    await db.commit()
    _set_refresh_cookie(response, raw_refresh)

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    response: Response,
    token_data: TokenData = Depends(get_token_data),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    resolver: RoleResolver = Depends(get_resolver),
):
    """
    Deny-list the access token, revoke the refresh token and forget the
    cached role. Clears the httpOnly cookie.
    """
    if token_data.jti:
        ttl = get_token_remaining_ttl(token_data.payload)
        if ttl > 0:
            await RedisCache(redis).revoke_token(token_data.jti, ttl)

    if refresh_token_cookie:
        result = await db.execute(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(refresh_token_cookie))
        )
        db_token = result.scalar_one_or_none()
        if db_token:
            db_token.is_revoked = True

    await resolver.invalidate(token_data.user_id)

    response.delete_cookie(key="refresh_token", path=REFRESH_COOKIE_PATH)
    await db.commit()

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=ActorResponse, summary="Get current actor")
async def get_me(actor: ActorContext = Depends(get_actor)):
    """Returns the authenticated actor: id, email, resolved role and profile."""
    return ActorResponse.model_validate(actor)
