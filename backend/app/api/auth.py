"""Authentication API endpoints."""

import logging
import time
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.config import settings
from app.core.request_utils import derive_device_class, get_client_ip
from app.middleware.bearer_auth import INVALID_CREDENTIALS, extract_bearer_token
from app.schemas.auth import (
    LoginURLResponse,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    OAuthCallbackRequest,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
    ValidateResponse,
)
from app.services.errors import (
    AuthError,
    OAuthError,
    RedirectMismatchError,
    SessionInactiveError,
    StoreUnavailableError,
    TokenError,
)
from app.services.identity import IdentityService
from app.services.security_events import SecurityEventLevel, SecurityEventType
from app.services.tokens import Claims

logger = logging.getLogger(__name__)

# Rate limiting for login callbacks
_login_attempts: dict[str, list[float]] = defaultdict(list)
_LOGIN_WINDOW = 60  # 1-minute window

AUTHENTICATION_FAILED = "Authentication failed"
SERVICE_UNAVAILABLE = "Service temporarily unavailable"


def _check_login_rate_limit(client_ip: str, identity: IdentityService) -> None:
    """Check if a client IP has exceeded the login attempt rate limit."""
    now = time.monotonic()
    attempts = [t for t in _login_attempts[client_ip] if now - t < _LOGIN_WINDOW]
    _login_attempts[client_ip] = attempts
    if len(attempts) >= settings.login_rate_limit_per_minute:
        logger.warning("Login rate limit exceeded for %s", client_ip)
        identity.emit_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            SecurityEventLevel.WARNING,
            ip_address=client_ip,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
        )


def _record_login_attempt(client_ip: str) -> None:
    """Record a failed login attempt for rate limiting."""
    _login_attempts[client_ip].append(time.monotonic())


def auth_http_exception(error: AuthError) -> HTTPException:
    """Translate a domain error into a generic HTTP error.

    The taxonomy code is logged by the caller and never returned.
    """
    if isinstance(error, StoreUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=SERVICE_UNAVAILABLE,
        )
    if isinstance(error, OAuthError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AUTHENTICATION_FAILED,
        )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=INVALID_CREDENTIALS,
        headers={"WWW-Authenticate": "Bearer"},
    )


router = APIRouter(prefix="/auth", tags=["auth"])


def get_identity_service(request: Request) -> IdentityService:
    """Dependency to get the identity service built at startup."""
    return request.app.state.identity


async def get_current_claims(
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
) -> Claims:
    """Dependency to authenticate the request's bearer token."""
    claims = getattr(request.state, "claims", None)
    if claims is not None:
        return claims

    token = extract_bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = await identity.authenticate(token)
    except (TokenError, SessionInactiveError, StoreUnavailableError) as e:
        logger.info(f"Authentication failed: {e.code}")
        raise auth_http_exception(e) from e

    request.state.claims = claims
    return claims


@router.get("/google/login", response_model=LoginURLResponse)
async def google_login(
    redirect_uri: str | None = Query(None, max_length=2048),
    identity: IdentityService = Depends(get_identity_service),
) -> LoginURLResponse:
    """Start Google sign-in.

    Returns the consent URL. The PKCE verifier stays on the server, keyed by
    the returned state, for ten minutes.
    """
    try:
        auth_request = await identity.begin_login(redirect_uri)
    except RedirectMismatchError as e:
        logger.warning(f"Rejected login redirect: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid redirect URI",
        ) from e
    except StoreUnavailableError as e:
        logger.error(f"Cannot start login: {e}")
        raise auth_http_exception(e) from e
    return LoginURLResponse(auth_url=auth_request.auth_url, state=auth_request.state)


@router.post("/google/callback", response_model=TokenResponse)
async def google_callback(
    body: OAuthCallbackRequest,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
) -> TokenResponse:
    """Finish Google sign-in and issue a token pair.

    Rate limited per client IP.
    """
    client_ip = get_client_ip(request) or "unknown"
    _check_login_rate_limit(client_ip, identity)

    device_class = derive_device_class(
        body.device_class,
        request.headers.get("User-Agent"),
        settings.device_class_rules,
        settings.default_device_class,
    )

    try:
        pair = await identity.login(
            body.code,
            body.state,
            device_class,
            redirect_uri=body.redirect_uri,
            code_verifier=body.code_verifier,
        )
    except StoreUnavailableError as e:
        logger.error(f"Login failed, store unavailable: {e}")
        raise auth_http_exception(e) from e
    except AuthError as e:
        _record_login_attempt(client_ip)
        logger.info(f"Login failed from {client_ip}: {e.code}")
        raise auth_http_exception(e) from e

    return TokenResponse(**pair.to_dict())


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    body: RefreshRequest,
    identity: IdentityService = Depends(get_identity_service),
) -> TokenResponse:
    """Issue a new token pair for the refresh token's session."""
    try:
        pair = await identity.refresh(body.refresh_token)
    except AuthError as e:
        logger.info(f"Refresh failed: {e.code}")
        raise auth_http_exception(e) from e
    return TokenResponse(**pair.to_dict())


@router.post("/logout", response_model=MessageResponse)
async def logout(
    body: LogoutRequest | None = None,
    claims: Claims = Depends(get_current_claims),
    identity: IdentityService = Depends(get_identity_service),
) -> MessageResponse:
    """Log out of the current session.

    Revokes the access token (and the refresh token, if sent) and ends the
    session.
    """
    await identity.logout(claims, refresh_token=body.refresh_token if body else None)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    claims: Claims = Depends(get_current_claims),
    identity: IdentityService = Depends(get_identity_service),
) -> LogoutAllResponse:
    """End every session of the current user."""
    try:
        count = await identity.logout_all(claims)
    except StoreUnavailableError as e:
        logger.error(f"Logout-all failed: {e}")
        raise auth_http_exception(e) from e
    return LogoutAllResponse(message="Logged out of all sessions", sessions_ended=count)


@router.get("/validate", response_model=ValidateResponse)
async def validate_token(claims: Claims = Depends(get_current_claims)) -> ValidateResponse:
    """Check the presented access token."""
    return ValidateResponse(
        valid=True,
        user_id=claims.user_id,
        session_id=claims.session_id,
        expires_at=claims.expires_at,
    )


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    claims: Claims = Depends(get_current_claims),
    identity: IdentityService = Depends(get_identity_service),
) -> list[SessionResponse]:
    """List the current user's active sessions, most recent first."""
    try:
        sessions = await identity.list_sessions(claims.user_id)
    except StoreUnavailableError as e:
        raise auth_http_exception(e) from e
    return [
        SessionResponse(
            id=s.id,
            device_class=s.device_class,
            created_at=s.created_at,
            last_seen_at=s.last_seen_at,
            current=s.id == claims.session_id,
        )
        for s in sessions
    ]
