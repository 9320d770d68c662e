"""Identity service: login, refresh, logout and request authentication.

This is the only component the HTTP layer talks to. It wires the OAuth
exchange, the user store, the session registry, the token codec and the
revocation store together and reports outcomes to the security event sink.
"""

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.services.errors import (
    AuthError,
    OAuthError,
    SessionInactiveError,
    StateNotFoundError,
    StoreUnavailableError,
    TokenError,
    TokenExpiredError,
    TokenRevokedError,
    WrongTokenTypeError,
)
from app.services.oauth import (
    AuthorizationRequest,
    InMemoryOAuthStateStore,
    OAuthExchange,
    SqlOAuthStateStore,
)
from app.services.revocation import (
    DisabledRevocationStore,
    InMemoryRevocationBackend,
    RevocationReason,
    RevocationStore,
    SqlRevocationBackend,
)
from app.services.security_events import (
    SecurityEventLevel,
    SecurityEventSink,
    SecurityEventType,
    SecurityMonitor,
)
from app.services.sessions import (
    InMemorySessionRegistry,
    Session,
    SessionRegistry,
    SqlSessionRegistry,
)
from app.services.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    Claims,
    Subject,
    TokenPair,
    TokenService,
)
from app.services.users import InMemoryUserStore, SqlUserStore, UserRecord, UserStore

logger = logging.getLogger(__name__)


class IdentityService:
    """Login, refresh, logout and per-request authentication."""

    def __init__(
        self,
        tokens: TokenService,
        revocations: RevocationStore | DisabledRevocationStore,
        sessions: SessionRegistry,
        oauth: OAuthExchange,
        users: UserStore,
        events: SecurityEventSink,
        *,
        rotate_refresh_tokens: bool = False,
    ):
        self.tokens = tokens
        self.revocations = revocations
        self.sessions = sessions
        self.oauth = oauth
        self.users = users
        self.events = events
        self.rotate_refresh_tokens = rotate_refresh_tokens

    def emit_event(
        self,
        event_type: SecurityEventType,
        level: SecurityEventLevel = SecurityEventLevel.INFO,
        user_id: str | None = None,
        **metadata: Any,
    ) -> None:
        # Event reporting must never break an auth flow
        try:
            self.events.emit(event_type, level, user_id, metadata)
        except Exception as e:
            logger.debug(f"Security event {event_type} dropped: {e}")

    def _report_failure(self, error: AuthError, operation: str, user_id: str | None = None) -> None:
        level = (
            SecurityEventLevel.INFO
            if isinstance(error, TokenExpiredError)
            else SecurityEventLevel.WARNING
        )
        metadata: dict[str, Any] = {"operation": operation, "code": error.code}
        phase = getattr(error, "phase", None)
        if phase is not None:
            metadata["phase"] = phase.value
        self.emit_event(SecurityEventType.AUTH_FAILURE, level, user_id, **metadata)

    async def begin_login(self, redirect_uri: str | None = None) -> AuthorizationRequest:
        return await self.oauth.begin_auth(redirect_uri)

    async def login(
        self,
        code: str,
        state: str,
        device_class: str,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> TokenPair:
        """Finish the OAuth callback and issue tokens for a session.

        The first failing step's error is raised unchanged. If minting fails
        after admission, the new session stays and the client simply retries.
        """
        try:
            provider_user = await self.oauth.complete_auth(
                code, state, redirect_uri=redirect_uri, code_verifier=code_verifier
            )
        except OAuthError as e:
            self._report_failure(e, "login")
            if isinstance(e, StateNotFoundError):
                self.emit_event(
                    SecurityEventType.CSRF_ATTEMPT,
                    SecurityEventLevel.WARNING,
                    operation="login",
                    reason=e.message,
                )
            raise

        user = await self.users.find_or_create_by_provider_id(
            provider_user.provider_id,
            provider_user.email,
            provider_user.name,
            provider_user.picture,
        )

        admission = await self.sessions.admit(user.id, device_class)
        for evicted in admission.evicted:
            self.emit_event(
                SecurityEventType.SESSION_EVICTED,
                SecurityEventLevel.INFO,
                user.id,
                session_id=evicted.id,
                device_class=evicted.device_class,
            )

        pair = self.tokens.mint(user, admission.session.id)
        self.emit_event(
            SecurityEventType.AUTH_SUCCESS,
            SecurityEventLevel.INFO,
            user.id,
            session_id=admission.session.id,
            device_class=device_class,
            reused_session=admission.reused,
        )
        logger.info(
            f"User {user.id} logged in (session={admission.session.id}, "
            f"reused={admission.reused}, evicted={len(admission.evicted)})"
        )
        return pair

    async def authenticate(self, token: str) -> Claims:
        """Validate an access token for an incoming request.

        Raises TokenError subclasses, SessionInactiveError, or
        StoreUnavailableError when a required store is down.
        """
        try:
            claims = await self.tokens.verify(token)
            if claims.token_type != ACCESS_TOKEN:
                raise WrongTokenTypeError("Access token required")
            if not await self.sessions.is_active(claims.session_id):
                raise SessionInactiveError()
        except (TokenError, SessionInactiveError) as e:
            self._report_failure(e, "authenticate")
            raise

        try:
            await self.sessions.touch(claims.session_id)
        except StoreUnavailableError as e:
            logger.warning(f"Could not update last-seen for session {claims.session_id}: {e}")
        return claims

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Issue a new pair for the session behind ``refresh_token``.

        With refresh rotation enabled the presented token is revoked first,
        so it can be used only once.
        """
        try:
            claims = await self.tokens.verify(refresh_token)
            if claims.token_type != REFRESH_TOKEN:
                raise WrongTokenTypeError("Refresh token required")
            if not await self.sessions.is_active(claims.session_id):
                raise SessionInactiveError()
        except (TokenError, SessionInactiveError) as e:
            self._report_failure(e, "refresh")
            raise

        if self.rotate_refresh_tokens:
            # Only the caller whose insert wins may use the token.
            revoked_now = await self.revocations.add(
                claims.jti,
                claims.user_id,
                claims.session_id,
                claims.expires_at,
                RevocationReason.ROTATION,
            )
            if not revoked_now:
                error = TokenRevokedError("Refresh token already used")
                self._report_failure(error, "refresh", claims.user_id)
                raise error

        pair = self.tokens.mint(Subject(id=claims.user_id, email=claims.email), claims.session_id)
        try:
            await self.sessions.touch(claims.session_id)
        except StoreUnavailableError as e:
            logger.warning(f"Could not update last-seen for session {claims.session_id}: {e}")
        return pair

    async def _revoke_quietly(self, claims: Claims, reason: RevocationReason) -> bool:
        try:
            await self.revocations.add(
                claims.jti, claims.user_id, claims.session_id, claims.expires_at, reason
            )
        except StoreUnavailableError as e:
            logger.error(f"Failed to revoke token {claims.jti}: {e}")
            return False
        self.emit_event(
            SecurityEventType.TOKEN_REVOKED,
            SecurityEventLevel.INFO,
            claims.user_id,
            token_id=claims.jti,
            reason=reason.value,
        )
        return True

    async def logout(self, claims: Claims, refresh_token: str | None = None) -> None:
        """Revoke the caller's tokens and end their session.

        Store failures are logged, not raised: the client discards its tokens
        either way.
        """
        await self._revoke_quietly(claims, RevocationReason.LOGOUT)

        if refresh_token:
            try:
                refresh_claims = self.tokens.decode(refresh_token)
            except TokenError as e:
                logger.info(f"Ignoring unusable refresh token on logout: {e.code}")
            else:
                if (
                    refresh_claims.session_id == claims.session_id
                    and refresh_claims.user_id == claims.user_id
                    and refresh_claims.token_type == REFRESH_TOKEN
                ):
                    await self._revoke_quietly(refresh_claims, RevocationReason.LOGOUT)
                else:
                    logger.warning(f"Refresh token on logout does not belong to session {claims.session_id}")

        try:
            await self.sessions.deactivate(claims.session_id)
        except StoreUnavailableError as e:
            logger.error(f"Failed to deactivate session {claims.session_id}: {e}")
            return

        self.emit_event(
            SecurityEventType.SESSION_INVALIDATED,
            SecurityEventLevel.INFO,
            claims.user_id,
            session_id=claims.session_id,
            reason="logout",
        )
        logger.info(f"User {claims.user_id} logged out of session {claims.session_id}")

    async def logout_all(self, claims: Claims) -> int:
        """End every session of the caller. Returns the number ended."""
        await self._revoke_quietly(claims, RevocationReason.LOGOUT)
        count = await self.sessions.deactivate_all(claims.user_id)
        self.emit_event(
            SecurityEventType.SESSION_INVALIDATED,
            SecurityEventLevel.WARNING,
            claims.user_id,
            reason="logout_all",
            sessions=count,
        )
        logger.info(f"User {claims.user_id} logged out of {count} sessions")
        return count

    async def list_sessions(self, user_id: str) -> list[Session]:
        return await self.sessions.list_active(user_id)

    async def get_user(self, user_id: str) -> UserRecord | None:
        return await self.users.get(user_id)


def build_identity_service(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    *,
    http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    events: SecurityEventSink | None = None,
) -> IdentityService:
    """Assemble the identity service for the configured storage backend."""
    idle_timeout = timedelta(hours=settings.session_idle_timeout_hours)

    if settings.storage_backend == "postgres":
        if session_maker is None:
            from app.core.database import get_session_maker

            session_maker = get_session_maker()
        revocation_backend: Any = SqlRevocationBackend(session_maker)
        sessions: SessionRegistry = SqlSessionRegistry(
            session_maker, settings.max_sessions_per_user, idle_timeout
        )
        state_store: Any = SqlOAuthStateStore(session_maker)
        users: UserStore = SqlUserStore(session_maker)
    else:
        revocation_backend = InMemoryRevocationBackend()
        sessions = InMemorySessionRegistry(settings.max_sessions_per_user, idle_timeout)
        state_store = InMemoryOAuthStateStore()
        users = InMemoryUserStore()

    revocations: RevocationStore | DisabledRevocationStore
    if settings.revocation_enabled:
        revocations = RevocationStore(revocation_backend, settings.revocation_failure_policy)
    else:
        revocations = DisabledRevocationStore()

    return IdentityService(
        tokens=TokenService.from_settings(settings, revocations),
        revocations=revocations,
        sessions=sessions,
        oauth=OAuthExchange.from_settings(settings, state_store, http_client_factory),
        users=users,
        events=events or SecurityMonitor.get_instance(),
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )
