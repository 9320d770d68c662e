"""Google sign-in using the authorization code flow with PKCE (S256).

begin_auth() stores ``state -> code_verifier`` and returns the consent URL.
complete_auth() consumes that state exactly once, trades the code for an
access token and fetches the user's profile.
"""

import hashlib
import hmac
import logging
import secrets
import threading
from base64 import urlsafe_b64encode
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode, urlparse

import httpx
from sqlalchemy import delete
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.models.oauth_state import OAuthState
from app.services.errors import (
    ExchangePhase,
    InvalidProviderProfileError,
    ProviderExchangeFailedError,
    RedirectMismatchError,
    StateExpiredError,
    StateNotFoundError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

STATE_TTL = timedelta(minutes=10)
MIN_STATE_LENGTH = 16

OAUTH_USER_AGENT = "SilenceNotes/1.0 (OAuth Client)"
OAUTH_TIMEOUT = 10.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def generate_pkce() -> tuple[str, str]:
    """Generate PKCE code_verifier and code_challenge (S256).

    Returns:
        Tuple of (code_verifier, code_challenge).
    """
    code_verifier = secrets.token_urlsafe(64)[:128]
    return code_verifier, code_challenge_for(code_verifier)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class PendingAuth:
    """An authorization request waiting for its callback."""

    state: str
    code_verifier: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class AuthorizationRequest:
    auth_url: str
    state: str


@dataclass(frozen=True)
class ProviderUser:
    """Verified identity returned by the provider."""

    provider_id: str
    email: str
    name: str
    picture: str | None = None


class OAuthStateStore(Protocol):
    async def put(self, pending: PendingAuth) -> None: ...

    async def take(self, state: str) -> PendingAuth | None:
        """Atomically remove and return the entry for ``state``."""
        ...

    async def purge_expired(self, now: datetime) -> int: ...


class InMemoryOAuthStateStore:
    """Pending requests held in process memory.

    Expiry is checked by the caller on read. Nothing is deleted by timers, so
    a slow callback can never race a cleanup of its own state.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingAuth] = {}
        self._lock = threading.Lock()

    async def put(self, pending: PendingAuth) -> None:
        with self._lock:
            self._pending[pending.state] = pending

    async def take(self, state: str) -> PendingAuth | None:
        with self._lock:
            return self._pending.pop(state, None)

    async def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, v in self._pending.items() if v.is_expired(now)]
            for k in expired:
                del self._pending[k]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class SqlOAuthStateStore:
    """Pending requests in PostgreSQL, shared across workers.

    ``take`` is a single ``DELETE ... RETURNING`` so only one caller can
    ever receive a given state.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def put(self, pending: PendingAuth) -> None:
        try:
            async with self._session_maker() as db:
                db.add(
                    OAuthState(
                        state=pending.state,
                        code_verifier=pending.code_verifier,
                        redirect_uri=pending.redirect_uri,
                        created_at=pending.created_at,
                        expires_at=pending.expires_at,
                    )
                )
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Failed to store OAuth state: {e}") from e

    async def take(self, state: str) -> PendingAuth | None:
        stmt = (
            delete(OAuthState)
            .where(OAuthState.state == state)
            .returning(
                OAuthState.state,
                OAuthState.code_verifier,
                OAuthState.redirect_uri,
                OAuthState.created_at,
                OAuthState.expires_at,
            )
        )
        try:
            async with self._session_maker() as db:
                result = await db.execute(stmt)
                row = result.one_or_none()
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Failed to read OAuth state: {e}") from e
        if row is None:
            return None
        return PendingAuth(
            state=row.state,
            code_verifier=row.code_verifier,
            redirect_uri=row.redirect_uri,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    async def purge_expired(self, now: datetime) -> int:
        try:
            async with self._session_maker() as db:
                result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                    delete(OAuthState).where(OAuthState.expires_at <= now)
                )
                await db.commit()
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Failed to purge OAuth states: {e}") from e


def _get_http_client(timeout: float = OAUTH_TIMEOUT) -> httpx.AsyncClient:
    """Create an httpx client for provider token/profile requests."""
    return httpx.AsyncClient(
        timeout=timeout,
        headers={"User-Agent": OAUTH_USER_AGENT},
    )


def _provider_error(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        return str(error) if error else None
    return None


class OAuthExchange:
    """PKCE-protected code exchange against Google."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        state_store: OAuthStateStore,
        *,
        scopes: list[str] | None = None,
        auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth",
        token_url: str = "https://oauth2.googleapis.com/token",
        userinfo_url: str = "https://www.googleapis.com/oauth2/v2/userinfo",
        state_ttl: timedelta = STATE_TTL,
        http_client_factory: Callable[[], httpx.AsyncClient] = _get_http_client,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_url = redirect_url
        self.scopes = scopes or ["openid", "email", "profile"]
        self.state_store = state_store
        self.auth_url = auth_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.state_ttl = state_ttl
        self._http_client_factory = http_client_factory
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        state_store: OAuthStateStore,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> "OAuthExchange":
        return cls(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_url,
            state_store,
            scopes=settings.google_scopes,
            auth_url=settings.google_auth_url,
            token_url=settings.google_token_url,
            userinfo_url=settings.google_userinfo_url,
            state_ttl=timedelta(seconds=settings.oauth_state_ttl_seconds),
            http_client_factory=http_client_factory
            or partial(_get_http_client, settings.oauth_http_timeout_seconds),
        )

    def validate_redirect_url(self, url: str) -> str:
        """Accept ``url`` only if scheme, host and path match the configured callback."""
        expected = urlparse(self.redirect_url)
        actual = urlparse(url)
        if (
            actual.scheme.lower() != expected.scheme.lower()
            or actual.netloc.lower() != expected.netloc.lower()
            or actual.path != expected.path
        ):
            raise RedirectMismatchError(f"Redirect URL not allowed: {url}")
        return url

    async def begin_auth(self, redirect_uri: str | None = None) -> AuthorizationRequest:
        """Create a pending request and build the provider consent URL."""
        redirect_uri = self.validate_redirect_url(redirect_uri) if redirect_uri else self.redirect_url
        state = generate_state()
        code_verifier, code_challenge = generate_pkce()
        now = self._clock()

        await self.state_store.put(
            PendingAuth(
                state=state,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
                created_at=now,
                expires_at=now + self.state_ttl,
            )
        )

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
        }
        return AuthorizationRequest(auth_url=f"{self.auth_url}?{urlencode(params)}", state=state)

    async def complete_auth(
        self,
        code: str,
        state: str,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> ProviderUser:
        """Consume ``state`` and exchange ``code`` for the user's profile.

        Args:
            code: Authorization code from the callback.
            state: State value from the callback.
            redirect_uri: Callback URL the client used, if it reports one.
            code_verifier: Verifier held by the client, if it kept one. Must
                match the stored verifier.

        Raises:
            StateNotFoundError, StateExpiredError, RedirectMismatchError,
            ProviderExchangeFailedError, InvalidProviderProfileError
        """
        phase = ExchangePhase.STARTED
        if not state or len(state) < MIN_STATE_LENGTH:
            raise StateNotFoundError("Missing or malformed state", phase)

        pending = await self.state_store.take(state)
        if pending is None:
            raise StateNotFoundError("Unknown or already used state", phase)
        if pending.is_expired(self._clock()):
            raise StateExpiredError("Authorization request expired", phase)

        if not code:
            raise ProviderExchangeFailedError("Missing authorization code", phase)
        phase = ExchangePhase.CODE_RECEIVED
        logger.debug(f"OAuth state {state[:8]}... consumed, exchanging code")

        if redirect_uri is not None:
            self.validate_redirect_url(redirect_uri)
            if redirect_uri != pending.redirect_uri:
                raise RedirectMismatchError("Redirect URL differs from the authorization request", phase)

        if code_verifier is not None and not hmac.compare_digest(
            code_verifier.encode("utf-8"), pending.code_verifier.encode("utf-8")
        ):
            raise ProviderExchangeFailedError("PKCE code_verifier mismatch", phase)

        async with self._http_client_factory() as client:
            access_token = await self._exchange_code(client, code, pending, phase)
            phase = ExchangePhase.EXCHANGED
            profile = await self._fetch_profile(client, access_token, phase)

        user = self._parse_profile(profile, phase)
        logger.debug(f"OAuth exchange phase: {ExchangePhase.PROFILE_FETCHED.value}")
        logger.info(f"OAuth exchange completed for provider user {user.provider_id}")
        return user

    async def _exchange_code(
        self,
        client: httpx.AsyncClient,
        code: str,
        pending: PendingAuth,
        phase: ExchangePhase,
    ) -> str:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "code_verifier": pending.code_verifier,
        }
        try:
            response = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            token_data = response.json()
        except httpx.HTTPStatusError as e:
            provider_error = _provider_error(e.response)
            logger.warning(
                f"Token exchange rejected: HTTP {e.response.status_code} ({provider_error})"
            )
            raise ProviderExchangeFailedError(
                f"Token exchange failed: HTTP {e.response.status_code}",
                phase,
                provider_error=provider_error,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderExchangeFailedError(f"Token exchange request failed: {e}", phase) from e
        except ValueError as e:
            raise ProviderExchangeFailedError("Token endpoint returned invalid JSON", phase) from e

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token:
            raise ProviderExchangeFailedError("Token response has no access_token", phase)
        return str(access_token)

    async def _fetch_profile(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        phase: ExchangePhase,
    ) -> dict[str, Any]:
        try:
            response = await client.get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            profile = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderExchangeFailedError(
                f"Profile request failed: HTTP {e.response.status_code}", phase
            ) from e
        except httpx.HTTPError as e:
            raise ProviderExchangeFailedError(f"Profile request failed: {e}", phase) from e
        except ValueError as e:
            raise InvalidProviderProfileError("Profile response is not JSON", phase) from e
        if not isinstance(profile, dict):
            raise InvalidProviderProfileError("Profile response is not an object", phase)
        return profile

    @staticmethod
    def _parse_profile(profile: dict[str, Any], phase: ExchangePhase) -> ProviderUser:
        provider_id = str(profile.get("id") or "").strip()
        email = str(profile.get("email") or "").strip()
        if not provider_id:
            raise InvalidProviderProfileError("Profile has no id", phase)
        if not email:
            raise InvalidProviderProfileError("Profile has no email", phase)
        if profile.get("verified_email") is not True:
            raise InvalidProviderProfileError("Email address is not verified", phase)
        return ProviderUser(
            provider_id=provider_id,
            email=email,
            name=str(profile.get("name") or ""),
            picture=profile.get("picture") or None,
        )
