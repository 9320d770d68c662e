"""JWT minting and verification.

Tokens are HMAC-signed with a single configured algorithm. The algorithm in a
token's header is never trusted: decoding pins ``algorithms`` to the
configured value, so ``alg: none`` and algorithm-confusion tokens fail the
signature check.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    ImmatureSignatureError,
    InvalidAlgorithmError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidKeyError,
    PyJWTError,
)
from jwt.exceptions import InvalidSignatureError as JWTInvalidSignatureError

from app.core.config import Settings
from app.services.errors import (
    AudienceMismatchError,
    InvalidSignatureError,
    IssuerMismatchError,
    MalformedTokenError,
    TokenExpiredError,
    TokenRevokedError,
    TokenSigningError,
)

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

REQUIRED_CLAIMS = ["sub", "session_id", "email", "type", "iss", "aud", "iat", "nbf", "exp", "jti"]


class TokenSubject(Protocol):
    """Anything with a user id and email can be issued tokens."""

    id: str
    email: str


@dataclass(frozen=True)
class Subject:
    id: str
    email: str


class RevocationCheck(Protocol):
    """Capability the codec consults on every verification."""

    async def is_revoked(self, token_id: str) -> bool: ...


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Claims:
    """Verified token contents."""

    user_id: str
    session_id: str
    email: str
    token_type: str
    jti: str
    issuer: str
    audience: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Claims":
        audience = payload["aud"]
        if isinstance(audience, list):
            audience = audience[0] if audience else ""
        try:
            return cls(
                user_id=str(payload["sub"]),
                session_id=str(payload["session_id"]),
                email=str(payload["email"]),
                token_type=str(payload["type"]),
                jti=str(payload["jti"]),
                issuer=str(payload["iss"]),
                audience=str(audience),
                issued_at=datetime.fromtimestamp(payload["iat"], UTC),
                not_before=datetime.fromtimestamp(payload["nbf"], UTC),
                expires_at=datetime.fromtimestamp(payload["exp"], UTC),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise MalformedTokenError(f"Invalid claim values: {e}") from e


@dataclass(frozen=True)
class TokenPair:
    """Access and refresh token issued together for one session."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenService:
    """Mints token pairs and verifies presented tokens."""

    def __init__(
        self,
        secret_key: str,
        revocation: RevocationCheck,
        *,
        algorithm: str = "HS256",
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=60),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise TokenSigningError(f"Unsupported signing algorithm: {algorithm}")
        if not secret_key:
            raise TokenSigningError("Signing key is empty")
        if revocation is None:
            raise TokenSigningError("A revocation check is required")

        self._secret_key = secret_key
        self._algorithm = algorithm
        self._revocation = revocation
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, revocation: RevocationCheck) -> "TokenService":
        return cls(
            settings.jwt_secret_key,
            revocation,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.jwt_access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.jwt_refresh_token_expire_days),
        )

    def _encode(self, subject: TokenSubject, session_id: str, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": str(subject.id),
            "session_id": session_id,
            "email": subject.email,
            "type": token_type,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "nbf": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
        }
        try:
            token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        except (InvalidKeyError, NotImplementedError, TypeError) as e:
            raise TokenSigningError(f"Failed to sign token: {e}") from e
        return str(token)

    def mint(self, user: TokenSubject, session_id: str) -> TokenPair:
        """Issue a fresh access/refresh pair bound to ``session_id``."""
        return TokenPair(
            access_token=self._encode(user, session_id, ACCESS_TOKEN, self.access_ttl),
            refresh_token=self._encode(user, session_id, REFRESH_TOKEN, self.refresh_ttl),
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def decode(self, token: str) -> Claims:
        """Check signature, time window, issuer and audience. No revocation lookup."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": REQUIRED_CLAIMS},
            )
        except (ExpiredSignatureError, ImmatureSignatureError) as e:
            raise TokenExpiredError(str(e)) from e
        except InvalidIssuerError as e:
            raise IssuerMismatchError(str(e)) from e
        except InvalidAudienceError as e:
            raise AudienceMismatchError(str(e)) from e
        except (JWTInvalidSignatureError, InvalidAlgorithmError) as e:
            raise InvalidSignatureError(str(e)) from e
        except DecodeError as e:
            raise MalformedTokenError(str(e)) from e
        except PyJWTError as e:
            raise MalformedTokenError(str(e)) from e
        return Claims.from_payload(payload)

    async def verify(self, token: str) -> Claims:
        """Decode ``token`` and reject it if its jti has been revoked.

        Raises StoreUnavailableError when the revocation backend is down and
        the configured policy is fail-closed.
        """
        claims = self.decode(token)
        if await self._revocation.is_revoked(claims.jti):
            raise TokenRevokedError()
        return claims
