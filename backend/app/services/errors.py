"""Identity and session error taxonomy.

Every error carries a stable ``code`` that is logged and sent to the security
event sink. The HTTP layer maps whole families to generic responses so the
code is never shown to callers.
"""

from enum import Enum


class AuthError(Exception):
    """Base authentication error."""

    code = "auth_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# --- Credential errors ---


class TokenError(AuthError):
    """Token could not be accepted."""

    code = "token_error"


class MalformedTokenError(TokenError):
    """Token is not a well-formed JWT or lacks required claims."""

    code = "malformed_token"


class InvalidSignatureError(TokenError):
    """Token signature does not verify."""

    code = "invalid_signature"


class TokenExpiredError(TokenError):
    """Token is expired or not yet valid."""

    code = "token_expired"


class IssuerMismatchError(TokenError):
    """Token was issued by someone else."""

    code = "issuer_mismatch"


class AudienceMismatchError(TokenError):
    """Token is meant for a different audience."""

    code = "audience_mismatch"


class TokenRevokedError(TokenError):
    """Token has been revoked."""

    code = "token_revoked"


class WrongTokenTypeError(TokenError):
    """Access token used where a refresh token is required, or the reverse."""

    code = "wrong_token_type"


class SessionInactiveError(AuthError):
    """Session behind the token is no longer active."""

    code = "session_inactive"


# --- OAuth errors ---


class ExchangePhase(str, Enum):
    """Progress of one OAuth code exchange attempt."""

    STARTED = "started"
    CODE_RECEIVED = "code_received"
    EXCHANGED = "exchanged"
    PROFILE_FETCHED = "profile_fetched"
    FAILED = "failed"


class OAuthError(AuthError):
    """OAuth exchange failed."""

    code = "oauth_error"

    def __init__(self, message: str | None = None, phase: ExchangePhase = ExchangePhase.FAILED):
        self.phase = phase
        super().__init__(message)


class StateNotFoundError(OAuthError):
    """OAuth state is unknown or was already used."""

    code = "state_not_found"


class StateExpiredError(OAuthError):
    """OAuth state is older than its time-to-live."""

    code = "state_expired"


class RedirectMismatchError(OAuthError):
    """Redirect URL does not match the configured callback."""

    code = "redirect_mismatch"


class InvalidProviderProfileError(OAuthError):
    """Identity provider returned an unusable profile."""

    code = "invalid_provider_profile"


class ProviderExchangeFailedError(OAuthError):
    """Code exchange with the identity provider failed."""

    code = "provider_exchange_failed"

    def __init__(
        self,
        message: str | None = None,
        phase: ExchangePhase = ExchangePhase.FAILED,
        provider_error: str | None = None,
    ):
        self.provider_error = provider_error
        super().__init__(message, phase)


# --- Infrastructure errors ---


class StoreUnavailableError(AuthError):
    """Backing store could not be reached."""

    code = "store_unavailable"


class TokenSigningError(Exception):
    """Signing key or algorithm is misconfigured.

    Not an AuthError: this is a deployment problem and is never mapped to a
    401 response.
    """
