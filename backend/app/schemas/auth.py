"""Pydantic schemas for authentication API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LoginURLResponse(BaseModel):
    """Where to send the browser to start Google sign-in."""

    auth_url: str
    state: str = Field(description="Opaque value the callback must echo back")


class OAuthCallbackRequest(BaseModel):
    """Authorization code returned by Google."""

    code: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=256)
    redirect_uri: str | None = Field(
        None, max_length=2048, description="Callback URL used, if the client changed it"
    )
    code_verifier: str | None = Field(
        None,
        min_length=43,
        max_length=128,
        description="PKCE verifier, for clients that kept their own copy",
    )
    device_class: str | None = Field(
        None,
        min_length=1,
        max_length=64,
        pattern=r"^[A-Za-z0-9._-]+$",
        description="Client-declared device class. Defaults to a User-Agent based guess.",
    )


class TokenResponse(BaseModel):
    """Response with JWT tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(description="Access token expiry in seconds")


class RefreshRequest(BaseModel):
    """Request for token refresh."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Request for logout with optional refresh token revocation."""

    refresh_token: str | None = Field(
        None,
        description="Refresh token to revoke along with the access token.",
    )


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class LogoutAllResponse(MessageResponse):
    sessions_ended: int


class ValidateResponse(BaseModel):
    """Result of validating the presented access token."""

    valid: bool
    user_id: str
    session_id: str
    expires_at: datetime


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_class: str
    created_at: datetime
    last_seen_at: datetime
    current: bool = False


class UserResponse(BaseModel):
    """Response with user information."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    picture: str | None = None
    created_at: datetime | None = None
