# Silence Notes Pydantic Schemas
from app.schemas.auth import (
    LoginURLResponse,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    OAuthCallbackRequest,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
    ValidateResponse,
)

__all__ = [
    "LoginURLResponse",
    "LogoutAllResponse",
    "LogoutRequest",
    "MessageResponse",
    "OAuthCallbackRequest",
    "RefreshRequest",
    "SessionResponse",
    "TokenResponse",
    "UserResponse",
    "ValidateResponse",
]
