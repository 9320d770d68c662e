# Silence Notes Models
from app.models.base import BaseModel
from app.models.oauth_state import OAuthState
from app.models.token_blacklist import RevokedToken
from app.models.user import User
from app.models.user_session import UserSession

__all__ = [
    "BaseModel",
    "OAuthState",
    "RevokedToken",
    "User",
    "UserSession",
]
