# Silence Notes Services
from app.services.identity import IdentityService, build_identity_service
from app.services.security_events import SecurityMonitor
from app.services.tokens import Claims, TokenPair, TokenService

__all__ = [
    "Claims",
    "IdentityService",
    "SecurityMonitor",
    "TokenPair",
    "TokenService",
    "build_identity_service",
]
