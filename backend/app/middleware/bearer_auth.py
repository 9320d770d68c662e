"""Bearer token authentication for the user API (/api/*).

Every /api request must carry ``Authorization: Bearer <access token>``.
The token is checked by IdentityService.authenticate, which covers the
signature, expiry, revocation and session state. Verified claims are placed
on ``request.state.claims`` for the route handlers.
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from app.services.errors import SessionInactiveError, StoreUnavailableError, TokenError

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api"

# Public endpoints under the protected prefix
EXCLUDED_PATHS = [
    "/api/health",
]

INVALID_CREDENTIALS = "Invalid or expired credentials"


def extract_bearer_token(request: Request) -> str | None:
    """Return the token from an ``Authorization: Bearer`` header, if present."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _unauthorized(detail: str = INVALID_CREDENTIALS) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated /api requests before they reach a route."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # CORS preflight is answered by CORSMiddleware
        if request.method == "OPTIONS":
            return await call_next(request)

        if not (path == PROTECTED_PREFIX or path.startswith(PROTECTED_PREFIX + "/")):
            return await call_next(request)

        if path in EXCLUDED_PATHS:
            return await call_next(request)

        token = extract_bearer_token(request)
        if not token:
            logger.info(f"API request without token: {request.method} {path}")
            return _unauthorized("Authentication required")

        identity = request.app.state.identity
        try:
            claims = await identity.authenticate(token)
        except (TokenError, SessionInactiveError) as e:
            logger.info(f"Rejected token for {request.method} {path}: {e.code}")
            return _unauthorized()
        except StoreUnavailableError as e:
            logger.error(f"Cannot authenticate {request.method} {path}: {e}")
            return JSONResponse(
                status_code=503,
                content={"detail": "Service temporarily unavailable"},
            )

        request.state.claims = claims
        return await call_next(request)
