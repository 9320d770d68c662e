"""Endpoints about the signed-in user."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.auth import get_identity_service
from app.schemas.auth import UserResponse
from app.services.errors import StoreUnavailableError
from app.services.identity import IdentityService
from app.services.tokens import Claims

router = APIRouter(prefix="/user", tags=["user"])


def current_claims(request: Request) -> Claims:
    """Claims set by BearerAuthMiddleware."""
    return request.state.claims


@router.get("/me", response_model=UserResponse)
async def get_me(
    claims: Claims = Depends(current_claims),
    identity: IdentityService = Depends(get_identity_service),
) -> UserResponse:
    """Get the current user's profile."""
    try:
        user = await identity.get_user(claims.user_id)
    except StoreUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        ) from e
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserResponse.model_validate(user)
