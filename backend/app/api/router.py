"""Silence Notes API Router - aggregates the bearer-protected routes."""

from fastapi import APIRouter

from app.api import user

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

api_router.include_router(user.router)
