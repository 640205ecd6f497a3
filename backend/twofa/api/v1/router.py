"""API v1 router."""

from fastapi import APIRouter

from twofa.api.v1.endpoints import admin_twofa, twofa

api_router = APIRouter()

api_router.include_router(twofa.router)
api_router.include_router(admin_twofa.router)
