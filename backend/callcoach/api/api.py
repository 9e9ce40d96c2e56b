from fastapi import APIRouter
from callcoach.api.endpoints import analysis, sessions

api_router = APIRouter()
api_router.include_router(analysis.router, prefix="/analysis", tags=["analysis"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
