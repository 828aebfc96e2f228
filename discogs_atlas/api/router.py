from fastapi import APIRouter

from discogs_atlas.api.routes import analyses, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(analyses.router, prefix="/analyses", tags=["analyses"])
