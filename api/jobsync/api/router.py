from fastapi import APIRouter

from jobsync.api.routes import companies, dedupe, health, listings, sync

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(dedupe.router, prefix="/dedupe", tags=["listings"])
api_router.include_router(listings.router, prefix="/listings", tags=["listings"])
api_router.include_router(companies.router, prefix="/companies", tags=["discovery"])
