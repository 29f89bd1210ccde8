from fastapi import APIRouter

from app.api.routes.coaches import router as coaches_router
from app.api.routes.health import router as health_router
from app.api.routes.ingestion import router as ingestion_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes used by the inbound email provider.
api_router.include_router(ingestion_router)
api_router.include_router(coaches_router)

v1_router.include_router(ingestion_router)
v1_router.include_router(coaches_router)
api_router.include_router(v1_router)
