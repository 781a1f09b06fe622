"""Main API router."""

from fastapi import APIRouter
from tessera.api.execute import router as execute_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(execute_router)
