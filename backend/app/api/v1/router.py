from fastapi import APIRouter

from app.api.v1.endpoints import attempts, grades, health


api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(attempts.router)
api_router.include_router(grades.router)
