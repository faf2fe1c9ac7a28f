from fastapi import APIRouter

from app.api.v1 import billing, subscriptions

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(billing.router)
api_router.include_router(subscriptions.router)
