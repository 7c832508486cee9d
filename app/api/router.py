from fastapi import APIRouter

from app.api.v1 import billing, webhooks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(billing.router)
api_router.include_router(webhooks.router)
