"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from studio.api.routes import admin, bookings, checkout, classes, internal, tokens, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(classes.router)
api_router.include_router(bookings.router)
api_router.include_router(tokens.router)
api_router.include_router(checkout.router)
api_router.include_router(webhooks.router)
api_router.include_router(admin.router)
api_router.include_router(internal.router)
