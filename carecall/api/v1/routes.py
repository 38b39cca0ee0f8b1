"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter
from carecall.api.v1.endpoints import (
    calls,
    health,
    media_stream,
    tools,
    twilio_webhooks,
)

api_router = APIRouter()

api_router.include_router(health.router)

# Carrier webhooks and the media stream
api_router.include_router(twilio_webhooks.router)
api_router.include_router(media_stream.router)

# Internal (shared-secret) endpoints
api_router.include_router(calls.router)
api_router.include_router(tools.router)
