from typing import Any

from fastapi import APIRouter, Request

from ..core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    broker = request.app.state.broker
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "active_sessions": len(broker.registry),
        "connections": len(request.app.state.connections),
    }
