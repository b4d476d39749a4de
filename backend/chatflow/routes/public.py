# /chatflow/routes/public.py

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from chatflow.config.settings import settings
from chatflow.services.db_service import db_service
from chatflow.services.conversation_service import conversation_service
from chatflow.utils.dependencies import verify_api_key

# Health probes and the Prometheus scrape endpoint. /metrics is guarded by
# the operator API key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Chatflow WhatsApp Interpreter",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Health Check")
async def health_check():
    """Reports database reachability and the session backend in use."""
    database_ok = await db_service.health_check()
    body = {
        "status": "healthy" if database_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "database": "connected" if database_ok else "error",
            "sessions": settings.session_backend,
            "whatsapp": "configured" if settings.whatsapp_access_token else "not_configured",
        },
    }
    return JSONResponse(body, status_code=200 if database_ok else 503)


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive", "sessions": type(conversation_service.store).__name__}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(_: None = Depends(verify_api_key)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
