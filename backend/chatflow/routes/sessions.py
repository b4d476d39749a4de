# /chatflow/routes/sessions.py

import structlog
from fastapi import APIRouter, Depends, HTTPException

from chatflow.config.settings import settings
from chatflow.models.api import APIResponse
from chatflow.services.conversation_service import conversation_service
from chatflow.utils.dependencies import verify_api_key

# Operator endpoints for a single conversation: inspect it, hand it back to
# the bot after a human took over, or wipe it.

router = APIRouter(
    prefix="/sessions",
    tags=["Sessions"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


@router.get("/{key}", response_model=APIResponse)
async def get_session(key: str):
    session = await conversation_service.get_session(key)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return APIResponse(
        success=True,
        message="Session retrieved.",
        data=session.model_dump(mode="json"),
        version=settings.api_version
    )


@router.post("/{key}/resolve", response_model=APIResponse)
async def resolve_session(key: str):
    """Hands a paused conversation back to the bot."""
    result = await conversation_service.resolve_handover(key)
    if result is None:
        raise HTTPException(status_code=404, detail="Session not found")
    log.info("Handover resolve requested", conversation_key=key, status=result["status"])
    return APIResponse(
        success=result["status"] != "error",
        message="Session was not paused." if result["status"] == "not_paused" else "Session resumed.",
        data={
            "status": result["status"],
            "sent": len(result["outbound"]),
            "session": result["session"].model_dump(mode="json") if result["session"] else None,
        },
        version=settings.api_version
    )


@router.delete("/{key}", response_model=APIResponse)
async def delete_session(key: str):
    await conversation_service.reset_session(key)
    log.info("Session deleted", conversation_key=key)
    return APIResponse(success=True, message="Session deleted.", version=settings.api_version)
