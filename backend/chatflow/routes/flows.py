# /chatflow/routes/flows.py

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Body, Depends

from chatflow.models.api import FlowValidationResponse, FlowWarning
from chatflow.services.flow_repository import flow_repository
from chatflow.utils.dependencies import verify_api_key
from chatflow.workflows.validator import validate_flow_document

router = APIRouter(
    prefix="/flows",
    tags=["Flows"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


@router.post("/validate", response_model=FlowValidationResponse)
async def validate_flow(document: Dict[str, Any] = Body(...), check_links: bool = False):
    """
    Runs the authoring checks on a flow document from the editor. With
    `check_links`, flow link targets are checked against the active flows.
    """
    known_ids = None
    if check_links:
        known_ids = [flow.id for flow in await flow_repository.list_flows()]
    _, issues = validate_flow_document(document, known_ids)
    log.info("Flow validated", issues=len(issues))
    return FlowValidationResponse(
        is_valid=not issues,
        warnings=[FlowWarning(**issue) for issue in issues]
    )
