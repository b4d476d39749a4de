# /chatflow/routes/orders.py

import structlog
from fastapi import APIRouter, Depends, HTTPException

from chatflow.errors import CollaboratorError
from chatflow.models.api import ParseOrderRequest, ParseOrderResponse
from chatflow.models.domain import cart_total
from chatflow.services.catalog_service import catalog_service
from chatflow.utils.dependencies import verify_api_key
from chatflow.workflows import parser

router = APIRouter(
    prefix="/orders",
    tags=["Orders"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


@router.post("/parse", response_model=ParseOrderResponse)
async def parse_order(request: ParseOrderRequest):
    """Manual import: turns a pasted free-text order into catalog line items."""
    try:
        catalog = await catalog_service.list_all()
    except CollaboratorError as e:
        log.error("Catalog unavailable for order parsing", error=str(e))
        raise HTTPException(status_code=503, detail="Product catalog unavailable")
    items = parser.parse(request.text, catalog)
    log.info("Parsed manual order", lines=len(items))
    return ParseOrderResponse(items=items, total=cart_total(items))
