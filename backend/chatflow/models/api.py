# /chatflow/models/api.py

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from chatflow.models.domain import LineItem

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class ParseOrderRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


class ParseOrderResponse(BaseModel):
    items: List[LineItem]
    total: float


class FlowWarning(BaseModel):
    error_code: str
    message: str
    node_id: Optional[str] = None


class FlowValidationResponse(BaseModel):
    is_valid: bool
    warnings: List[FlowWarning] = []
