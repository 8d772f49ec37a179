"""Result shapes returned by the BillDesk client, processor and routes."""

from typing import Any

from pydantic import BaseModel, Field


class PaymentResult(BaseModel):
    """Continuation descriptor for a created gateway order."""

    success: bool
    transaction_id: str
    order_number: str
    merchant_id: str
    trace_id: str
    bd_order_id: str | None = None
    payment_url: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    rdata: str | None = None
    is_redirect: bool = False
    form_html: str | None = None


class ProcessResult(BaseModel):
    """Outcome of one verified (or rejected) gateway callback."""

    success: bool
    status: str
    order_number: str = "unknown"
    transaction_id: str | None = None
    message: str
    reason: str | None = None
    data: dict[str, Any] | None = None


