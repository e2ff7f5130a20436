"""Models for payment reconciliation and purchases."""

import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class CheckOutcome(str, enum.Enum):
    """Result of checking one payment against the gateway."""
    ACTIVATED = "activated"
    NOT_PAID = "not_paid"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"


class ActivationResult(BaseModel):
    """A grant created for a completed payment."""
    payment_id: int = Field(..., description="Completed payment ID")
    grant_id: int = Field(..., description="Created grant ID")
    principal_id: int
    endpoint_code: str
    client_uuid: str
    expires_at: datetime
    descriptor: str = Field(..., description="vless:// connection URI")


class CheckResult(BaseModel):
    """Outcome of a single payment check."""
    label: str
    outcome: CheckOutcome
    activation: Optional[ActivationResult] = None
    error: Optional[str] = None


class PollReport(BaseModel):
    """Summary of one reconciliation tick."""
    started_at: datetime = Field(default_factory=datetime.utcnow)
    checked: int = 0
    activated: List[ActivationResult] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list, description="Labels whose check or activation failed")
    skipped: int = Field(default=0, description="Pending payments without a label")


class PurchaseResult(BaseModel):
    """Result of starting a purchase.

    Trials are activated immediately and carry ``activation``; paid tariffs
    carry the ``pay_url`` the principal completes the payment through.
    """
    payment_id: int
    label: str
    amount: int
    tariff_id: str
    endpoint_code: str
    pay_url: Optional[str] = None
    activation: Optional[ActivationResult] = None
