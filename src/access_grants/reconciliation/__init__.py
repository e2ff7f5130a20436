"""Payment reconciliation.

Polls the gateway ledger for pending payments and turns confirmed
deposits into provisioned grants.

Features:
- Per-payment checks by invoice label, scheduled or user-triggered
- Purchase start for trials (activated immediately) and paid tariffs
- At most one grant per completed payment under concurrent checks
"""

from .models import (
    ActivationResult,
    CheckOutcome,
    CheckResult,
    PollReport,
    PurchaseResult,
)
from .reconciler import PaymentReconciler, to_epoch_ms

__all__ = [
    # Models
    "ActivationResult",
    "CheckOutcome",
    "CheckResult",
    "PollReport",
    "PurchaseResult",
    # Core
    "PaymentReconciler",
    "to_epoch_ms",
]
