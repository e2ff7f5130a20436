"""Database module for grant and payment persistence."""

from .models import (
    Base,
    Principal,
    Payment,
    Grant,
    Alert,
    PaymentStatus,
    AlertType,
)
from .session import (
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    PrincipalRepository,
    PaymentRepository,
    GrantRepository,
    AlertRepository,
    STALE_PAYMENT_AGE,
)

__all__ = [
    "Base",
    "Principal",
    "Payment",
    "Grant",
    "Alert",
    "PaymentStatus",
    "AlertType",
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    "PrincipalRepository",
    "PaymentRepository",
    "GrantRepository",
    "AlertRepository",
    "STALE_PAYMENT_AGE",
]
