"""Subscription lifecycle store.

Every public method runs in its own transaction and returns detached
pydantic records, so callers never hold ORM rows across operations.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .database import (
    AlertRepository,
    DatabaseManager,
    GrantRepository,
    PaymentRepository,
    PaymentStatus,
    PrincipalRepository,
    STALE_PAYMENT_AGE,
)
from .exceptions import NotFoundError, StateConflictError
from .tariffs import TariffId

logger = logging.getLogger(__name__)


class GrantRecord(BaseModel):
    """Snapshot of a grant row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    principal_id: int
    endpoint_code: str
    client_uuid: str
    client_email: str
    tariff_id: str
    expires_at: datetime
    max_devices: int
    traffic_limit: int = 0
    traffic_used: int = 0
    is_active: bool
    payment_id: Optional[int] = None
    created_at: datetime


class PaymentRecord(BaseModel):
    """Snapshot of a payment row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    principal_id: int
    tariff_id: str
    endpoint_code: str
    amount: int
    currency: str
    status: PaymentStatus
    invoice_id: Optional[str] = None
    payload: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


class PrincipalRecord(BaseModel):
    """Snapshot of a principal row."""

    model_config = ConfigDict(from_attributes=True)

    principal_id: int
    trial_used: bool
    is_blocked: bool
    created_at: datetime


class AlertRecord(BaseModel):
    """Snapshot of an alert row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    message: str
    created_at: datetime


class LifecycleStore:
    """Atomic operations over grants, payments, principals and alerts."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # Principals

    async def ensure_principal(self, principal_id: int) -> PrincipalRecord:
        async with self.db.session() as session:
            principal = await PrincipalRepository(session).ensure(principal_id)
            return PrincipalRecord.model_validate(principal)

    async def get_principal(self, principal_id: int) -> Optional[PrincipalRecord]:
        async with self.db.session() as session:
            principal = await PrincipalRepository(session).get(principal_id)
            return PrincipalRecord.model_validate(principal) if principal else None

    async def mark_trial_used(self, principal_id: int) -> None:
        async with self.db.session() as session:
            await PrincipalRepository(session).mark_trial_used(principal_id)

    async def block_principal(self, principal_id: int, blocked: bool = True) -> PrincipalRecord:
        async with self.db.session() as session:
            principal = await PrincipalRepository(session).set_blocked(principal_id, blocked)
            logger.info(f"Principal {principal_id} {'blocked' if blocked else 'unblocked'}")
            return PrincipalRecord.model_validate(principal)

    # Grants

    async def create_grant(
        self,
        principal_id: int,
        endpoint_code: str,
        client_uuid: str,
        client_email: str,
        tariff_id: str,
        expires_at: datetime,
        max_devices: int,
        traffic_limit: int = 0,
        payment_id: Optional[int] = None,
    ) -> GrantRecord:
        """Insert an active grant, creating the principal if needed."""
        async with self.db.session() as session:
            await PrincipalRepository(session).ensure(principal_id)
            grant = await GrantRepository(session).create(
                principal_id=principal_id,
                endpoint_code=endpoint_code,
                client_uuid=client_uuid,
                client_email=client_email,
                tariff_id=tariff_id,
                expires_at=expires_at,
                max_devices=max_devices,
                traffic_limit=traffic_limit,
                payment_id=payment_id,
            )
            return GrantRecord.model_validate(grant)

    async def get_grant(self, grant_id: int) -> Optional[GrantRecord]:
        async with self.db.session() as session:
            grant = await GrantRepository(session).get_by_id(grant_id)
            return GrantRecord.model_validate(grant) if grant else None

    async def deactivate_grant(self, grant_id: int) -> bool:
        """Deactivate a grant. Deactivation is terminal; repeating it is a no-op.

        Returns:
            True if the grant was active before this call.
        """
        async with self.db.session() as session:
            changed = await GrantRepository(session).deactivate(grant_id)
        if changed:
            logger.info(f"Grant {grant_id} deactivated")
        return changed

    async def deactivate_all_grants_for_principal(self, principal_id: int) -> List[GrantRecord]:
        async with self.db.session() as session:
            grants = await GrantRepository(session).deactivate_for_principal(principal_id)
            records = [GrantRecord.model_validate(g) for g in grants]
        if records:
            logger.info(f"Deactivated {len(records)} grant(s) of principal {principal_id}")
        return records

    async def list_expired_grants(self, now: Optional[datetime] = None) -> List[GrantRecord]:
        """Active grants whose expiry is at or before ``now``."""
        async with self.db.session() as session:
            grants = await GrantRepository(session).list_expired(now)
            return [GrantRecord.model_validate(g) for g in grants]

    async def list_active_grants(self, principal_id: int) -> List[GrantRecord]:
        async with self.db.session() as session:
            grants = await GrantRepository(session).list_active(principal_id=principal_id)
            return [GrantRecord.model_validate(g) for g in grants]

    async def list_all_active_grants(self, endpoint_code: Optional[str] = None) -> List[GrantRecord]:
        async with self.db.session() as session:
            grants = await GrantRepository(session).list_active(endpoint_code=endpoint_code)
            return [GrantRecord.model_validate(g) for g in grants]

    async def count_active_grants(self, endpoint_code: str) -> int:
        async with self.db.session() as session:
            return await GrantRepository(session).count_active(endpoint_code)

    async def update_grant_traffic(self, grant_id: int, traffic_used: int) -> None:
        """Persist a traffic reading.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        async with self.db.session() as session:
            if not await GrantRepository(session).update_traffic(grant_id, traffic_used):
                raise NotFoundError(f"Grant {grant_id} not found")

    async def list_over_quota_grants(self) -> List[GrantRecord]:
        async with self.db.session() as session:
            grants = await GrantRepository(session).list_over_quota()
            return [GrantRecord.model_validate(g) for g in grants]

    # Payments

    async def create_payment(
        self,
        principal_id: int,
        tariff_id: str,
        endpoint_code: str,
        amount: int,
        invoice_id: Optional[str],
        currency: str = "RUB",
        payload: Optional[str] = None,
    ) -> PaymentRecord:
        """Insert a pending payment, creating the principal if needed."""
        async with self.db.session() as session:
            await PrincipalRepository(session).ensure(principal_id)
            payment = await PaymentRepository(session).create(
                principal_id=principal_id,
                tariff_id=tariff_id,
                endpoint_code=endpoint_code,
                amount=amount,
                invoice_id=invoice_id,
                currency=currency,
                payload=payload,
            )
            return PaymentRecord.model_validate(payment)

    async def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        async with self.db.session() as session:
            payment = await PaymentRepository(session).get_by_id(payment_id)
            return PaymentRecord.model_validate(payment) if payment else None

    async def get_payment_by_invoice(self, invoice_id: str) -> Optional[PaymentRecord]:
        async with self.db.session() as session:
            payment = await PaymentRepository(session).get_by_invoice_id(invoice_id)
            return PaymentRecord.model_validate(payment) if payment else None

    async def list_pending_payments(self, limit: Optional[int] = None) -> List[PaymentRecord]:
        async with self.db.session() as session:
            payments = await PaymentRepository(session).list_by_status(PaymentStatus.PENDING.value, limit)
            return [PaymentRecord.model_validate(p) for p in payments]

    async def complete_payment(self, payment_id: int, now: Optional[datetime] = None) -> bool:
        """Mark a pending payment completed.

        Returns:
            False if the payment was not pending (already completed or expired).
        """
        async with self.db.session() as session:
            return await PaymentRepository(session).transition(
                payment_id,
                PaymentStatus.PENDING.value,
                PaymentStatus.COMPLETED.value,
                completed_at=now or datetime.utcnow(),
            )

    async def expire_payment(self, payment_id: int) -> bool:
        """Expire one pending payment. Returns False if it was not pending."""
        async with self.db.session() as session:
            return await PaymentRepository(session).transition(
                payment_id,
                PaymentStatus.PENDING.value,
                PaymentStatus.EXPIRED.value,
            )

    async def expire_stale_payments(
        self,
        max_age: timedelta = STALE_PAYMENT_AGE,
        now: Optional[datetime] = None,
    ) -> int:
        """Expire pending payments strictly older than ``max_age``. Repeating it expires nothing new."""
        async with self.db.session() as session:
            count = await PaymentRepository(session).expire_stale(now=now, max_age=max_age)
        if count:
            logger.info(f"Expired {count} stale payment(s)")
        return count

    async def activate_payment(
        self,
        payment_id: int,
        client_uuid: str,
        client_email: str,
        expires_at: datetime,
        max_devices: int,
        traffic_limit: int = 0,
    ) -> GrantRecord:
        """Complete a pending payment and record its grant in one transaction.

        Trial payments also consume the principal's trial.

        Raises:
            NotFoundError: If the payment does not exist.
            StateConflictError: If the payment is no longer pending.
        """
        async with self.db.session() as session:
            payments = PaymentRepository(session)
            payment = await payments.get_by_id(payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")

            completed = await payments.transition(
                payment_id,
                PaymentStatus.PENDING.value,
                PaymentStatus.COMPLETED.value,
                completed_at=datetime.utcnow(),
            )
            if not completed:
                raise StateConflictError(f"Payment {payment_id} is no longer pending")

            grant = await GrantRepository(session).create(
                principal_id=payment.principal_id,
                endpoint_code=payment.endpoint_code,
                client_uuid=client_uuid,
                client_email=client_email,
                tariff_id=payment.tariff_id,
                expires_at=expires_at,
                max_devices=max_devices,
                traffic_limit=traffic_limit,
                payment_id=payment_id,
            )
            if payment.tariff_id == TariffId.TRIAL.value:
                await PrincipalRepository(session).mark_trial_used(payment.principal_id)

            return GrantRecord.model_validate(grant)

    async def payment_stats(self) -> Dict[str, int]:
        async with self.db.session() as session:
            return await PaymentRepository(session).stats()

    # Alerts

    async def create_alert(self, alert_type: str, message: str) -> AlertRecord:
        async with self.db.session() as session:
            alert = await AlertRepository(session).create(str(getattr(alert_type, "value", alert_type)), message)
            return AlertRecord.model_validate(alert)

    async def list_alerts(self, limit: int = 50) -> List[AlertRecord]:
        async with self.db.session() as session:
            alerts = await AlertRepository(session).list_recent(limit)
            return [AlertRecord.model_validate(a) for a in alerts]
