"""Repository layer for grant, payment, principal and alert persistence."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Alert,
    Grant,
    Payment,
    PaymentStatus,
    Principal,
)

logger = logging.getLogger(__name__)

# Pending payments older than this are expired by the stale-payment sweep
STALE_PAYMENT_AGE = timedelta(hours=24)


class PrincipalRepository:
    """Repository for Principal rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, principal_id: int) -> Optional[Principal]:
        return await self.session.get(Principal, principal_id)

    async def ensure(self, principal_id: int) -> Principal:
        """Return the principal, creating it on first sight."""
        principal = await self.get(principal_id)
        if principal is None:
            principal = Principal(principal_id=principal_id)
            self.session.add(principal)
            await self.session.flush()
            logger.info(f"Created principal {principal_id}")
        return principal

    async def mark_trial_used(self, principal_id: int) -> None:
        principal = await self.ensure(principal_id)
        principal.trial_used = True
        principal.updated_at = datetime.utcnow()
        await self.session.flush()

    async def set_blocked(self, principal_id: int, blocked: bool = True) -> Principal:
        principal = await self.ensure(principal_id)
        principal.is_blocked = blocked
        principal.updated_at = datetime.utcnow()
        await self.session.flush()
        return principal


class PaymentRepository:
    """Repository for Payment rows."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        principal_id: int,
        tariff_id: str,
        endpoint_code: str,
        amount: int,
        invoice_id: Optional[str],
        currency: str = "RUB",
        payload: Optional[str] = None,
    ) -> Payment:
        """Create a new pending payment.

        Args:
            principal_id: Paying principal.
            tariff_id: Tariff being purchased.
            endpoint_code: Endpoint the grant will live on.
            amount: Amount in major currency units.
            invoice_id: Gateway label used as the reconciliation key.
            currency: Three-letter currency code.
            payload: Free-form payload.

        Returns:
            Created Payment instance.
        """
        payment = Payment(
            principal_id=principal_id,
            tariff_id=tariff_id,
            endpoint_code=endpoint_code,
            amount=amount,
            currency=currency.upper(),
            invoice_id=invoice_id,
            payload=payload,
            status=PaymentStatus.PENDING.value,
        )
        self.session.add(payment)
        await self.session.flush()

        logger.info(f"Created payment {payment.id} ({invoice_id}) for principal {principal_id}")
        return payment

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_invoice_id(self, invoice_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.invoice_id == invoice_id)
        )
        return result.scalar_one_or_none()

    async def list_by_status(self, status: str, limit: Optional[int] = None) -> List[Payment]:
        query = select(Payment).where(Payment.status == status).order_by(Payment.created_at)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def transition(
        self,
        payment_id: int,
        from_status: str,
        to_status: str,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Move a payment between statuses if it is still in ``from_status``.

        Returns:
            True if this call made the transition, False otherwise.
        """
        values: Dict[str, Any] = {"status": to_status}
        if completed_at is not None:
            values["completed_at"] = completed_at

        result = await self.session.execute(
            update(Payment)
            .where(and_(Payment.id == payment_id, Payment.status == from_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info(f"Payment {payment_id}: {from_status} -> {to_status}")
        return changed

    async def expire_stale(self, now: Optional[datetime] = None, max_age: timedelta = STALE_PAYMENT_AGE) -> int:
        """Expire pending payments strictly older than ``max_age``.

        Returns:
            Number of payments expired.
        """
        cutoff = (now or datetime.utcnow()) - max_age
        result = await self.session.execute(
            update(Payment)
            .where(and_(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < cutoff,
            ))
            .values(status=PaymentStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def stats(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(Payment.amount), 0),
                func.count(Payment.id),
            ).where(Payment.status == PaymentStatus.COMPLETED.value)
        )
        revenue, count = result.one()
        return {"total_revenue": int(revenue), "total_payments": int(count)}


class GrantRepository:
    """Repository for Grant rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
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
    ) -> Grant:
        grant = Grant(
            principal_id=principal_id,
            endpoint_code=endpoint_code,
            client_uuid=client_uuid,
            client_email=client_email,
            tariff_id=tariff_id,
            expires_at=expires_at,
            max_devices=max_devices,
            traffic_limit=traffic_limit,
            payment_id=payment_id,
            is_active=True,
        )
        self.session.add(grant)
        await self.session.flush()

        logger.info(f"Created grant {grant.id} ({client_email}) on {endpoint_code}")
        return grant

    async def get_by_id(self, grant_id: int) -> Optional[Grant]:
        result = await self.session.execute(select(Grant).where(Grant.id == grant_id))
        return result.scalar_one_or_none()

    async def deactivate(self, grant_id: int) -> bool:
        """Deactivate an active grant. Returns False if it was already inactive."""
        result = await self.session.execute(
            update(Grant)
            .where(and_(Grant.id == grant_id, Grant.is_active.is_(True)))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_active(
        self,
        principal_id: Optional[int] = None,
        endpoint_code: Optional[str] = None,
    ) -> List[Grant]:
        query = select(Grant).where(Grant.is_active.is_(True))
        if principal_id is not None:
            query = query.where(Grant.principal_id == principal_id)
        if endpoint_code is not None:
            query = query.where(Grant.endpoint_code == endpoint_code)
        result = await self.session.execute(query.order_by(Grant.created_at.desc()))
        return list(result.scalars().all())

    async def deactivate_for_principal(self, principal_id: int) -> List[Grant]:
        """Deactivate every active grant of a principal and return them."""
        grants = await self.list_active(principal_id=principal_id)
        if not grants:
            return []
        await self.session.execute(
            update(Grant)
            .where(and_(Grant.principal_id == principal_id, Grant.is_active.is_(True)))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        for grant in grants:
            grant.is_active = False
        return grants

    async def list_expired(self, now: Optional[datetime] = None) -> List[Grant]:
        result = await self.session.execute(
            select(Grant)
            .where(and_(
                Grant.is_active.is_(True),
                Grant.expires_at <= (now or datetime.utcnow()),
            ))
            .order_by(Grant.expires_at)
        )
        return list(result.scalars().all())

    async def list_over_quota(self) -> List[Grant]:
        result = await self.session.execute(
            select(Grant).where(and_(
                Grant.is_active.is_(True),
                Grant.traffic_limit > 0,
                Grant.traffic_used >= Grant.traffic_limit,
            ))
        )
        return list(result.scalars().all())

    async def count_active(self, endpoint_code: str) -> int:
        result = await self.session.execute(
            select(func.count(Grant.id)).where(and_(
                Grant.endpoint_code == endpoint_code,
                Grant.is_active.is_(True),
            ))
        )
        return int(result.scalar_one())

    async def update_traffic(self, grant_id: int, traffic_used: int) -> bool:
        result = await self.session.execute(
            update(Grant)
            .where(Grant.id == grant_id)
            .values(traffic_used=traffic_used)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class AlertRepository:
    """Repository for Alert rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, alert_type: str, message: str) -> Alert:
        alert = Alert(type=alert_type, message=message)
        self.session.add(alert)
        await self.session.flush()
        logger.debug(f"Created alert {alert.id}: {alert_type}")
        return alert

    async def list_recent(self, limit: int = 50) -> List[Alert]:
        result = await self.session.execute(
            select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
