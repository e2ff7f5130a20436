"""Payment reconciliation: pending payments to provisioned grants."""

import time
import uuid
import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Optional

from ..database import AlertType
from ..exceptions import (
    InconsistencyWarning,
    NotFoundError,
    ProvisioningError,
    StateConflictError,
)
from ..gateway import GatewayBase, generate_payment_label
from ..notifications import BestEffortNotifier, Notifier
from ..panel import PanelAdapter
from ..sales import SalesGate
from ..store import LifecycleStore, PaymentRecord
from ..tariffs import Tariff, TariffCatalog
from .models import (
    ActivationResult,
    CheckOutcome,
    CheckResult,
    PollReport,
    PurchaseResult,
)

logger = logging.getLogger(__name__)


def to_epoch_ms(value: datetime) -> int:
    """Convert a naive UTC datetime to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class PaymentReconciler:
    """Turns confirmed gateway deposits into provisioned grants.

    A payment moves pending -> completed exactly once. Scheduled polling and
    user-triggered checks may race on the same payment; a per-payment lock,
    a status re-check and a conditional store transition make sure only one
    of them provisions a client.
    """

    def __init__(
        self,
        store: LifecycleStore,
        adapter: PanelAdapter,
        gateway: GatewayBase,
        catalog: TariffCatalog,
        notifier: Notifier,
        sales_gate: Optional[SalesGate] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = notifier if isinstance(notifier, BestEffortNotifier) else BestEffortNotifier(notifier)
        self.sales_gate = sales_gate or SalesGate()
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, payment_id: int) -> asyncio.Lock:
        lock = self._locks.get(payment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[payment_id] = lock
        return lock

    async def poll_pending(self) -> PollReport:
        """Check every pending payment once. Per-payment failures never stop the batch."""
        report = PollReport()
        pending = await self.store.list_pending_payments()
        if not pending:
            return report

        for payment in pending:
            if not payment.invoice_id:
                report.skipped += 1
                continue

            report.checked += 1
            try:
                result = await self._check(payment)
            except Exception as e:
                logger.error(f"Payment check crashed for {payment.invoice_id}: {type(e).__name__}: {e}")
                report.failed.append(payment.invoice_id)
                continue

            if result.outcome == CheckOutcome.ACTIVATED and result.activation:
                report.activated.append(result.activation)
            elif result.outcome == CheckOutcome.FAILED:
                report.failed.append(payment.invoice_id)

        if report.activated or report.failed:
            logger.info(
                f"Payment poll: checked={report.checked} "
                f"activated={len(report.activated)} failed={len(report.failed)}"
            )
        return report

    async def check_now(self, label: str) -> CheckResult:
        """User-triggered check of one payment.

        Raises:
            NotFoundError: If no payment carries ``label``.
        """
        payment = await self.store.get_payment_by_invoice(label)
        if payment is None:
            raise NotFoundError(f"Payment {label} not found")
        if not payment.is_pending:
            return CheckResult(label=label, outcome=CheckOutcome.ALREADY_PROCESSED)
        return await self._check(payment)

    async def _check(self, payment: PaymentRecord) -> CheckResult:
        label = payment.invoice_id or ""
        try:
            paid = await self.gateway.check_payment(label)
        except ProvisioningError as e:
            logger.error(f"Payment check failed for {label}: {type(e).__name__}: {e}")
            return CheckResult(label=label, outcome=CheckOutcome.FAILED, error=str(e))

        if not paid:
            return CheckResult(label=label, outcome=CheckOutcome.NOT_PAID)

        logger.info(f"Payment confirmed: {label}")
        try:
            activation = await self.activate_subscription(payment)
        except StateConflictError:
            return CheckResult(label=label, outcome=CheckOutcome.ALREADY_PROCESSED)
        except ProvisioningError as e:
            logger.error(f"Activation failed for {label}: {type(e).__name__}: {e}")
            return CheckResult(label=label, outcome=CheckOutcome.FAILED, error=str(e))

        return CheckResult(label=label, outcome=CheckOutcome.ACTIVATED, activation=activation)

    async def start_purchase(self, principal_id: int, endpoint_code: str, tariff_id: str) -> PurchaseResult:
        """Begin a purchase.

        Trials are activated on the spot. Paid tariffs create a pending
        payment keyed by a fresh label and return the gateway pay URL.

        Raises:
            NotFoundError: Unknown endpoint or tariff.
            StateConflictError: Principal blocked, sales closed, or trial already used.
        """
        self.adapter.session_client.endpoint(endpoint_code)
        tariff = self.catalog.get(endpoint_code, tariff_id)

        principal = await self.store.ensure_principal(principal_id)
        if principal.is_blocked:
            raise StateConflictError(f"Principal {principal_id} is blocked")

        if tariff.price > 0 and self.sales_gate.blocked:
            raise StateConflictError("Sales are temporarily suspended")

        if tariff.is_trial:
            if principal.trial_used:
                raise StateConflictError(f"Principal {principal_id} already used the trial")

            label = f"trial_{principal_id}_{int(time.time() * 1000)}"
            payment = await self.store.create_payment(
                principal_id=principal_id,
                tariff_id=tariff.id.value,
                endpoint_code=endpoint_code,
                amount=0,
                invoice_id=label,
            )
            try:
                activation = await self.activate_subscription(payment)
            except Exception:
                # nothing will ever be deposited for a trial label
                try:
                    await self.store.expire_payment(payment.id)
                except Exception as e:
                    logger.error(f"Failed to expire trial payment {payment.id}: {type(e).__name__}: {e}")
                raise
            return PurchaseResult(
                payment_id=payment.id,
                label=label,
                amount=0,
                tariff_id=tariff.id.value,
                endpoint_code=endpoint_code,
                activation=activation,
            )

        label = generate_payment_label(principal_id, endpoint_code, tariff.id.value)
        payment = await self.store.create_payment(
            principal_id=principal_id,
            tariff_id=tariff.id.value,
            endpoint_code=endpoint_code,
            amount=tariff.price,
            invoice_id=label,
        )
        logger.info(f"Purchase started: {label} ({tariff.price} {payment.currency})")
        return PurchaseResult(
            payment_id=payment.id,
            label=label,
            amount=tariff.price,
            tariff_id=tariff.id.value,
            endpoint_code=endpoint_code,
            pay_url=self.gateway.build_pay_url(tariff.price, label),
        )

    async def activate_subscription(self, payment: PaymentRecord) -> ActivationResult:
        """Provision a client for a paid payment and record the grant.

        Raises:
            NotFoundError: The payment, endpoint or tariff is gone.
            StateConflictError: The payment is no longer pending.
            TransportError, AuthError, RemoteRejection: Provisioning failed;
                nothing was written locally.
            InconsistencyWarning: The client was provisioned but the store
                write failed. The remote client is left for audit.
        """
        async with self._lock_for(payment.id):
            try:
                current = await self.store.get_payment(payment.id)
                if current is None:
                    raise NotFoundError(f"Payment {payment.id} not found")
            except Exception as e:
                await self._report_activation_failure(payment, e)
                raise

            if not current.is_pending:
                raise StateConflictError(f"Payment {payment.id} is already {current.status.value}")
            return await self._activate(current)

    async def _activate(self, payment: PaymentRecord) -> ActivationResult:
        try:
            endpoint = self.adapter.session_client.endpoint(payment.endpoint_code)
            tariff = self.catalog.get(payment.endpoint_code, payment.tariff_id)

            client_uuid = str(uuid.uuid4())
            client_email = f"tg_{payment.principal_id}_{endpoint.code}_{client_uuid[:8]}"
            expires_at = tariff.expires_at()

            await self.adapter.add_client(
                endpoint.code,
                client_uuid,
                client_email,
                tariff.max_devices,
                0,
                to_epoch_ms(expires_at),
            )
        except Exception as e:
            await self._report_activation_failure(payment, e)
            raise

        try:
            grant = await self.store.activate_payment(
                payment.id,
                client_uuid=client_uuid,
                client_email=client_email,
                expires_at=expires_at,
                max_devices=tariff.max_devices,
            )
        except Exception as e:
            message = (
                f"Client {client_uuid} provisioned on {endpoint.code} "
                f"but payment {payment.id} was not recorded: {type(e).__name__}: {e}"
            )
            await self._report(AlertType.INCONSISTENCY, message)
            raise InconsistencyWarning(message, endpoint=endpoint.code, client_id=client_uuid) from e

        descriptor = self.adapter.build_connection_descriptor(
            endpoint.code,
            client_uuid,
            f"VPN-{endpoint.code.upper()}-{grant.id}",
        )
        logger.info(f"Subscription activated: principal={payment.principal_id} grant={grant.id} endpoint={endpoint.code}")

        await self.notifier.notify_principal(
            payment.principal_id,
            self._activation_message(tariff, endpoint.emoji, endpoint.name, expires_at, descriptor),
        )
        if payment.amount > 0:
            await self.notifier.notify_operator(
                f"Payment {payment.amount} {payment.currency} from {payment.principal_id}: "
                f"{tariff.label} on {endpoint.code}"
            )

        return ActivationResult(
            payment_id=payment.id,
            grant_id=grant.id,
            principal_id=payment.principal_id,
            endpoint_code=endpoint.code,
            client_uuid=client_uuid,
            expires_at=expires_at,
            descriptor=descriptor,
        )

    @staticmethod
    def _activation_message(tariff: Tariff, emoji: str, name: str, expires_at: datetime, descriptor: str) -> str:
        return "\n".join([
            "Subscription activated!",
            "",
            f"Tariff: {tariff.label}",
            f"Server: {' '.join(filter(None, [emoji, name]))}",
            f"Until: {expires_at:%d.%m.%Y %H:%M} (UTC)",
            f"Devices: up to {tariff.max_devices}",
            "",
            "Connection link:",
            descriptor,
        ])

    async def _report_activation_failure(self, payment: PaymentRecord, error: Exception) -> None:
        await self._report(
            AlertType.ACTIVATION_FAILED,
            f"Activation failed for payment {payment.id} ({payment.invoice_id}) "
            f"on {payment.endpoint_code}: {type(error).__name__}: {error}",
        )

    async def _report(self, alert_type: AlertType, message: str) -> None:
        """Log, record an alert and tell the operator. Never raises."""
        logger.error(message)
        try:
            await self.store.create_alert(alert_type.value, message)
        except Exception as e:
            logger.error(f"Failed to record {alert_type.value} alert: {type(e).__name__}: {e}")
        await self.notifier.notify_operator(f"[ALERT] {message}")
