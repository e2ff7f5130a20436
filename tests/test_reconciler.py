"""Tests for payment reconciliation and purchases."""

import asyncio
import re
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from access_grants.database import PaymentStatus
from access_grants.exceptions import (
    InconsistencyWarning,
    NotFoundError,
    RemoteRejection,
    StateConflictError,
)
from access_grants.gateway import SimulatorScenario
from access_grants.panel import parse_connection_descriptor
from access_grants.reconciliation import CheckOutcome, to_epoch_ms


async def start_paid(reconciler, principal_id=1, endpoint_code="ru", tariff_id="month"):
    return await reconciler.start_purchase(principal_id, endpoint_code, tariff_id)


class TestStartPurchase:
    """Tests for starting purchases."""

    async def test_paid_purchase_creates_pending_payment(self, reconciler, store):
        result = await start_paid(reconciler)

        assert re.fullmatch(r"pay_1_ru_month_[0-9a-f]{8}", result.label)
        assert result.amount == 150
        assert result.activation is None
        assert result.label in result.pay_url

        payment = await store.get_payment_by_invoice(result.label)
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == 150

    async def test_prices_follow_endpoint_table(self, reconciler):
        assert (await start_paid(reconciler, endpoint_code="nl")).amount == 250

    async def test_trial_activates_immediately(self, reconciler, store, fake_panel):
        result = await reconciler.start_purchase(5, "ru", "trial")

        assert result.label.startswith("trial_5_")
        assert result.activation is not None
        assert result.pay_url is None
        assert len(fake_panel.clients["ru"]) == 1
        assert (await store.get_principal(5)).trial_used is True
        assert (await store.get_payment(result.payment_id)).status == PaymentStatus.COMPLETED

    async def test_trial_only_once(self, reconciler):
        await reconciler.start_purchase(5, "ru", "trial")
        with pytest.raises(StateConflictError, match="trial"):
            await reconciler.start_purchase(5, "nl", "trial")

    async def test_sales_gate_blocks_paid_tariffs_only(self, reconciler, sales_gate):
        sales_gate.toggle()
        with pytest.raises(StateConflictError, match="Sales"):
            await start_paid(reconciler)
        assert (await reconciler.start_purchase(5, "ru", "trial")).activation is not None

    async def test_blocked_principal(self, reconciler, store):
        await store.block_principal(9)
        with pytest.raises(StateConflictError, match="blocked"):
            await start_paid(reconciler, principal_id=9)

    async def test_failed_trial_does_not_linger(self, reconciler, store, fake_panel):
        fake_panel.fail_add = True
        with pytest.raises(RemoteRejection):
            await reconciler.start_purchase(5, "ru", "trial")

        assert await store.list_pending_payments() == []
        assert (await store.get_principal(5)).trial_used is False
        assert (await store.list_alerts())[0].type == "activation_failed"

        fake_panel.fail_add = False
        result = await reconciler.start_purchase(5, "ru", "trial")
        assert result.activation is not None

    async def test_unknown_endpoint_and_tariff(self, reconciler):
        with pytest.raises(NotFoundError):
            await start_paid(reconciler, endpoint_code="de")
        with pytest.raises(NotFoundError):
            await start_paid(reconciler, tariff_id="lifetime")


class TestPollPending:
    """Tests for the scheduled poll."""

    async def test_month_payment_scenario(self, reconciler, store, gateway, fake_panel, notifier):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.record_deposit("pay_1", 150)
        before = datetime.utcnow()

        report = await reconciler.poll_pending()

        assert report.checked == 1
        assert len(report.activated) == 1
        assert (await store.get_payment(payment.id)).status == PaymentStatus.COMPLETED

        grants = await store.list_active_grants(1)
        assert len(grants) == 1
        grant = grants[0]
        assert grant.payment_id == payment.id
        assert grant.max_devices == 3
        assert abs(grant.expires_at - (before + timedelta(days=30))) < timedelta(minutes=1)

        client = fake_panel.clients["ru"][grant.client_uuid]
        assert client["email"] == f"tg_1_ru_{grant.client_uuid[:8]}"
        assert client["limitIp"] == 3
        assert client["totalGB"] == 0
        assert client["expiryTime"] == to_epoch_ms(grant.expires_at)

        descriptor = report.activated[0].descriptor
        assert parse_connection_descriptor(descriptor).label == f"VPN-RU-{grant.id}"
        assert notifier.principal_messages[0][0] == 1
        assert descriptor in notifier.principal_messages[0][1]
        assert any("150" in m for m in notifier.operator_messages)

    async def test_unpaid_payments_stay_pending(self, reconciler, store, fake_panel):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")

        report = await reconciler.poll_pending()

        assert report.checked == 1
        assert report.activated == []
        assert (await store.get_payment(payment.id)).status == PaymentStatus.PENDING
        assert fake_panel.clients["ru"] == {}

    async def test_payments_without_label_are_skipped(self, reconciler, store, gateway):
        await store.create_payment(1, "month", "ru", 150, None)
        report = await reconciler.poll_pending()
        assert report.skipped == 1
        assert gateway.lookups == []

    async def test_gateway_failure_does_not_stop_batch(self, reconciler, store, gateway):
        await store.create_payment(1, "month", "ru", 150, "pay_bad")
        good = await store.create_payment(2, "week", "ru", 50, "pay_good")
        gateway.set_scenario("pay_bad", SimulatorScenario.TIMEOUT)
        gateway.record_deposit("pay_good", 50)

        report = await reconciler.poll_pending()

        assert report.failed == ["pay_bad"]
        assert [a.payment_id for a in report.activated] == [good.id]

    async def test_unexpected_gateway_error_does_not_stop_batch(self, reconciler, store, gateway):
        await store.create_payment(1, "month", "ru", 150, "pay_bad")
        good = await store.create_payment(2, "week", "ru", 50, "pay_good")
        gateway.record_deposit("pay_good", 50)
        check_payment = gateway.check_payment

        async def garbled(label):
            if label == "pay_bad":
                raise httpx.DecodingError("Error -3 while decompressing data")
            return await check_payment(label)

        with patch.object(gateway, "check_payment", garbled):
            report = await reconciler.poll_pending()

        assert report.checked == 2
        assert report.failed == ["pay_bad"]
        assert [a.payment_id for a in report.activated] == [good.id]
        assert (await store.get_payment(good.id)).status == PaymentStatus.COMPLETED

    async def test_provisioning_failure_leaves_payment_pending(self, reconciler, store, gateway, fake_panel, notifier):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.record_deposit("pay_1", 150)
        fake_panel.fail_add = True

        report = await reconciler.poll_pending()

        assert report.failed == ["pay_1"]
        assert (await store.get_payment(payment.id)).status == PaymentStatus.PENDING
        assert await store.list_active_grants(1) == []
        assert any("Activation failed" in m for m in notifier.operator_messages)
        assert (await store.list_alerts())[0].type == "activation_failed"

    async def test_notification_failure_is_swallowed(self, reconciler, store, gateway, notifier):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.record_deposit("pay_1", 150)
        notifier.fail = True

        report = await reconciler.poll_pending()

        assert len(report.activated) == 1
        assert (await store.get_payment(payment.id)).status == PaymentStatus.COMPLETED


class TestActivation:
    """Tests for activation ordering and double-activation guards."""

    async def test_concurrent_poll_and_check_now_yield_one_grant(self, reconciler, store, gateway, fake_panel):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.record_deposit("pay_1", 150)

        results = await asyncio.gather(
            reconciler.poll_pending(),
            reconciler.check_now("pay_1"),
            reconciler.check_now("pay_1"),
        )

        assert len(await store.list_active_grants(1)) == 1
        assert len(fake_panel.clients["ru"]) == 1
        assert (await store.get_payment(payment.id)).status == PaymentStatus.COMPLETED
        outcomes = [results[1].outcome, results[2].outcome] + (
            [CheckOutcome.ACTIVATED] if results[0].activated else []
        )
        assert outcomes.count(CheckOutcome.ACTIVATED) == 1

    async def test_activating_completed_payment_conflicts(self, reconciler, store):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        await reconciler.activate_subscription(payment)

        with pytest.raises(StateConflictError):
            await reconciler.activate_subscription(payment)
        assert await store.list_alerts() == []

    async def test_unknown_endpoint_is_reported(self, reconciler, store, gateway, notifier):
        payment = await store.create_payment(1, "month", "de", 150, "pay_de")
        gateway.record_deposit("pay_de", 150)

        result = await reconciler.check_now("pay_de")

        assert result.outcome == CheckOutcome.FAILED
        assert (await store.get_payment(payment.id)).status == PaymentStatus.PENDING
        assert any("Activation failed" in m and "de" in m for m in notifier.operator_messages)
        assert (await store.list_alerts())[0].type == "activation_failed"

    async def test_payment_lookup_failure_is_reported(self, reconciler, store, fake_panel, notifier):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")

        with patch.object(store, "get_payment", AsyncMock(side_effect=RuntimeError("database is locked"))):
            with pytest.raises(RuntimeError):
                await reconciler.activate_subscription(payment)

        assert fake_panel.clients["ru"] == {}
        assert any("database is locked" in m for m in notifier.operator_messages)
        assert (await store.list_alerts())[0].type == "activation_failed"

    async def test_expired_payment_is_not_activated(self, reconciler, store, fake_panel):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        await store.expire_stale_payments(max_age=timedelta(0))

        with pytest.raises(StateConflictError):
            await reconciler.activate_subscription(payment)
        assert fake_panel.clients["ru"] == {}

    async def test_store_failure_after_provisioning_is_inconsistency(self, reconciler, store, fake_panel, notifier):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")

        with patch.object(store, "activate_payment", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(InconsistencyWarning) as exc_info:
                await reconciler.activate_subscription(payment)

        # the remote client is left in place for audit
        assert exc_info.value.client_id in fake_panel.clients["ru"]
        assert (await store.get_payment(payment.id)).status == PaymentStatus.PENDING
        assert (await store.list_alerts())[0].type == "inconsistency"
        assert any("disk full" in m for m in notifier.operator_messages)

    async def test_provisioning_error_propagates(self, reconciler, store, fake_panel):
        payment = await store.create_payment(1, "month", "ru", 150, "pay_1")
        fake_panel.fail_add = True
        with pytest.raises(RemoteRejection):
            await reconciler.activate_subscription(payment)


class TestCheckNow:
    """Tests for user-triggered checks."""

    async def test_unknown_label(self, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.check_now("pay_missing")

    async def test_not_paid_yet(self, reconciler, store):
        await store.create_payment(1, "month", "ru", 150, "pay_1")
        assert (await reconciler.check_now("pay_1")).outcome == CheckOutcome.NOT_PAID

    async def test_paid(self, reconciler, store, gateway):
        await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.record_deposit("pay_1", 150)

        result = await reconciler.check_now("pay_1")

        assert result.outcome == CheckOutcome.ACTIVATED
        assert result.activation.endpoint_code == "ru"

    async def test_already_processed(self, reconciler, store, gateway):
        await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.record_deposit("pay_1", 150)
        await reconciler.check_now("pay_1")

        assert (await reconciler.check_now("pay_1")).outcome == CheckOutcome.ALREADY_PROCESSED
        assert gateway.lookups == ["pay_1"]

    async def test_gateway_error_is_reported(self, reconciler, store, gateway):
        await store.create_payment(1, "month", "ru", 150, "pay_1")
        gateway.set_scenario("pay_1", SimulatorScenario.ERROR)

        result = await reconciler.check_now("pay_1")

        assert result.outcome == CheckOutcome.FAILED
        assert "Simulated" in result.error
