"""Periodic maintenance jobs.

Each job runs on its own interval. A job never overlaps itself: a tick
that fires while the previous one is still running is dropped. A failing
tick is logged and the next one runs as usual.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Endpoint
from .database import AlertType
from .exceptions import NotFoundError, ProvisioningError
from .notifications import BestEffortNotifier, Notifier
from .panel import PanelAdapter
from .reconciliation import PaymentReconciler, PollReport
from .store import GrantRecord, LifecycleStore

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_INTERVAL = 60
HEALTH_SWEEP_INTERVAL = 600
STALE_PAYMENT_SWEEP_INTERVAL = 3600
PAYMENT_POLL_INTERVAL = 15


class MaintenanceScheduler:
    """Runs the expiry, health, stale-payment and payment-poll jobs."""

    def __init__(
        self,
        store: LifecycleStore,
        adapter: PanelAdapter,
        reconciler: PaymentReconciler,
        notifier: Notifier,
        expiry_interval: float = EXPIRY_SWEEP_INTERVAL,
        health_interval: float = HEALTH_SWEEP_INTERVAL,
        stale_interval: float = STALE_PAYMENT_SWEEP_INTERVAL,
        poll_interval: float = PAYMENT_POLL_INTERVAL,
    ):
        self.store = store
        self.adapter = adapter
        self.reconciler = reconciler
        self.notifier = notifier if isinstance(notifier, BestEffortNotifier) else BestEffortNotifier(notifier)
        self.intervals: Dict[str, float] = {
            "expiry_sweep": expiry_interval,
            "health_sweep": health_interval,
            "stale_payment_sweep": stale_interval,
            "payment_poll": poll_interval,
        }
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: Set[asyncio.Task] = set()
        self._running = False

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Get or create the scheduler instance."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                job_defaults={
                    "coalesce": True,  # Combine missed runs into one
                    "max_instances": 1,  # Drop ticks while one is running
                    "misfire_grace_time": 30,
                },
                timezone="UTC",
            )
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._running

    def _jobs(self) -> Dict[str, Callable[[], Awaitable[object]]]:
        return {
            "expiry_sweep": self.expiry_sweep,
            "health_sweep": self.health_sweep,
            "stale_payment_sweep": self.stale_payment_sweep,
            "payment_poll": self.payment_poll,
        }

    def start(self) -> None:
        """Register every job and start the scheduler. Must run inside an event loop."""
        if self._running:
            return

        for name, func in self._jobs().items():
            self.scheduler.add_job(
                self._run_job,
                trigger=IntervalTrigger(seconds=self.intervals[name]),
                id=name,
                name=name,
                args=[name, func],
                replace_existing=True,
            )
            logger.info(f"Scheduled job: {name} (every {self.intervals[name]:g}s)")

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started")

    async def shutdown(self) -> None:
        """Stop scheduling new ticks and wait for running ones to finish."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} running job(s)")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _run_job(self, name: str, func: Callable[[], Awaitable[object]]) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await func()
        except Exception as e:
            logger.exception(f"Scheduled job {name} failed: {e}")
        finally:
            if task is not None:
                self._inflight.discard(task)

    def _endpoint(self, code: str) -> Optional[Endpoint]:
        try:
            return self.adapter.session_client.endpoint(code)
        except NotFoundError:
            return None

    async def expiry_sweep(self) -> int:
        """Remove and deactivate every expired grant.

        Returns:
            Number of grants deactivated.
        """
        count = 0
        for grant in await self.store.list_expired_grants():
            try:
                await self._expire(grant)
                count += 1
            except Exception as e:
                logger.error(f"Failed to expire grant {grant.id}: {type(e).__name__}: {e}")
        return count

    async def _expire(self, grant: GrantRecord) -> None:
        try:
            await self.adapter.remove_client(grant.endpoint_code, grant.client_uuid)
        except ProvisioningError as e:
            logger.error(f"Failed to remove expired client for grant {grant.id}: {e}")

        await self.store.deactivate_grant(grant.id)

        endpoint = self._endpoint(grant.endpoint_code)
        where = f"{endpoint.emoji} {endpoint.name}".strip() if endpoint else grant.endpoint_code
        await self.notifier.notify_principal(
            grant.principal_id,
            f"Your subscription {where} has expired.\nBuy a new one: /start",
        )
        logger.info(f"Expired grant {grant.id} of principal {grant.principal_id} deactivated")

    async def health_sweep(self) -> Dict[str, bool]:
        """Probe every endpoint; alert the operator about each one that is down."""
        results = await self.adapter.health_check_all()
        for code, ok in results.items():
            if ok:
                continue

            endpoint = self._endpoint(code)
            name = f"{endpoint.emoji} {endpoint.name}".strip() if endpoint else code
            message = f"Server {name} ({code}) is DOWN"
            logger.warning(message)
            try:
                await self.store.create_alert(AlertType.SERVER_DOWN.value, message)
            except Exception as e:
                logger.error(f"Failed to record alert for {code}: {type(e).__name__}: {e}")
            await self.notifier.notify_operator(f"[ALERT] {message}")
        return results

    async def stale_payment_sweep(self) -> int:
        return await self.store.expire_stale_payments()

    async def payment_poll(self) -> PollReport:
        return await self.reconciler.poll_pending()
