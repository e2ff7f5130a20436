"""Wires every component together and owns their lifetimes."""

import logging
from typing import Optional

from .config import Settings
from .database import DatabaseManager
from .gateway import GatewayBase, get_gateway
from .grants import GrantService
from .notifications import Notifier, build_notifier
from .panel import PanelAdapter, PanelSessionClient, SessionStore
from .reconciliation import PaymentReconciler
from .sales import SalesGate
from .scheduler import MaintenanceScheduler
from .store import LifecycleStore
from .tariffs import TariffCatalog

logger = logging.getLogger(__name__)


class ProvisioningRuntime:
    """Process-wide container.

    Shutdown order: stop scheduling and wait for running jobs, close the
    outbound HTTP clients, then dispose of the database engine.
    """

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        session_client: PanelSessionClient,
        gateway: GatewayBase,
        notifier: Notifier,
        catalog: Optional[TariffCatalog] = None,
        sales_gate: Optional[SalesGate] = None,
    ):
        self.settings = settings
        self.db = db
        self.session_client = session_client
        self.gateway = gateway
        self.notifier = notifier
        self.catalog = catalog or TariffCatalog()
        self.sales_gate = sales_gate or SalesGate()

        self.store = LifecycleStore(db)
        self.adapter = PanelAdapter(session_client)
        self.reconciler = PaymentReconciler(
            self.store,
            self.adapter,
            gateway,
            self.catalog,
            notifier,
            self.sales_gate,
        )
        self.grants = GrantService(self.store, self.adapter)
        self.scheduler = MaintenanceScheduler(self.store, self.adapter, self.reconciler, notifier)
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProvisioningRuntime":
        return cls(
            settings=settings,
            db=DatabaseManager(settings.database_url),
            session_client=PanelSessionClient(settings.endpoint_map(), SessionStore()),
            gateway=get_gateway(
                settings.payment_gateway,
                token=settings.yoomoney_token,
                wallet=settings.yoomoney_wallet,
            ),
            notifier=build_notifier(settings.bot_token, settings.admin_id),
        )

    @property
    def started(self) -> bool:
        return self._started

    async def initialize(self) -> None:
        """Open the database. Safe to call more than once."""
        if not self.db.is_initialized:
            await self.db.initialize()

    async def start(self, with_scheduler: bool = True) -> None:
        await self.initialize()
        if with_scheduler:
            self.scheduler.start()
        self._started = True
        logger.info(f"Runtime started with {len(self.settings.endpoints)} endpoint(s)")

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.session_client.close()
        await self.gateway.close()
        await self.notifier.close()
        await self.db.shutdown()
        self._started = False
        logger.info("Runtime stopped")

    async def __aenter__(self) -> "ProvisioningRuntime":
        await self.start(with_scheduler=False)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
