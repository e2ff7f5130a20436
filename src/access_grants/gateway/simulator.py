"""Simulator gateway for exercising payment flows without a real wallet."""

import uuid
import random
import asyncio
import logging
from enum import Enum
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from ..exceptions import RemoteRejection, TransportError
from .base import GatewayBase

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined outcomes for a label lookup."""
    SUCCESS = "success"
    NOT_PAID = "not_paid"
    IN_PROGRESS = "in_progress"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class SimulatedDeposit:
    """In-memory ledger entry."""
    operation_id: str
    label: str
    amount: int
    status: str = "success"
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    delay_ms: int = 0  # simulated response delay
    timeout_rate: float = 0.0  # share of lookups that fail at the transport level
    seed: Optional[int] = None


class SimulatorGateway(GatewayBase):
    """Gateway backed by an in-memory ledger.

    Deposits are recorded with :meth:`record_deposit`; individual labels can
    be forced into a failure scenario with :meth:`set_scenario`.
    """

    name = "simulator"

    def __init__(self, config: Optional[SimulatorConfig] = None, wallet: str = "sim_wallet"):
        self.config = config or SimulatorConfig()
        self.wallet = wallet
        self._deposits: Dict[str, SimulatedDeposit] = {}
        self._scenarios: Dict[str, SimulatorScenario] = {}
        self._rng = random.Random(self.config.seed)
        self.lookups: List[str] = []
        logger.info("SimulatorGateway initialized")

    def record_deposit(self, label: str, amount: int, status: str = "success") -> SimulatedDeposit:
        deposit = SimulatedDeposit(
            operation_id=f"sim_{uuid.uuid4().hex[:24]}",
            label=label,
            amount=amount,
            status=status,
        )
        self._deposits[label] = deposit
        return deposit

    def set_scenario(self, label: str, scenario: SimulatorScenario) -> None:
        self._scenarios[label] = scenario

    def _determine_scenario(self, label: str) -> SimulatorScenario:
        if label in self._scenarios:
            return self._scenarios[label]
        if self._rng.random() < self.config.timeout_rate:
            return SimulatorScenario.TIMEOUT
        deposit = self._deposits.get(label)
        if deposit is None:
            return SimulatorScenario.NOT_PAID
        if deposit.status != "success":
            return SimulatorScenario.IN_PROGRESS
        return SimulatorScenario.SUCCESS

    async def check_payment(self, label: str) -> bool:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)
        self.lookups.append(label)

        scenario = self._determine_scenario(label)
        if scenario == SimulatorScenario.TIMEOUT:
            raise TransportError(f"Simulated timeout for {label}")
        if scenario == SimulatorScenario.ERROR:
            raise RemoteRejection(f"Simulated gateway error for {label}")
        return scenario == SimulatorScenario.SUCCESS

    def build_pay_url(self, amount: int, label: str) -> str:
        return f"https://simulator.local/pay?{urlencode({'receiver': self.wallet, 'sum': amount, 'label': label})}"

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": self.name,
            "deposit_count": len(self._deposits),
            "config": {
                "delay_ms": self.config.delay_ms,
                "timeout_rate": self.config.timeout_rate,
            },
        }
