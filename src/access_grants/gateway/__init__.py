"""Payment gateway clients."""

from .base import (
    GatewayBase,
    YooMoneyGateway,
    Operation,
    OperationHistory,
    generate_payment_label,
    get_gateway,
)
from .simulator import (
    SimulatorGateway,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedDeposit,
)

__all__ = [
    "GatewayBase",
    "YooMoneyGateway",
    "Operation",
    "OperationHistory",
    "generate_payment_label",
    "get_gateway",
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedDeposit",
]
