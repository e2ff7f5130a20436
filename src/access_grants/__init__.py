# access_grants package
__version__ = "0.1.0"

from .config import Endpoint, Settings
from .exceptions import (
    ProvisioningError,
    ConfigurationError,
    TransportError,
    AuthError,
    RemoteRejection,
    NotFoundError,
    StateConflictError,
    InconsistencyWarning,
)
from .panel import PanelAdapter, PanelSessionClient, SessionStore
from .store import LifecycleStore, GrantRecord, PaymentRecord
from .reconciliation import PaymentReconciler
from .scheduler import MaintenanceScheduler
from .runtime import ProvisioningRuntime
