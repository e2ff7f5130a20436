"""Remote panel access: authenticated session client and provisioning adapter."""

from .models import (
    CLIENT_FLOW,
    ClientSettings,
    ClientUsage,
    ConnectionDescriptor,
    PanelEnvelope,
)
from .session import PanelSessionClient, SessionStore
from .adapter import PanelAdapter, parse_connection_descriptor

__all__ = [
    "CLIENT_FLOW",
    "ClientSettings",
    "ClientUsage",
    "ConnectionDescriptor",
    "PanelEnvelope",
    "PanelSessionClient",
    "SessionStore",
    "PanelAdapter",
    "parse_connection_descriptor",
]
