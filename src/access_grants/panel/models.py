"""Wire models for the remote panel API."""

from typing import Optional, Any
from pydantic import BaseModel, ConfigDict, Field

# Flow tag for VLESS over Reality
CLIENT_FLOW = "xtls-rprx-vision"


class PanelEnvelope(BaseModel):
    """Response envelope returned by every panel API call."""
    success: bool
    msg: Optional[str] = None
    obj: Optional[Any] = None


class ClientSettings(BaseModel):
    """A client entry as the panel expects it inside ``settings``."""
    id: str
    flow: str = CLIENT_FLOW
    email: str
    limitIp: int
    totalGB: int  # bytes despite the name; 0 = unlimited
    expiryTime: int  # epoch ms; 0 = never expires
    enable: bool = True
    tgId: str = ""
    subId: str = ""
    reset: int = 0


class ClientUsage(BaseModel):
    """Traffic counters for one client, in bytes."""
    uploaded: int = 0
    downloaded: int = 0
    total: int = 0


class ConnectionDescriptor(BaseModel):
    """Parsed form of a ``vless://`` connection URI."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    address: str
    port: int
    network: str = Field(default="tcp")
    security: str = Field(default="reality")
    public_key: str
    fingerprint: str = Field(default="chrome")
    sni: str
    short_id: str
    flow: str = CLIENT_FLOW
    label: str
