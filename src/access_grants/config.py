"""Settings loaded from the environment."""

import os
import re
import logging
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./grants.db"
SUPPORTED_GATEWAYS = ("yoomoney", "simulator")

# VPN_<CODE>_PANEL_URL marks one configured endpoint
ENDPOINT_KEY_PATTERN = re.compile(r"^VPN_([A-Z0-9]+)_PANEL_URL$")


class Endpoint(BaseModel):
    """One configured remote panel and the parameters clients connect with."""

    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    emoji: str = ""
    panel_url: str
    panel_username: str
    panel_password: str = Field(repr=False)
    inbound_id: int
    server_ip: str
    server_port: int = 443
    public_key: str
    short_id: str
    sni: str
    max_users: int = 100


class Settings(BaseModel):
    """Process-wide configuration."""

    model_config = ConfigDict(frozen=True)

    yoomoney_token: str = Field(repr=False)
    yoomoney_wallet: str
    payment_gateway: str = "yoomoney"
    endpoints: List[Endpoint]
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    admin_id: Optional[int] = None
    bot_token: Optional[str] = Field(default=None, repr=False)
    api_key: Optional[str] = Field(default=None, repr=False)

    def endpoint_map(self) -> Dict[str, Endpoint]:
        return {e.code: e for e in self.endpoints}

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv: bool = True,
    ) -> "Settings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.
            dotenv: Load a ``.env`` file into ``os.environ`` first.

        Raises:
            ConfigurationError: If a required value is missing or malformed.
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        endpoints = parse_endpoints(environ)
        admin_id = environ.get("ADMIN_ID")
        payment_gateway = environ.get("PAYMENT_GATEWAY", "yoomoney").lower()
        if payment_gateway not in SUPPORTED_GATEWAYS:
            raise ConfigurationError(f"Unsupported PAYMENT_GATEWAY: {payment_gateway}")

        return cls(
            yoomoney_token=_required(environ, "YOOMONEY_TOKEN"),
            yoomoney_wallet=_required(environ, "YOOMONEY_WALLET"),
            payment_gateway=payment_gateway,
            endpoints=endpoints,
            database_url=get_database_url(environ),
            log_level=environ.get("LOG_LEVEL", "INFO").upper(),
            admin_id=_to_int("ADMIN_ID", admin_id) if admin_id else None,
            bot_token=environ.get("BOT_TOKEN") or None,
            api_key=environ.get("API_KEY") or None,
        )


def _required(environ: Mapping[str, str], key: str) -> str:
    value = environ.get(key)
    if not value:
        raise ConfigurationError(f"Missing required env variable: {key}")
    return value


def _to_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Env variable {key} must be a number") from None


def _optional_int(environ: Mapping[str, str], key: str, fallback: int) -> int:
    value = environ.get(key)
    if not value:
        return fallback
    return _to_int(key, value)


def get_database_url(environ: Optional[Mapping[str, str]] = None) -> str:
    """Get the async database URL, rewriting postgres URLs for asyncpg."""
    environ = os.environ if environ is None else environ
    db_url = environ.get("DATABASE_URL")
    if db_url:
        if db_url.startswith("postgresql://"):
            db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif db_url.startswith("postgres://"):
            db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
        return db_url
    return DEFAULT_DATABASE_URL


def parse_endpoints(environ: Mapping[str, str]) -> List[Endpoint]:
    """Discover endpoints from ``VPN_<CODE>_*`` key groups.

    Raises:
        ConfigurationError: If no endpoint is configured or a group is incomplete.
    """
    endpoints: List[Endpoint] = []

    for key in sorted(environ):
        match = ENDPOINT_KEY_PATTERN.match(key)
        if not match:
            continue

        prefix = f"VPN_{match.group(1)}"
        endpoints.append(Endpoint(
            code=match.group(1).lower(),
            name=_required(environ, f"{prefix}_NAME"),
            emoji=_required(environ, f"{prefix}_EMOJI"),
            panel_url=_required(environ, f"{prefix}_PANEL_URL").rstrip("/"),
            panel_username=_required(environ, f"{prefix}_PANEL_USERNAME"),
            panel_password=_required(environ, f"{prefix}_PANEL_PASSWORD"),
            inbound_id=_to_int(f"{prefix}_INBOUND_ID", _required(environ, f"{prefix}_INBOUND_ID")),
            server_ip=_required(environ, f"{prefix}_SERVER_IP"),
            server_port=_optional_int(environ, f"{prefix}_SERVER_PORT", 443),
            public_key=_required(environ, f"{prefix}_PUBLIC_KEY"),
            short_id=_required(environ, f"{prefix}_SHORT_ID"),
            sni=_required(environ, f"{prefix}_SNI"),
            max_users=_optional_int(environ, f"{prefix}_MAX_USERS", 100),
        ))

    if not endpoints:
        raise ConfigurationError("No endpoints configured. Add VPN_<CODE>_PANEL_URL to the environment")

    logger.info(f"Loaded {len(endpoints)} endpoint(s): {', '.join(e.code for e in endpoints)}")
    return endpoints
