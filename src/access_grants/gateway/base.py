"""Payment gateway clients used to discover completed deposits."""

import secrets
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import AuthError, ConfigurationError, RemoteRejection, TransportError

logger = logging.getLogger(__name__)

YOOMONEY_API_URL = "https://yoomoney.ru/api/operation-history"
YOOMONEY_QUICKPAY_URL = "https://yoomoney.ru/quickpay/confirm"
DEFAULT_SUCCESS_URL = "https://t.me"


class Operation(BaseModel):
    """One ledger operation as reported by the gateway."""
    status: str
    label: Optional[str] = None
    amount: Optional[float] = None
    operation_id: Optional[str] = None


class OperationHistory(BaseModel):
    """Operation history response."""
    operations: List[Operation] = Field(default_factory=list)
    error: Optional[str] = None


def generate_payment_label(principal_id: int, endpoint_code: str, tariff_id: str) -> str:
    """Generate a unique invoice label used as the reconciliation key."""
    return f"pay_{principal_id}_{endpoint_code}_{tariff_id}_{secrets.token_hex(4)}"


class GatewayBase(ABC):
    """Minimal gateway interface: confirm deposits by label, build pay links."""

    name: str = "base"

    @abstractmethod
    async def check_payment(self, label: str) -> bool:
        """Return True if the ledger holds a successful deposit for ``label``.

        Raises:
            TransportError: The gateway could not be reached.
            AuthError: The gateway refused our token.
            RemoteRejection: The gateway answered with an error.
        """
        raise NotImplementedError

    @abstractmethod
    def build_pay_url(self, amount: int, label: str) -> str:
        """Build the URL the end user pays through."""
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}


class YooMoneyGateway(GatewayBase):
    """YooMoney wallet: quickpay links and operation-history polling."""

    name = "yoomoney"

    def __init__(
        self,
        token: str,
        wallet: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        success_url: str = DEFAULT_SUCCESS_URL,
    ):
        """Initialize the gateway.

        Args:
            token: OAuth token with operation-history scope.
            wallet: Receiver wallet number.
            http_client: Optional shared client (tests inject a mock transport).
            timeout: Request timeout in seconds.
            success_url: Where the payer is redirected after paying.

        Raises:
            ConfigurationError: If token or wallet is empty.
        """
        if not token or not wallet:
            raise ConfigurationError("YooMoney token and wallet must both be provided")
        self._token = token
        self.wallet = wallet
        self.timeout = timeout
        self.success_url = success_url
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    def build_pay_url(self, amount: int, label: str) -> str:
        params = urlencode({
            "receiver": self.wallet,
            "quickpay-form": "button",
            "paymentType": "AC",
            "sum": str(amount),
            "label": label,
            "successURL": self.success_url,
        })
        return f"{YOOMONEY_QUICKPAY_URL}?{params}"

    async def fetch_operations(self, label: str, records: int = 1) -> OperationHistory:
        """Query deposits filtered by label."""
        try:
            response = await self.client.post(
                YOOMONEY_API_URL,
                headers={"Authorization": f"Bearer {self._token}"},
                data={"type": "deposition", "label": label, "records": str(records)},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            # covers redirect loops and undecodable bodies as well as network failures
            raise TransportError(f"Failed to reach YooMoney API: {type(e).__name__}: {e}") from e

        if response.status_code == 401:
            raise AuthError("YooMoney rejected the API token")
        if not response.is_success:
            raise RemoteRejection(
                f"YooMoney API error: {response.status_code} {response.text}",
                status_code=response.status_code,
            )

        try:
            history = OperationHistory.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RemoteRejection("Malformed YooMoney response", status_code=response.status_code) from e

        if history.error:
            raise RemoteRejection(f"YooMoney API error: {history.error}", status_code=response.status_code)
        return history

    async def check_payment(self, label: str) -> bool:
        history = await self.fetch_operations(label)
        if not history.operations:
            return False
        return history.operations[0].status == "success"

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()


def get_gateway(
    provider: str = "yoomoney",
    token: Optional[str] = None,
    wallet: Optional[str] = None,
    **kwargs: Any,
) -> GatewayBase:
    """Factory function to get the appropriate gateway client.

    Args:
        provider: ``yoomoney`` or ``simulator``.
        token: Gateway API token; the simulator ignores it.
        wallet: Receiver wallet.
        **kwargs: Passed through to the gateway constructor.

    Raises:
        ValueError: If the provider is not supported.
    """
    from .simulator import SimulatorGateway

    provider = provider.lower()
    if provider == YooMoneyGateway.name:
        return YooMoneyGateway(token or "", wallet or "", **kwargs)
    if provider == SimulatorGateway.name:
        if wallet:
            kwargs["wallet"] = wallet
        return SimulatorGateway(**kwargs)

    raise ValueError(f"Unsupported payment gateway: {provider}")
