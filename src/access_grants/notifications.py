"""Outbound messages to principals and the operator."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class Notifier(ABC):
    """Messaging collaborator used by the reconciler and scheduled sweeps."""

    @abstractmethod
    async def notify_principal(self, principal_id: int, message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def notify_operator(self, message: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Writes messages to the log. Used when no bot token is configured."""

    async def notify_principal(self, principal_id: int, message: str) -> None:
        logger.info(f"[to {principal_id}] {message}")

    async def notify_operator(self, message: str) -> None:
        logger.warning(f"[operator] {message}")


class TelegramNotifier(Notifier):
    """Sends messages through the Telegram Bot API ``sendMessage`` method."""

    def __init__(
        self,
        bot_token: str,
        operator_id: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self._token = bot_token
        self.operator_id = operator_id
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def _send(self, chat_id: int, text: str) -> None:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "link_preview_options": {"is_disabled": True},
        }
        response = await self.client.post(
            f"{TELEGRAM_API_URL}/bot{self._token}/sendMessage",
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()

    async def notify_principal(self, principal_id: int, message: str) -> None:
        await self._send(principal_id, message)

    async def notify_operator(self, message: str) -> None:
        if self.operator_id is None:
            logger.warning(f"No operator configured, dropping message: {message}")
            return
        await self._send(self.operator_id, message)

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()


class BestEffortNotifier(Notifier):
    """Wraps another notifier and swallows its failures.

    A principal that blocked the bot or an unreachable operator must never
    fail the caller.
    """

    def __init__(self, inner: Notifier):
        self.inner = inner

    async def notify_principal(self, principal_id: int, message: str) -> None:
        try:
            await self.inner.notify_principal(principal_id, message)
        except Exception as e:
            logger.warning(f"Failed to notify principal {principal_id}: {type(e).__name__}: {e}")

    async def notify_operator(self, message: str) -> None:
        try:
            await self.inner.notify_operator(message)
        except Exception as e:
            logger.warning(f"Failed to notify operator: {type(e).__name__}: {e}")

    async def close(self) -> None:
        await self.inner.close()


def build_notifier(bot_token: Optional[str] = None, operator_id: Optional[int] = None) -> Notifier:
    """Pick the Telegram notifier when a bot token is set, logging otherwise."""
    if bot_token:
        inner: Notifier = TelegramNotifier(bot_token, operator_id=operator_id)
    else:
        inner = LoggingNotifier()
    return BestEffortNotifier(inner)
