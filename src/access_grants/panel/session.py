"""Authenticated HTTP client for remote panels.

One login per endpoint is cached in a :class:`SessionStore` and shared by
every call to that endpoint. Transport failures are retried with
exponential backoff; a 401 triggers exactly one re-login and one retry.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Endpoint
from ..exceptions import AuthError, NotFoundError, RemoteRejection, TransportError
from .models import PanelEnvelope

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = 1.0  # seconds; doubles per attempt


class SessionStore:
    """Per-endpoint session credentials.

    Last writer wins; concurrent logins for the same endpoint simply
    overwrite each other.
    """

    def __init__(self) -> None:
        self._cookies: Dict[str, str] = {}

    def get(self, endpoint_code: str) -> Optional[str]:
        return self._cookies.get(endpoint_code)

    def put(self, endpoint_code: str, cookie: str) -> None:
        self._cookies[endpoint_code] = cookie

    def invalidate(self, endpoint_code: str) -> None:
        self._cookies.pop(endpoint_code, None)

    def __contains__(self, endpoint_code: str) -> bool:
        return endpoint_code in self._cookies

    def __len__(self) -> int:
        return len(self._cookies)


class PanelSessionClient:
    """HTTP client that owns panel authentication.

    Attributes:
        endpoints: Configured endpoints keyed by code.
        sessions: Credential cache shared by all calls.
        timeout: Per-attempt timeout in seconds.
        max_attempts: Attempts per request for transport failures.
        backoff: Base backoff in seconds (1s, 2s, 4s ...).
    """

    def __init__(
        self,
        endpoints: Mapping[str, Endpoint],
        sessions: Optional[SessionStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
    ):
        self.endpoints = dict(endpoints)
        self.sessions = sessions if sessions is not None else SessionStore()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the underlying async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True
        return self._client

    def endpoint(self, endpoint_code: str) -> Endpoint:
        """Resolve an endpoint by code.

        Raises:
            NotFoundError: If the code is not configured.
        """
        endpoint = self.endpoints.get(endpoint_code)
        if endpoint is None:
            raise NotFoundError(f"Endpoint config not found for code: {endpoint_code}")
        return endpoint

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Request retry {retry_state.attempt_number}/{self.max_attempts} "
            f"in {delay:.1f}s: {type(exc).__name__}: {exc}"
        )

    async def send(
        self,
        endpoint: Endpoint,
        method: str,
        url: str,
        attempts: Optional[int] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue one HTTP request, retrying transport failures only.

        Any HTTP status, including 4xx and 5xx, is returned to the caller.

        Raises:
            TransportError: If every attempt failed at the transport level, or
                the exchange broke down (redirect loop, undecodable body).
        """
        response: Optional[httpx.Response] = None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts or self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, min=0),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(
                f"{method} {url} failed for {endpoint.code}: {type(e).__name__}: {e}",
                endpoint=endpoint.code,
            ) from e
        return response

    async def login(self, endpoint: Endpoint) -> str:
        """Authenticate against the panel and cache the session cookie.

        Raises:
            AuthError: If the panel refuses the credentials or sets no cookie.
            TransportError: If the panel is unreachable.
        """
        response = await self.send(
            endpoint,
            "POST",
            f"{endpoint.panel_url}/login",
            data={"username": endpoint.panel_username, "password": endpoint.panel_password},
        )

        if not response.is_success:
            raise AuthError(
                f"Login failed for {endpoint.code}: {response.status_code} {response.reason_phrase}",
                endpoint=endpoint.code,
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("success") is False:
            raise AuthError(
                f"Login rejected for {endpoint.code}: {body.get('msg') or 'bad credentials'}",
                endpoint=endpoint.code,
            )

        set_cookie = response.headers.get("set-cookie")
        if not set_cookie:
            raise AuthError(f"No session cookie returned for {endpoint.code}", endpoint=endpoint.code)

        # "3x-ui=xxx; Path=/; ..." -> "3x-ui=xxx"
        cookie = set_cookie.split(";")[0].strip()
        self.sessions.put(endpoint.code, cookie)
        logger.debug(f"Panel login successful for {endpoint.code}")
        return cookie

    async def ensure_session(self, endpoint: Endpoint) -> str:
        cookie = self.sessions.get(endpoint.code)
        if cookie is None:
            cookie = await self.login(endpoint)
        return cookie

    async def _request(
        self,
        endpoint: Endpoint,
        method: str,
        url: str,
        cookie: str,
        body: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        kwargs: Dict[str, Any] = {"headers": {"Cookie": cookie}}
        if body is not None:
            kwargs["json"] = body
        return await self.send(endpoint, method, url, **kwargs)

    async def call(
        self,
        endpoint_code: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call a panel API path and return the envelope's ``obj``.

        Raises:
            NotFoundError: Unknown endpoint code.
            TransportError: Network failure after the retry budget.
            AuthError: Login failed, or the session was rejected twice.
            RemoteRejection: Non-success status or ``success: false``.
        """
        endpoint = self.endpoint(endpoint_code)
        url = f"{endpoint.panel_url}{path}"

        cookie = await self.ensure_session(endpoint)
        response = await self._request(endpoint, method, url, cookie, body)

        if response.status_code == 401:
            logger.info(f"Session expired for {endpoint.code}, re-logging in")
            self.sessions.invalidate(endpoint.code)
            cookie = await self.login(endpoint)
            response = await self._request(endpoint, method, url, cookie, body)
            if response.status_code == 401:
                raise AuthError(
                    f"Session rejected after re-login [{endpoint.code}] {method} {path}",
                    endpoint=endpoint.code,
                )

        return self._unwrap(endpoint, method, path, response)

    def _unwrap(self, endpoint: Endpoint, method: str, path: str, response: httpx.Response) -> Any:
        if not response.is_success:
            raise RemoteRejection(
                f"Panel API error [{endpoint.code}] {method} {path}: {response.status_code} {response.text}",
                endpoint=endpoint.code,
                status_code=response.status_code,
            )

        try:
            envelope = PanelEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RemoteRejection(
                f"Malformed panel response [{endpoint.code}] {method} {path}",
                endpoint=endpoint.code,
                status_code=response.status_code,
            ) from e

        if not envelope.success:
            raise RemoteRejection(
                f"Panel API failed [{endpoint.code}] {method} {path}: {envelope.msg or 'unknown error'}",
                endpoint=endpoint.code,
                status_code=response.status_code,
            )

        return envelope.obj

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "PanelSessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
