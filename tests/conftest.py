"""Shared test fixtures and configuration."""

import json
import asyncio
from typing import Dict, List, Set, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

import httpx
import pytest

from access_grants.config import Endpoint
from access_grants.database import DatabaseManager
from access_grants.gateway import SimulatorGateway
from access_grants.notifications import Notifier
from access_grants.panel import PanelAdapter, PanelSessionClient, SessionStore
from access_grants.reconciliation import PaymentReconciler
from access_grants.sales import SalesGate
from access_grants.store import LifecycleStore
from access_grants.tariffs import TariffCatalog


def make_endpoint(code: str, **overrides) -> Endpoint:
    values = dict(
        code=code,
        name=f"Server {code.upper()}",
        emoji="*",
        panel_url=f"https://{code}-panel.test/secret",
        panel_username="admin",
        panel_password="hunter2",
        inbound_id=1,
        server_ip=f"10.0.0.{len(code)}",
        server_port=443,
        public_key=f"pbk-{code}",
        short_id="ab12",
        sni="www.example.com",
    )
    values.update(overrides)
    return Endpoint(**values)


class FakePanel:
    """In-memory panel served through ``httpx.MockTransport``.

    Knobs:
        down: endpoint codes whose every request fails at the transport level.
        transport_failures: endpoint code -> number of requests to fail before succeeding.
        probe_delay: seconds the root probe sleeps before answering.
    """

    def __init__(self, endpoints: List[Endpoint]):
        self.endpoints = {urlsplit(e.panel_url).netloc: e for e in endpoints}
        self.clients: Dict[str, Dict[str, dict]] = {e.code: {} for e in endpoints}
        self.traffic: Dict[Tuple[str, str], Tuple[int, int]] = {}
        self.valid_cookies: Dict[str, Set[str]] = {e.code: set() for e in endpoints}
        self.logins: Dict[str, int] = {e.code: 0 for e in endpoints}
        self.requests: List[Tuple[str, str, str]] = []
        self.down: Set[str] = set()
        self.transport_failures: Dict[str, int] = {}
        self.probe_delay = 0.0
        self.reject_login = False
        self.fail_add = False
        self._token = 0

    def expire_sessions(self, code: str) -> None:
        self.valid_cookies[code].clear()

    def api_calls(self, code: str) -> List[str]:
        return [path for c, method, path in self.requests if c == code and path != "/login"]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        endpoint = self.endpoints[request.url.netloc.decode()]
        code = endpoint.code
        prefix = urlsplit(endpoint.panel_url).path
        path = request.url.path[len(prefix):] or "/"
        self.requests.append((code, request.method, path))

        if code in self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if self.transport_failures.get(code, 0) > 0:
            self.transport_failures[code] -= 1
            raise httpx.ConnectTimeout("timed out", request=request)

        if path == "/":
            if self.probe_delay:
                await asyncio.sleep(self.probe_delay)
            return httpx.Response(200, text="<html>login</html>")

        if path == "/login":
            return self._login(endpoint, request)

        if request.headers.get("cookie") not in self.valid_cookies[code]:
            return httpx.Response(401)

        parts = path.strip("/").split("/")
        if path == "/panel/api/inbounds/addClient":
            body = json.loads(request.content)
            client = json.loads(body["settings"])["clients"][0]
            if self.fail_add:
                return httpx.Response(200, json={"success": False, "msg": "inbound is full"})
            if client["id"] in self.clients[code]:
                return httpx.Response(200, json={"success": False, "msg": "Duplicate client id"})
            self.clients[code][client["id"]] = client
            return httpx.Response(200, json={"success": True, "msg": "", "obj": None})

        if parts[-2] == "delClient":
            if self.clients[code].pop(parts[-1], None) is None:
                return httpx.Response(200, json={"success": False, "msg": "client not found"})
            return httpx.Response(200, json={"success": True})

        if parts[-2] == "getClientTraffics":
            email = unquote(parts[-1])
            if (code, email) not in self.traffic:
                return httpx.Response(200, json={"success": True, "obj": None})
            up, down = self.traffic[(code, email)]
            return httpx.Response(200, json={"success": True, "obj": {"email": email, "up": up, "down": down}})

        if parts[-2] == "resetClientTraffic":
            self.traffic[(code, unquote(parts[-1]))] = (0, 0)
            return httpx.Response(200, json={"success": True})

        return httpx.Response(404)

    def _login(self, endpoint: Endpoint, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if self.reject_login or form.get("password") != endpoint.panel_password:
            return httpx.Response(200, json={"success": False, "msg": "Wrong username or password"})

        self.logins[endpoint.code] += 1
        self._token += 1
        cookie = f"3x-ui=tok{self._token}"
        self.valid_cookies[endpoint.code].add(cookie)
        return httpx.Response(
            200,
            json={"success": True, "msg": "Login Successfully"},
            headers={"set-cookie": f"{cookie}; Path=/; HttpOnly"},
        )


class RecordingNotifier(Notifier):
    """Collects messages instead of sending them."""

    def __init__(self):
        self.principal_messages: List[Tuple[int, str]] = []
        self.operator_messages: List[str] = []
        self.fail = False

    async def notify_principal(self, principal_id: int, message: str) -> None:
        if self.fail:
            raise RuntimeError("bot was blocked by the user")
        self.principal_messages.append((principal_id, message))

    async def notify_operator(self, message: str) -> None:
        if self.fail:
            raise RuntimeError("operator unreachable")
        self.operator_messages.append(message)


@pytest.fixture
def endpoints() -> List[Endpoint]:
    return [make_endpoint("ru"), make_endpoint("nl", inbound_id=3)]


@pytest.fixture
def fake_panel(endpoints) -> FakePanel:
    return FakePanel(endpoints)


@pytest.fixture
async def session_client(endpoints, fake_panel):
    """Session client wired to the fake panel with zero backoff."""
    http_client = httpx.AsyncClient(transport=fake_panel.transport)
    client = PanelSessionClient(
        {e.code: e for e in endpoints},
        SessionStore(),
        http_client=http_client,
        backoff=0,
    )
    yield client
    await http_client.aclose()


@pytest.fixture
def adapter(session_client) -> PanelAdapter:
    return PanelAdapter(session_client)


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'grants.db'}")
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest.fixture
def store(db) -> LifecycleStore:
    return LifecycleStore(db)


@pytest.fixture
def gateway() -> SimulatorGateway:
    return SimulatorGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sales_gate() -> SalesGate:
    return SalesGate()


@pytest.fixture
def catalog() -> TariffCatalog:
    return TariffCatalog()


@pytest.fixture
def reconciler(store, adapter, gateway, catalog, notifier, sales_gate) -> PaymentReconciler:
    return PaymentReconciler(store, adapter, gateway, catalog, notifier, sales_gate)


@pytest.fixture
def env() -> Dict[str, str]:
    """A complete environment for one endpoint."""
    return {
        "YOOMONEY_TOKEN": "ym-token",
        "YOOMONEY_WALLET": "4100111",
        "VPN_RU_NAME": "Moscow",
        "VPN_RU_EMOJI": "RU",
        "VPN_RU_PANEL_URL": "https://ru-panel.test/secret/",
        "VPN_RU_PANEL_USERNAME": "admin",
        "VPN_RU_PANEL_PASSWORD": "hunter2",
        "VPN_RU_INBOUND_ID": "1",
        "VPN_RU_SERVER_IP": "10.0.0.2",
        "VPN_RU_PUBLIC_KEY": "pbk-ru",
        "VPN_RU_SHORT_ID": "ab12",
        "VPN_RU_SNI": "www.example.com",
    }
