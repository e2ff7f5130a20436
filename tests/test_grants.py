"""Tests for permanent grants, revocation and usage refresh."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from access_grants.exceptions import InconsistencyWarning
from access_grants.grants import GrantService, PERMANENT_DEVICES


@pytest.fixture
def grant_service(store, adapter) -> GrantService:
    return GrantService(store, adapter)


class TestGrantPermanent:
    """Tests for operator grants."""

    async def test_one_grant_per_endpoint(self, grant_service, store, fake_panel):
        views = await grant_service.grant_permanent(777)

        assert [v.grant.endpoint_code for v in views] == ["ru", "nl"]
        for view in views:
            client = fake_panel.clients[view.grant.endpoint_code][view.grant.client_uuid]
            assert client["email"] == f"admin_777_{view.grant.endpoint_code}"
            assert client["expiryTime"] == 0
            assert client["limitIp"] == PERMANENT_DEVICES
            assert view.grant.tariff_id == "year"
            assert view.grant.expires_at > datetime.utcnow() + timedelta(days=99 * 365)
            assert view.descriptor.endswith(f"#ADMIN-{view.grant.endpoint_code.upper()}")

    async def test_selected_endpoints(self, grant_service, fake_panel):
        views = await grant_service.grant_permanent(777, ["nl"])
        assert len(views) == 1
        assert fake_panel.clients["ru"] == {}

    async def test_permanent_grants_never_expire(self, grant_service, store):
        await grant_service.grant_permanent(777)
        assert await store.list_expired_grants() == []

    async def test_store_failure_after_provisioning_is_inconsistency(self, grant_service, store, fake_panel):
        with patch.object(store, "create_grant", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(InconsistencyWarning) as exc_info:
                await grant_service.grant_permanent(777, ["ru"])

        # the remote client is left in place for audit
        assert exc_info.value.endpoint == "ru"
        assert exc_info.value.client_id in fake_panel.clients["ru"]
        assert await store.list_active_grants(777) == []
        alerts = await store.list_alerts()
        assert alerts[0].type == "inconsistency"
        assert "disk full" in alerts[0].message


class TestRevokePrincipal:
    """Tests for principal revocation."""

    async def test_revoke_removes_everything(self, grant_service, store, fake_panel):
        await grant_service.grant_permanent(5)

        result = await grant_service.revoke_principal(5)

        assert len(result.revoked) == 2
        assert result.remote_failures == []
        assert fake_panel.clients == {"ru": {}, "nl": {}}
        assert await store.list_active_grants(5) == []
        assert (await store.get_principal(5)).is_blocked is True

    async def test_remote_failure_still_revokes_locally(self, grant_service, store, fake_panel):
        views = await grant_service.grant_permanent(5)
        fake_panel.down.add("nl")

        result = await grant_service.revoke_principal(5)

        nl_grant = next(v.grant for v in views if v.grant.endpoint_code == "nl")
        assert result.remote_failures == [nl_grant.id]
        assert await store.list_active_grants(5) == []

    async def test_revoke_unknown_principal(self, grant_service, store):
        result = await grant_service.revoke_principal(404)
        assert result.revoked == []
        assert (await store.get_principal(404)).is_blocked is True


class TestRefreshUsage:
    async def test_usage_persisted(self, grant_service, store, fake_panel):
        views = await grant_service.grant_permanent(5, ["ru"])
        fake_panel.traffic[("ru", "admin_5_ru")] = (100, 400)

        refreshed = await grant_service.refresh_usage(5)

        assert refreshed[0].usage.total == 500
        assert refreshed[0].grant.traffic_used == 500
        assert (await store.get_grant(views[0].grant.id)).traffic_used == 500

    async def test_unreadable_usage_keeps_stored_value(self, grant_service, store, fake_panel):
        views = await grant_service.grant_permanent(5, ["ru"])
        await store.update_grant_traffic(views[0].grant.id, 42)
        fake_panel.down.add("ru")

        refreshed = await grant_service.refresh_usage(5)

        assert refreshed[0].usage is None
        assert refreshed[0].grant.traffic_used == 42
        assert refreshed[0].descriptor.startswith("vless://")
