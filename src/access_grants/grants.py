"""Operator-side grant management: permanent grants, revocation, usage."""

import uuid
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from .database import AlertType
from .exceptions import InconsistencyWarning, ProvisioningError
from .panel import ClientUsage, PanelAdapter
from .store import GrantRecord, LifecycleStore
from .tariffs import TariffId

logger = logging.getLogger(__name__)

PERMANENT_DEVICES = 5
PERMANENT_LIFETIME = timedelta(days=100 * 365)


class GrantView(BaseModel):
    """A grant with its connection descriptor and last known usage."""
    grant: GrantRecord
    descriptor: str
    usage: Optional[ClientUsage] = None


class RevocationResult(BaseModel):
    principal_id: int
    revoked: List[GrantRecord]
    remote_failures: List[int] = Field(default_factory=list, description="Grant IDs whose remote client could not be removed")


class GrantService:
    """Grant operations outside the payment flow."""

    def __init__(self, store: LifecycleStore, adapter: PanelAdapter):
        self.store = store
        self.adapter = adapter

    def descriptor_for(self, grant: GrantRecord, label: Optional[str] = None) -> str:
        return self.adapter.build_connection_descriptor(
            grant.endpoint_code,
            grant.client_uuid,
            label or f"VPN-{grant.endpoint_code.upper()}-{grant.id}",
        )

    async def grant_permanent(
        self,
        principal_id: int,
        endpoint_codes: Optional[List[str]] = None,
    ) -> List[GrantView]:
        """Create a never-expiring grant on each endpoint.

        The remote client has no expiry; locally the grant expires in 100
        years so the expiry sweep never picks it up.

        Args:
            principal_id: Owner of the grants, usually the operator.
            endpoint_codes: Endpoints to provision. Defaults to all.

        Returns:
            One view per provisioned endpoint.

        Raises:
            InconsistencyWarning: A client was provisioned but its grant could
                not be stored. The remote client is left for audit.
        """
        codes = endpoint_codes or self.adapter.endpoint_codes
        await self.store.ensure_principal(principal_id)

        views: List[GrantView] = []
        for code in codes:
            client_uuid = str(uuid.uuid4())
            client_email = f"admin_{principal_id}_{code}"

            await self.adapter.add_client(code, client_uuid, client_email, PERMANENT_DEVICES, 0, 0)
            try:
                grant = await self.store.create_grant(
                    principal_id=principal_id,
                    endpoint_code=code,
                    client_uuid=client_uuid,
                    client_email=client_email,
                    tariff_id=TariffId.YEAR.value,
                    expires_at=datetime.utcnow() + PERMANENT_LIFETIME,
                    max_devices=PERMANENT_DEVICES,
                )
            except Exception as e:
                message = (
                    f"Client {client_uuid} provisioned on {code} "
                    f"but permanent grant for {principal_id} was not recorded: {type(e).__name__}: {e}"
                )
                await self._record_inconsistency(message)
                raise InconsistencyWarning(message, endpoint=code, client_id=client_uuid) from e
            views.append(GrantView(grant=grant, descriptor=self.descriptor_for(grant, f"ADMIN-{code.upper()}")))
            logger.info(f"Permanent grant {grant.id} created for {principal_id} on {code}")

        return views

    async def _record_inconsistency(self, message: str) -> None:
        logger.error(message)
        try:
            await self.store.create_alert(AlertType.INCONSISTENCY.value, message)
        except Exception as e:
            logger.error(f"Failed to record {AlertType.INCONSISTENCY.value} alert: {type(e).__name__}: {e}")

    async def revoke_principal(self, principal_id: int) -> RevocationResult:
        """Block a principal and tear down every active grant.

        Remote removal is best-effort; local deactivation always happens.
        """
        revoked = await self.store.deactivate_all_grants_for_principal(principal_id)
        failures: List[int] = []
        for grant in revoked:
            try:
                await self.adapter.remove_client(grant.endpoint_code, grant.client_uuid)
            except ProvisioningError as e:
                logger.error(f"Failed to remove client for grant {grant.id} during revocation: {e}")
                failures.append(grant.id)

        await self.store.block_principal(principal_id)
        logger.info(f"Principal {principal_id} revoked, {len(revoked)} grant(s) removed")
        return RevocationResult(principal_id=principal_id, revoked=revoked, remote_failures=failures)

    async def refresh_usage(self, principal_id: int) -> List[GrantView]:
        """Read panel usage for each active grant and persist it.

        A grant whose usage cannot be read keeps its stored value.
        """
        views: List[GrantView] = []
        for grant in await self.store.list_active_grants(principal_id):
            usage: Optional[ClientUsage] = None
            try:
                usage = await self.adapter.get_client_usage(grant.endpoint_code, grant.client_email)
            except ProvisioningError as e:
                logger.warning(f"Usage read failed for grant {grant.id}: {e}")
            else:
                await self.store.update_grant_traffic(grant.id, usage.total)
                grant = grant.model_copy(update={"traffic_used": usage.total})
            views.append(GrantView(grant=grant, descriptor=self.descriptor_for(grant), usage=usage))
        return views
