"""Operator HTTP API."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .auth import limiter, verify_api_key
from .config import Settings
from .exceptions import (
    AuthError,
    NotFoundError,
    ProvisioningError,
    RemoteRejection,
    StateConflictError,
    TransportError,
)
from .grants import GrantView, RevocationResult
from .reconciliation import CheckResult, PurchaseResult
from .runtime import ProvisioningRuntime
from .store import AlertRecord

logger = logging.getLogger(__name__)

router = APIRouter()


class PurchaseBody(BaseModel):
    """Request body for starting a purchase."""
    principal_id: int = Field(..., description="Buyer ID")
    endpoint_code: str = Field(..., description="Endpoint to provision on")
    tariff_id: str = Field(..., description="trial, week, month, quarter or year")


class EndpointLoad(BaseModel):
    code: str
    active_grants: int
    max_users: int


class StatsResponse(BaseModel):
    total_revenue: int
    total_payments: int
    sales_blocked: bool
    endpoints: List[EndpointLoad]
    recent_alerts: List[AlertRecord]


def get_runtime(request: Request) -> ProvisioningRuntime:
    return request.app.state.runtime


@router.get("/health")
async def health(runtime: ProvisioningRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "database": runtime.db.is_initialized,
        "scheduler": runtime.scheduler.running,
        "sales_blocked": runtime.sales_gate.blocked,
        "gateway": runtime.gateway.health_check(),
    }


@router.get("/endpoints/health")
async def endpoints_health(
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, bool]:
    """Probe every configured panel concurrently."""
    return await runtime.adapter.health_check_all()


@router.post("/purchases", response_model=PurchaseResult)
async def create_purchase(
    body: PurchaseBody,
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    """
    Start a purchase.

    Trials are activated immediately; paid tariffs return a pay URL and a
    label to check later.
    """
    return await runtime.reconciler.start_purchase(body.principal_id, body.endpoint_code, body.tariff_id)


@router.post("/payments/{label}/check", response_model=CheckResult)
@limiter.limit("10/minute")
async def check_payment(
    request: Request,
    label: str,
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    """Check one payment against the gateway now instead of waiting for the poll."""
    return await runtime.reconciler.check_now(label)


@router.post("/sales/toggle")
async def toggle_sales(
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, bool]:
    return {"sales_blocked": runtime.sales_gate.toggle()}


@router.get("/principals/{principal_id}/grants", response_model=List[GrantView])
async def list_principal_grants(
    principal_id: int,
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    """Active grants with refreshed traffic usage and connection links."""
    return await runtime.grants.refresh_usage(principal_id)


@router.post("/principals/{principal_id}/revoke", response_model=RevocationResult)
async def revoke_principal(
    principal_id: int,
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    return await runtime.grants.revoke_principal(principal_id)


@router.get("/stats", response_model=StatsResponse)
async def stats(
    runtime: ProvisioningRuntime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    payments = await runtime.store.payment_stats()
    endpoints = [
        EndpointLoad(
            code=endpoint.code,
            active_grants=await runtime.store.count_active_grants(endpoint.code),
            max_users=endpoint.max_users,
        )
        for endpoint in runtime.settings.endpoints
    ]
    return StatsResponse(
        total_revenue=payments["total_revenue"],
        total_payments=payments["total_payments"],
        sales_blocked=runtime.sales_gate.blocked,
        endpoints=endpoints,
        recent_alerts=await runtime.store.list_alerts(limit=10),
    )


def _status_for(exc: ProvisioningError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StateConflictError):
        return 409
    if isinstance(exc, (TransportError, AuthError, RemoteRejection)):
        return 502
    return 500


async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(runtime: Optional[ProvisioningRuntime] = None, run_scheduler: bool = True) -> FastAPI:
    """Build the API application.

    Args:
        runtime: Prebuilt runtime. Built from the environment at startup if None.
        run_scheduler: Start the maintenance jobs alongside the API.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or ProvisioningRuntime.from_settings(Settings.from_env())
        app.state.runtime = active
        await active.start(with_scheduler=run_scheduler)
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(title="Access Grants - Operator API", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ProvisioningError, provisioning_error_handler)
    app.include_router(router)
    return app
