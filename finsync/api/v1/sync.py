"""
Sync API endpoints - pipeline run, proxy passthrough, insights, store status
"""
import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from finsync.api.deps import get_db, get_proxy, get_settings
from finsync.application.insights import InsightsValidationError, SyncInsightsUseCase
from finsync.application.orchestrator import PipelineOrchestrator, SyncTarget
from finsync.application.store_status import StoreStatusQuery
from finsync.application.users import CleanupUserUseCase
from finsync.config import Settings
from finsync.infrastructure.upstream.client import AuthenticatedProxy
from finsync.infrastructure.upstream.errors import (
    PayloadShapeError,
    UpstreamClientError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# === Request models ===

class ProxyRequest(BaseModel):
    endpoint: str  # e.g. /pfm/api/v2/deposit/user-linked-accounts
    body: dict = Field(default_factory=dict)

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Only paths under the configured base URL, never absolute URLs"""
        v = v.strip()
        if not v.startswith("/") or "://" in v:
            raise ValueError("endpoint must be a path starting with '/'")
        return v


class InsightsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: str | None = None  # default: SYNC_TEST_IDENTITY
    endpoint: str | None = None  # default: INSIGHTS_ENDPOINT
    period_from: date = Field(alias="from")
    period_to: date = Field(alias="to")
    frequency: str = "MONTHLY"  # WEEKLY, MONTHLY, YEARLY
    account_id: str | None = Field(default=None, alias="accountId")


# === Helper function ===

def _upstream_error_response(exc: UpstreamClientError) -> JSONResponse:
    """UpstreamError keeps the upstream status and body; everything else is a 502"""
    if isinstance(exc, UpstreamError):
        status_code = exc.status if exc.status >= 400 else 502
        return JSONResponse(
            status_code=status_code,
            content={"error": str(exc), "status": exc.status, "body": exc.body},
        )
    content = {"error": str(exc), "type": exc.__class__.__name__}
    if isinstance(exc, PayloadShapeError):
        content["body"] = exc.response.data
    return JSONResponse(status_code=502, content=content)


# === Endpoints ===

@router.get("/run")
def run_sync(
    db: Session = Depends(get_db),
    proxy: AuthenticatedProxy = Depends(get_proxy),
    settings: Settings = Depends(get_settings),
):
    """Один полный цикл синхронизации для тестового идентификатора"""
    target = SyncTarget(
        identity=settings.SYNC_TEST_IDENTITY,
        endpoint=settings.SYNC_ENDPOINT,
        fi_type=settings.SYNC_FI_TYPE,
    )
    report = PipelineOrchestrator(db, proxy).run(target)
    return report.to_dict()


@router.delete("/run")
def cleanup_sync(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Удалить все данные тестового идентификатора"""
    return CleanupUserUseCase(db).execute(settings.SYNC_TEST_IDENTITY)


@router.get("/health")
def upstream_health(proxy: AuthenticatedProxy = Depends(get_proxy)):
    result = proxy.health_check()
    if result["status"] != "OK":
        return JSONResponse(status_code=503, content=result)
    return result


@router.post("/proxy")
def proxy_call(req: ProxyRequest, proxy: AuthenticatedProxy = Depends(get_proxy)):
    """Forward one call to the aggregator with the cached token"""
    try:
        response = proxy.forward(req.endpoint, req.body)
    except UpstreamClientError as exc:
        logger.warning("Proxy call to %s failed: %s", req.endpoint, exc)
        return _upstream_error_response(exc)
    return response.data


@router.post("/insights")
def sync_insights(
    req: InsightsRequest,
    db: Session = Depends(get_db),
    proxy: AuthenticatedProxy = Depends(get_proxy),
    settings: Settings = Depends(get_settings),
):
    """Balance statistics per period from an account statement"""
    use_case = SyncInsightsUseCase(db, proxy)
    try:
        return use_case.execute(
            identity=req.identity or settings.SYNC_TEST_IDENTITY,
            endpoint=req.endpoint or settings.INSIGHTS_ENDPOINT,
            period_from=req.period_from,
            period_to=req.period_to,
            frequency=req.frequency,
            account_id=req.account_id,
        )
    except InsightsValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamClientError as exc:
        logger.warning("Insights fetch failed: %s", exc)
        return _upstream_error_response(exc)


@router.get("/store-status")
def store_status(db: Session = Depends(get_db)):
    return StoreStatusQuery(db).execute()
