"""
Health and monitoring endpoints.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from utilitysign.api.dependencies.services import get_app_settings, get_gateway, get_webhook_log
from utilitysign.core.config import Settings
from utilitysign.core.logging import get_logger
from utilitysign.integrations.backend import RequestGateway
from utilitysign.integrations.webhooks import WebhookLog
from utilitysign.schemas.common import HealthResponse

logger = get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health(
    deep: bool = Query(default=False, description="Also call the backend health endpoint"),
    settings: Settings = Depends(get_app_settings),
    gateway: RequestGateway = Depends(get_gateway),
) -> HealthResponse:
    payload: Dict[str, Any] = {"status": "ok", "environment": settings.environment}
    if deep:
        result = await gateway.health_check()
        payload["backend"] = {
            "healthy": result.success,
            "status_code": result.status_code,
            "correlation_id": result.correlation_id,
        }
        if not result.success:
            payload["status"] = "degraded"
            logger.warning("health.backend.unhealthy", kind=result.error.kind.value)
    return HealthResponse(**payload)


@router.get("/monitoring/gateway")
async def gateway_metrics(gateway: RequestGateway = Depends(get_gateway)) -> Dict[str, Any]:
    return {
        "metrics": gateway.metrics_summary(),
        "cache": gateway.cache_stats(),
        "rate_limit": await gateway.rate_limit_info(),
    }


@router.get("/monitoring/webhooks")
async def webhook_deliveries(
    limit: int = Query(default=100, ge=1, le=1000),
    webhook_log: WebhookLog = Depends(get_webhook_log),
) -> Dict[str, Any]:
    return {"count": len(webhook_log), "deliveries": webhook_log.entries(limit)}
