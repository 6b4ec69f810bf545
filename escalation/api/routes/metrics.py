from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from escalation.metrics import metrics_registry
from escalation.metrics.exporters import PrometheusExporter

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus text exposition")
async def metrics() -> str:
    return PrometheusExporter(metrics_registry).build_payload()
