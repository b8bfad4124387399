from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from hoteldesk.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["observability"])

_exporter = PrometheusExporter(metrics_registry)


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def metrics() -> PlainTextResponse:
    return PlainTextResponse(_exporter.export(), media_type="text/plain; version=0.0.4")
