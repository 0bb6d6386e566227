from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from helpdesk.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["health"])


@router.get("/ping", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def metrics() -> PlainTextResponse:
    payload = PrometheusExporter(metrics_registry).build_payload()
    return PlainTextResponse(payload, media_type="text/plain; version=0.0.4")
