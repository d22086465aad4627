import logging
from typing import Callable, Optional

from fastapi import FastAPI, Response
from fastapi.responses import PlainTextResponse

from redirect_operator.metrics import Metrics

logger = logging.getLogger(__name__)


def create_ops_app(metrics: Metrics, is_ready: Optional[Callable[[], bool]] = None) -> FastAPI:
    """Health, readiness and Prometheus endpoints, served apart from redirect traffic."""
    app = FastAPI(title="Redirect Operator ops", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/healthz")
    async def healthz():
        return PlainTextResponse("OK\n")

    @app.get("/ready")
    async def ready():
        # Ready once the first list of Redirects has landed in the store
        if is_ready is not None and not is_ready():
            return PlainTextResponse("not ready\n", status_code=503)
        return PlainTextResponse("OK\n")

    @app.get("/metrics")
    async def prometheus_metrics():
        try:
            body, content_type = metrics.render()
        except Exception as e:
            logger.error(f"Failed to encode metrics: {e}", exc_info=True)
            return Response(status_code=500)
        return Response(content=body, media_type=content_type)

    return app
