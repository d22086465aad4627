import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from redirect_operator.internal.domain.models import RedirectTo
from redirect_operator.internal.store.reflector import Store
from redirect_operator.metrics import Metrics

logger = logging.getLogger(__name__)


def normalize_host(host_header: str) -> str:
    """Strips the port and any trailing dots from a Host header value."""
    host = host_header.strip()
    if host.startswith('['):
        # IPv6 literal, "[::1]:8080"
        end = host.find(']')
        if end != -1:
            host = host[:end + 1]
    elif ':' in host:
        host = host.rsplit(':', 1)[0]
    return host.rstrip('.')


def destination(to: RedirectTo, path: str) -> str:
    # path never has its leading slash, so a uri ending in "/" yields "//"
    if to.include_request_uri:
        return f"{to.uri}/{path}"
    return to.uri


def create_redirect_app(store: Store, metrics: Metrics) -> FastAPI:
    app = FastAPI(title="Redirect Operator", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=["GET", "HEAD"])
    async def redirect(request: Request, path: str) -> Response:
        host = normalize_host(request.headers.get('host', ''))
        found = store.find_by_host(host)
        if found is None:
            logger.warning(f"No redirect found for host {host!r}")
            metrics.http.set_failure(host)
            return PlainTextResponse(f"no redirect configured for {host}\n", status_code=404)

        location = destination(found.spec.to, path)
        logger.info(f"Redirecting {host}/{path} to {location} ({found.key()})")
        metrics.http.set_request(host)
        return RedirectResponse(url=location, status_code=308)

    return app
