"""HTTP helpers shared by the service apps."""

from time import perf_counter

from fastapi import FastAPI, HTTPException, Request

from fiscalpush.common.config import settings
from fiscalpush.common.metrics import http_request_duration_seconds, http_requests_total


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def install_metrics_middleware(app: FastAPI, service_name: str) -> None:
    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()
