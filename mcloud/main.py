from __future__ import annotations

import hmac
from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from mcloud.config import Settings, get_settings
from mcloud.control_plane import build_control_plane
from mcloud.errors import MCloudError, ValidationError
from mcloud.logger import configure_logging, get_logger
from mcloud.metrics import observe_http_request
from mcloud.routes import cluster, events, nodes, operations, system
from mcloud.services.adapters import AdapterSet
from mcloud.services.probe import HostProbe

logger = get_logger("api")

PUBLIC_PATHS = {
    "/health",
    "/version",
    "/metrics",
    "/cluster/join",
    "/cluster/heartbeat",
    "/cluster/leave",
}


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return str(path) if path else "unmatched"


def create_app(
    settings: Optional[Settings] = None,
    *,
    adapters: Optional[AdapterSet] = None,
    probe: Optional[HostProbe] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_file)
    control_plane = build_control_plane(settings, adapters=adapters, probe=probe)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.startup",
            "Starting control plane",
            env=settings.app_env,
            version=settings.app_version,
            role=settings.node_role,
            adapter_mode=settings.adapter_mode,
        )
        if not settings.operator_token:
            logger.warning(
                "security.defaults",
                "OPERATOR_TOKEN is empty; operator routes are unauthenticated",
            )
        await control_plane.start()
        try:
            yield
        finally:
            await control_plane.stop()
            logger.info("app.shutdown", "Shut down control plane")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.control_plane = control_plane

    @app.exception_handler(MCloudError)
    async def mcloud_error_handler(request: Request, exc: MCloudError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        error = ValidationError(
            f"Invalid request: {first.get('msg', 'malformed body')}",
            field=field or None,
        )
        logger.info(
            "request.invalid",
            "Rejected malformed request",
            path=request.url.path,
            field=field,
            error_count=len(errors),
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.middleware("http")
    async def operator_guard(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if not settings.operator_token or request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        header = request.headers.get("authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() == "bearer" and hmac.compare_digest(supplied.strip(), settings.operator_token):
            return await call_next(request)
        logger.warning("auth.reject", "Rejected operator request", path=request.url.path)
        return JSONResponse(
            status_code=401,
            content={"detail": "Operator authentication required", "error": "unauthorized", "retry_safe": False},
        )

    @app.middleware("http")
    async def request_logging(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid4())
        client: Optional[str] = None
        if request.client:
            client = request.client.host

        start = perf_counter()
        with logger.context(request_id=request_id):
            logger.info(
                "request.start",
                "Started",
                method=request.method,
                path=request.url.path,
                client=client,
            )
            try:
                response = await call_next(request)
            except Exception as exc:
                duration_ms = (perf_counter() - start) * 1000
                logger.exception(
                    "request.error",
                    "Failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round(duration_ms, 1),
                    error_type=type(exc).__name__,
                )
                raise

            duration = perf_counter() - start
            logger.info(
                "request.complete",
                "Completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 1),
            )
            if settings.metrics_enabled:
                observe_http_request(
                    method=request.method,
                    path=_route_label(request),
                    status=response.status_code,
                    duration_seconds=duration,
                )

        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(system.router)
    app.include_router(cluster.router)
    app.include_router(events.router)
    app.include_router(nodes.router)
    app.include_router(operations.router)
    return app
