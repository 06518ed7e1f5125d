from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from controlplane.config import get_settings
from controlplane.dependencies import get_rotation_allocator, init_database
from controlplane.logger import configure_logging, get_logger
from controlplane.metrics import observe_http_request
from controlplane.routes import events, nodes, rotations, system

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("app.startup", "Starting app", env=settings.app_env, version=settings.app_version)
    if settings.database_auto_create:
        await init_database(settings.database_url)
    allocator = get_rotation_allocator()
    logger.info(
        "rotations.ready",
        "Rotation allocator ready",
        rotations=len(allocator.pool),
        lock_backend=allocator.lock_manager.backend,
    )
    if not allocator.pool:
        logger.warning(
            "rotations.empty",
            "No rotations configured; endpoints will not get global rotations",
            rotations_file=settings.rotations_file,
        )
    yield
    logger.info("app.shutdown", "Shutting down app")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


# Probe and scrape endpoints log at debug.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = request.client.host if request.client else None
    path = request.url.path
    log = logger.debug if path in _QUIET_PATHS else logger.info

    start = perf_counter()
    with logger.context(request_id=request_id):
        log("request.start", "Started", method=request.method, path=path, client=client)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=path,
                duration_ms=round((perf_counter() - start) * 1000, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration = perf_counter() - start
        # Route template, not the raw path.
        route = request.scope.get("route")
        observe_http_request(
            method=request.method,
            path=getattr(route, "path", path),
            status=response.status_code,
            duration_seconds=duration,
        )
        log(
            "request.complete",
            "Completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(rotations.router)
app.include_router(nodes.router)
app.include_router(events.router)
