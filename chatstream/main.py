"""FastAPI entrypoint: wires config, container, routes, and lifecycle hooks."""

from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chatstream.api.http.chat import router as chat_router
from chatstream.api.http.health import router as health_router
from chatstream.api.http.sessions import router as sessions_router
from chatstream.api.stream.sse import router as sse_router
from chatstream.core.config import Settings
from chatstream.core.container import AppContainer, build_container
from chatstream.core.lifecycle import on_shutdown, on_startup
from chatstream.infra.observability.logger import get_logger, setup_logging

access_logger = get_logger("uvicorn.access")


def create_app(container: AppContainer | None = None) -> FastAPI:
    if container is None:
        settings = Settings.from_env()
        setup_logging(settings.log_level)
        container = build_container(settings)
    settings = container.settings

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        on_startup(container)
        try:
            yield
        finally:
            await on_shutdown(container)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (perf_counter() - start) * 1000
            client_ip = request.client.host if request.client else "-"
            access_logger.info(
                '%s "%s %s" %s %.2fms',
                client_ip,
                request.method,
                request.url.path,
                status_code,
                duration_ms,
            )

    app.include_router(health_router)
    app.include_router(chat_router)
    app.include_router(sessions_router)
    app.include_router(sse_router)

    return app


app = create_app()
