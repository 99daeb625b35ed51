"""
VolumeScaler Controller - Application Entry Point.

Reconciliation loop, автоматически увеличивающий PersistentVolumeClaims
при превышении порога utilization.

HTTP (FastAPI + uvicorn): /health/live, /health/ready, /metrics.
Reconciliation loop запускается в lifespan приложения.

Exit codes:
    0 - штатная остановка по сигналу
    1 - ошибка конфигурации/startup или потеря лидерства
"""

import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app
from pydantic import ValidationError

from volumescaler import __version__
from volumescaler.api import health as health_router
from volumescaler.core.config import Settings, get_settings
from volumescaler.core.logging import get_logger, setup_logging
from volumescaler.runtime import ControllerRuntime

logger = get_logger(__name__)


def create_app(settings: Settings, runtime: Optional[ControllerRuntime] = None) -> FastAPI:
    """
    Создание FastAPI application.

    Args:
        settings: Конфигурация
        runtime: Reconciliation loop (по умолчанию создаётся из settings)
    """
    runtime = runtime or ControllerRuntime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: клиенты Kubernetes API, leader election, controller.
        Shutdown: drain workers, release lease, закрытие клиентов.
        """
        logger.info(
            "Starting VolumeScaler controller",
            extra={
                "app_name": settings.app.name,
                "version": settings.app.version,
                "node_name": settings.controller.node_name,
                "pod_name": settings.controller.pod_name,
            }
        )

        await runtime.start()

        yield

        logger.info("Shutting down VolumeScaler controller")
        await runtime.stop()

    app = FastAPI(
        title="VolumeScaler Controller",
        description="Automatic PersistentVolumeClaim expansion based on utilization",
        version=settings.app.version,
        lifespan=lifespan,
        docs_url="/docs" if settings.app.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.runtime = runtime

    app.include_router(health_router.router, prefix="/health", tags=["health"])

    # Prometheus metrics endpoint
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint с информацией о сервисе."""
        return {
            "service": settings.app.name,
            "version": settings.app.version,
            "status": "running",
        }

    return app


def main() -> int:
    """
    Запуск controller.

    Returns:
        int: Exit code процесса
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging(app_name="volumescaler-controller", app_version=__version__)
        logger.critical(
            "Invalid configuration",
            extra={"errors": e.errors(include_url=False)}
        )
        return 1

    setup_logging(
        settings.logging,
        app_name=settings.app.name,
        app_version=settings.app.version,
        node_name=settings.controller.node_name,
        pod_name=settings.controller.pod_name,
    )

    runtime = ControllerRuntime(settings)
    app = create_app(settings, runtime)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.app.host,
        port=settings.app.port,
        log_level=settings.logging.level.value.lower(),
        log_config=None,
    ))

    def stop_server() -> None:
        server.should_exit = True

    runtime.on_fatal = stop_server
    server.run()

    if not runtime.started:
        return 1
    return runtime.exit_code


if __name__ == "__main__":
    sys.exit(main())
