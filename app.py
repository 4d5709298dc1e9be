"""
app.py - HTTP surface of the exporter
"""
from contextlib import asynccontextmanager
from typing import Optional
import asyncio
import logging
import signal
import sys

from fastapi import FastAPI, Request, status, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from config import settings
from logger import get_logger
from metrics import track_scrape
from monitoring import ReloadResult, ReloadTrigger
from opcua_client import ExporterError
from service import ExporterService

logger = get_logger(__name__)


def create_error_response(status_code: int, detail: str) -> JSONResponse:
    """Create standardized error response"""
    return JSONResponse(status_code=status_code, content={"detail": detail})


def reload_response(result: ReloadResult) -> JSONResponse:
    if not result.succeeded:
        return create_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, result.error)
    return JSONResponse(content=result.to_dict())


def log_slow_scrape(duration: float):
    logger.warning(f"Scrape took {duration:.2f}s (threshold {settings.slow_scrape_seconds}s)")


def _add_reload_signal(service: ExporterService) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGHUP, service.reload_controller.request_reload, ReloadTrigger.SIGNAL)
    except (NotImplementedError, RuntimeError, AttributeError) as e:
        logger.warning(f"SIGHUP reload unavailable: {e}")
        return False
    return True


def create_app(service: Optional[ExporterService] = None) -> FastAPI:
    """Build the FastAPI application around an exporter service"""
    service = service or ExporterService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the exporter, the reload worker and the SIGHUP handler"""
        try:
            await run_in_threadpool(service.start)
        except ExporterError as e:
            logger.critical(f"Startup failed: {e}")
            raise

        await service.reload_controller.start()
        signal_installed = _add_reload_signal(service)

        yield

        logger.info("Application shutting down gracefully...")
        if signal_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
        await service.reload_controller.stop()
        await run_in_threadpool(service.stop)
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.service = service

    scrape = track_scrape(
        on_slow=log_slow_scrape,
        slow_seconds=settings.slow_scrape_seconds
    )(service.scrape)

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics endpoint"""
        content = await run_in_threadpool(scrape)
        return Response(content=content, media_type=CONTENT_TYPE_LATEST)

    @app.get("/config", tags=["Configuration"])
    async def get_config():
        """Installed metric configuration"""
        return Response(content=service.current_config(), media_type="application/x-yaml")

    @app.post("/config/reload", tags=["Configuration"])
    async def reload_config():
        """Reload the metric configuration from disk"""
        result = await service.reload_controller.submit_reload(trigger=ReloadTrigger.HTTP_RELOAD)
        return reload_response(result)

    @app.post("/config/update", tags=["Configuration"])
    async def update_config(request: Request):
        """Replace the metric configuration file with the body, then reload"""
        body = await request.body()
        result = await service.reload_controller.submit_reload(
            config_bytes=body,
            trigger=ReloadTrigger.HTTP_UPDATE
        )
        return reload_response(result)

    @app.get("/config/reloads", tags=["Configuration"])
    async def reload_history(limit: int = 10):
        """Recent reloads and reload statistics"""
        controller = service.reload_controller
        return {
            "stats": controller.get_stats(),
            "history": [r.to_dict() for r in controller.get_reload_history(limit)],
        }

    @app.get("/health", tags=["System"])
    async def health_check():
        """Session state, cache generation and last reload"""
        return service.health()

    @app.exception_handler(ExporterError)
    async def exporter_error_handler(request: Request, exc: ExporterError):
        logger.error(f"Request to {request.url.path} failed: {exc}")
        return create_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception in request to {request.url.path}: {exc}", exc_info=True)
        return create_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected error occurred")

    return app


def main():
    import uvicorn

    service = ExporterService(settings)
    try:
        service.start()
    except ExporterError as e:
        logger.critical(f"Startup failed: {e}")
        sys.exit(1)

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
            },
        },
        "root": {
            "level": logging.getLevelName(logger.level),
            "handlers": ["default"],
        },
    }

    uvicorn.run(
        create_app(service),
        host=settings.host,
        port=settings.port,
        log_config=log_config,
    )


if __name__ == "__main__":
    main()
