import argparse
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import api_logger, console, logger
from tunnelfleet.routers import clients, health, stats
from tunnelfleet.services.discovery.responder import DiscoveryResponder
from tunnelfleet.services.registry import ClientRegistry, JsonRegistryStore
from tunnelfleet.services.statistics import StatisticsAggregator


def create_app(
    registry: Optional[ClientRegistry] = None,
    discovery_responder: Optional[bool] = None
) -> FastAPI:
    """Build the control-plane application around one registry."""
    registry = registry or ClientRegistry(JsonRegistryStore(settings.REGISTRY_FILE))
    if discovery_responder is None:
        discovery_responder = settings.DISCOVERY_RESPONDER_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[bold green]Starting {settings.PROJECT_NAME}[/bold green]")
        logger.info(f"Debug mode: {settings.DEBUG}")
        logger.info(f"Log level: {settings.LOG_LEVEL}")
        if registry.store is not None:
            logger.info(f"  [cyan]Registry file:[/cyan] {registry.store.path}")

        # Registry must be loaded before any registration traffic; an
        # unwritable store aborts startup
        registry.load()
        app.state.registry_loaded = True

        responder = None
        if discovery_responder:
            responder = DiscoveryResponder()
            await responder.start()

        yield

        if responder is not None:
            responder.stop()
        logger.info(f"Shutting down {settings.PROJECT_NAME}")

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.registry = registry
    app.state.registry_loaded = False
    app.state.started_at = datetime.utcnow()
    app.state.statistics = StatisticsAggregator(registry, started_at=app.state.started_at)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        api_logger.debug(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error = "Not found" if exc.status_code == 404 else "Request failed"
        if exc.status_code == 405:
            error = "Method not allowed"
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": error,
                "message": str(exc.detail),
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": "Invalid request",
                "message": "; ".join(
                    f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
                ),
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        api_logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "The request could not be completed",
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    app.include_router(clients.router, tags=["clients"])
    app.include_router(stats.router, tags=["stats"])
    app.include_router(health.router, tags=["health"])
    return app


app = create_app()


def run() -> None:
    """Entry point of ``tunnelfleet-server``."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Tunnel fleet control plane")
    parser.add_argument("--host", default=settings.API_HOST)
    parser.add_argument("--port", type=int, default=settings.API_PORT)
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    console.print("[bold green]Starting control plane...[/bold green]")
    uvicorn.run(
        "tunnelfleet.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
