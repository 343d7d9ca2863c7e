"""FastAPI application entry point."""

import re
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from webdeploy import __version__
from webdeploy.api.middleware import RequestLoggingMiddleware
from webdeploy.api.v1.router import router as v1_router
from webdeploy.config import settings
from webdeploy.core.exceptions import WebDeployError
from webdeploy.core.orchestrator import get_orchestrator
from webdeploy.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def error_code(exc: Exception) -> str:
    """``TemplateNotFoundError`` -> ``TEMPLATE_NOT_FOUND``."""
    name = type(exc).__name__.removesuffix("Error") or type(exc).__name__
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).upper()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging()
    logger.info(
        "application.starting",
        version=__version__,
        environment=settings.app_env,
        cloud_backend=settings.cloud_backend,
        record_store=settings.record_store_backend,
    )

    yield

    # Shutdown
    await get_orchestrator().shutdown()
    logger.info("application.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="webdeploy API",
        description="Deploys web applications to AWS serverless infrastructure and tracks their status",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # Register exception handlers
    @app.exception_handler(WebDeployError)
    async def webdeploy_error_handler(
        request: Request, exc: WebDeployError
    ) -> JSONResponse:
        """Handle application-specific errors."""
        logger.info(
            "request.rejected",
            path=request.url.path,
            code=error_code(exc),
            status_code=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": error_code(exc),
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected errors; details are only exposed in development."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            exc_info=True,
        )

        body = {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
        if settings.is_development:
            body.update(message=str(exc), type=type(exc).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": body},
        )

    # Include routers
    app.include_router(v1_router)

    return app


# Create app instance
app = create_app()


def run() -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    uvicorn.run(
        "webdeploy.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )


if __name__ == "__main__":
    run()
