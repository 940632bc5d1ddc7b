"""
FastAPI Base Service Framework for the Representative Billing Engine.

Common foundation for the engine's HTTP surface: health checks, uniform error
responses, request tracing, CORS and the uvicorn runner.
"""

import asyncio
import platform
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

import structlog
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .database import DatabaseConnectionError, DatabaseQueryError
from .logging_config import configure_logging

logger = structlog.get_logger(__name__)


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(description="Service health status")
    service_name: str = Field(description="Name of the service")
    version: str = Field(description="Service version")
    timestamp: datetime = Field(description="Health check timestamp")
    uptime_seconds: float = Field(description="Service uptime in seconds")
    dependencies: Dict[str, str] = Field(description="Status of service dependencies")
    system_info: Dict[str, Any] = Field(description="System information")


class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str = Field(description="Error type")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    request_id: str = Field(description="Unique request identifier")
    timestamp: datetime = Field(description="Error timestamp")


class ServiceInfo(BaseModel):
    """Service information model"""
    name: str = Field(description="Service name")
    version: str = Field(description="Service version")
    description: str = Field(description="Service description")
    environment: str = Field(description="Deployment environment")
    debug: bool = Field(description="Debug mode status")


def error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Build the uniform JSON error body for a request"""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
    body = ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=request_id,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


class RequestTracingMiddleware:
    """Middleware for request tracing and logging"""

    def __init__(self, app: FastAPI):
        self.app = app

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        logger.info(
            "request_started",
            request_id=request_id,
            method=request.method,
            url=str(request.url),
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            process_time = time.time() - start_time
            logger.error(
                "request_failed",
                request_id=request_id,
                error=str(exc),
                process_time=process_time,
                exc_info=True,
            )
            response = error_response(
                request,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "internal_server_error",
                "An internal server error occurred",
            )
            response.headers["X-Process-Time"] = str(process_time)
            return response

        process_time = time.time() - start_time
        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            process_time=process_time,
        )
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)
        return response


class BaseService:
    """
    Base service class for the billing engine's FastAPI app.

    Provides common functionality including:
    - Health checks with pluggable dependency checks
    - Uniform error handling
    - Logging and request tracing
    - Graceful startup and shutdown hooks
    """

    def __init__(
        self,
        name: str,
        version: str = "1.0.0",
        description: str = "Representative Billing Engine",
        prefix: str = "/api/v1",
        health_check_path: str = "/health",
        settings: Optional[Settings] = None,
        **kwargs
    ):
        """
        Initialize the base service.

        Args:
            name: Service name
            version: Service version
            description: Service description
            prefix: API path prefix
            health_check_path: Health check endpoint path
            settings: Optional settings instance. If None, will load from get_settings()
            **kwargs: Additional FastAPI arguments
        """
        self.name = name
        self.version = version
        self.description = description
        self.prefix = prefix
        self.health_check_path = health_check_path
        self.start_time = time.time()

        self.settings = settings or get_settings()
        configure_logging(self.settings.app.app_log_level, self.settings.app.app_json_logs)

        self.app = FastAPI(
            title=name,
            version=version,
            description=description,
            lifespan=self._lifespan,
            **kwargs
        )

        # Checked by the health endpoint
        self.dependencies: Dict[str, Callable[[], bool]] = {}

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

        logger.info(
            "service_initialized",
            service_name=name,
            version=version,
            environment=self.settings.app.app_env,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """FastAPI lifespan manager for startup and shutdown events"""
        logger.info("service_starting", service_name=self.name)
        await self._startup()
        yield
        logger.info("service_stopping", service_name=self.name)
        await self._shutdown()

    async def _startup(self):
        """Service startup logic - override in subclasses"""
        logger.info("service_started", service_name=self.name)

    async def _shutdown(self):
        """Service shutdown logic - override in subclasses"""
        logger.info("service_stopped", service_name=self.name)

    def _setup_middleware(self):
        """Configure middleware stack"""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.app.cors_origins_list,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self.app.add_middleware(GZipMiddleware, minimum_size=1000)
        self.app.middleware("http")(RequestTracingMiddleware(self.app))

    def _setup_exception_handlers(self):
        """Configure exception handlers"""

        @self.app.exception_handler(HTTPException)
        async def http_exception_handler(request: Request, exc: HTTPException):
            logger.warning("http_exception", status_code=exc.status_code, detail=exc.detail)
            return error_response(
                request, exc.status_code, "http_error", str(exc.detail), {"status_code": exc.status_code}
            )

        @self.app.exception_handler(DatabaseConnectionError)
        @self.app.exception_handler(DatabaseQueryError)
        async def database_exception_handler(request: Request, exc: Exception):
            logger.error("database_error", error=str(exc), exc_info=True)
            return error_response(
                request, status.HTTP_503_SERVICE_UNAVAILABLE, "database_error", "A database error occurred"
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            logger.error("unexpected_error", error=str(exc), exc_info=True)
            return error_response(
                request, status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "An unexpected error occurred"
            )

    def _setup_routes(self):
        """Configure base routes"""

        @self.app.get(
            self.health_check_path,
            response_model=HealthCheckResponse,
            tags=["Health"],
            summary="Service health check",
        )
        async def health_check():
            return await self.get_health_status()

        @self.app.get("/info", response_model=ServiceInfo, tags=["Info"], summary="Service information")
        async def service_info():
            return ServiceInfo(
                name=self.name,
                version=self.version,
                description=self.description,
                environment=self.settings.app.app_env,
                debug=self.settings.app.app_debug,
            )

    async def get_health_status(self) -> HealthCheckResponse:
        """
        Get service health status including dependencies.

        Returns:
            HealthCheckResponse: Health status information
        """
        dependencies_status = {}
        overall_healthy = True

        for dep_name, check_func in self.dependencies.items():
            try:
                is_healthy = await check_func() if asyncio.iscoroutinefunction(check_func) else check_func()
                dependencies_status[dep_name] = "healthy" if is_healthy else "unhealthy"
                if not is_healthy:
                    overall_healthy = False
            except Exception as e:
                dependencies_status[dep_name] = f"error: {str(e)}"
                overall_healthy = False

        return HealthCheckResponse(
            status="healthy" if overall_healthy else "unhealthy",
            service_name=self.name,
            version=self.version,
            timestamp=datetime.now(timezone.utc),
            uptime_seconds=time.time() - self.start_time,
            dependencies=dependencies_status,
            system_info={
                "python_version": platform.python_version(),
                "platform": platform.system().lower(),
            },
        )

    def add_dependency_check(self, name: str, check_func: Callable[[], Union[bool, Any]]):
        """
        Add a dependency health check.

        Args:
            name: Dependency name
            check_func: Function that returns True if healthy, False if unhealthy
        """
        self.dependencies[name] = check_func
        logger.info("dependency_check_added", dependency=name, service=self.name)

    def include_router(self, router, **kwargs):
        """Include a router with the service prefix"""
        if "prefix" not in kwargs:
            kwargs["prefix"] = self.prefix
        self.app.include_router(router, **kwargs)

    def run(self, host: str = None, port: int = None, **kwargs):
        """
        Run the service using uvicorn.

        Args:
            host: Host to bind to
            port: Port to bind to
            **kwargs: Additional uvicorn arguments
        """
        import uvicorn

        host = host or self.settings.service.api_host
        port = port or self.settings.service.api_port

        logger.info(
            "starting_service",
            service_name=self.name,
            host=host,
            port=port,
            environment=self.settings.app.app_env,
        )

        uvicorn.run(
            self.app,
            host=host,
            port=port,
            log_level=self.settings.app.app_log_level.lower(),
            **kwargs
        )


def create_service(
    name: str,
    version: str = "1.0.0",
    description: str = "Representative Billing Engine",
    **kwargs
) -> BaseService:
    """
    Factory function to create a new service instance.

    Example:
        >>> service = create_service("billing-service", "1.0.0", "Usage import and ledger API")
        >>> service.run()
    """
    return BaseService(name=name, version=version, description=description, **kwargs)
