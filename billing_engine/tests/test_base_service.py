"""
Tests for the FastAPI Base Service Framework.

Tests the common functionality provided by the BaseService class including
health checks, error handling, middleware, and service configuration.
"""

import asyncio

from fastapi import APIRouter, HTTPException
from fastapi.testclient import TestClient

from billing_engine.core.base_service import BaseService, create_service
from billing_engine.core.database import DatabaseConnectionError


class TestBaseService:
    """Test cases for BaseService class"""

    def test_service_creation(self, settings):
        """Test basic service creation with default parameters"""
        service = create_service("test-service", settings=settings)

        assert service.name == "test-service"
        assert service.version == "1.0.0"
        assert service.description == "Representative Billing Engine"
        assert service.prefix == "/api/v1"
        assert service.app is not None

    def test_service_creation_with_custom_parameters(self, settings):
        """Test service creation with custom parameters"""
        service = BaseService(
            name="custom-service",
            version="2.1.0",
            description="Custom microservice",
            prefix="/api/v2",
            settings=settings,
            docs_url="/custom-docs",
        )

        assert service.name == "custom-service"
        assert service.version == "2.1.0"
        assert service.description == "Custom microservice"
        assert service.prefix == "/api/v2"
        assert service.app.docs_url == "/custom-docs"

    def test_health_endpoint(self, settings):
        """Test health check endpoint"""
        service = create_service("health-test-service", settings=settings)
        client = TestClient(service.app)

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service_name"] == "health-test-service"
        assert data["version"] == "1.0.0"
        assert "timestamp" in data
        assert isinstance(data["uptime_seconds"], float)
        assert data["uptime_seconds"] >= 0
        assert "python_version" in data["system_info"]

    def test_info_endpoint(self, settings):
        """Test service info endpoint"""
        service = create_service("info-test-service", settings=settings)
        client = TestClient(service.app)

        response = client.get("/info")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "info-test-service"
        assert data["description"] == "Representative Billing Engine"
        assert data["environment"] == "testing"
        assert "debug" in data

    def test_dependency_health_check(self, settings):
        """Test health check with dependencies"""
        service = create_service("dependency-test-service", settings=settings)
        service.add_dependency_check("healthy_service", lambda: True)
        service.add_dependency_check("unhealthy_service", lambda: False)

        response = TestClient(service.app).get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["dependencies"]["healthy_service"] == "healthy"
        assert data["dependencies"]["unhealthy_service"] == "unhealthy"

    def test_dependency_check_with_exception(self, settings):
        """Test dependency check that raises an exception"""
        service = create_service("exception-test-service", settings=settings)

        def failing_check():
            raise Exception("Connection failed")

        service.add_dependency_check("failing_service", failing_check)

        data = TestClient(service.app).get("/health").json()

        assert data["status"] == "unhealthy"
        assert "error: Connection failed" in data["dependencies"]["failing_service"]

    def test_async_health_check(self, settings):
        """Test async dependency checks are awaited"""
        service = create_service("async-test-service", settings=settings)

        async def async_check():
            await asyncio.sleep(0.01)
            return True

        service.add_dependency_check("async_dep", async_check)

        health_status = asyncio.run(service.get_health_status())

        assert health_status.status == "healthy"
        assert health_status.dependencies["async_dep"] == "healthy"

    def test_include_router(self, settings):
        """Test including custom routers"""
        service = create_service("router-test-service", settings=settings)
        router = APIRouter()

        @router.get("/test")
        async def test_endpoint():
            return {"message": "test successful"}

        service.include_router(router, tags=["Test"])

        response = TestClient(service.app).get("/api/v1/test")

        assert response.status_code == 200
        assert response.json()["message"] == "test successful"

    def test_request_tracing_middleware(self, settings):
        """Test request tracing middleware adds headers"""
        service = create_service("tracing-test-service", settings=settings)

        response = TestClient(service.app).get("/health")

        assert response.status_code == 200
        assert "X-Process-Time" in response.headers
        request_id = response.headers["X-Request-ID"]
        assert len(request_id) == 36
        assert request_id.count("-") == 4

    def test_cors_middleware_configured(self, settings):
        """Test CORS middleware is properly configured"""
        service = create_service("cors-test-service", settings=settings)

        response = TestClient(service.app).options(
            "/health",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )

        assert response.status_code == 200
        assert "Access-Control-Allow-Origin" in response.headers


class TestErrorHandling:
    """Uniform error bodies"""

    def _service_with(self, settings, endpoint):
        service = create_service("error-test-service", settings=settings)
        router = APIRouter()
        router.get("/error")(endpoint)
        service.include_router(router)
        return TestClient(service.app, raise_server_exceptions=False)

    def test_http_exception_handling(self, settings):
        async def error_endpoint():
            raise HTTPException(status_code=400, detail="Bad request test")

        response = self._service_with(settings, error_endpoint).get("/api/v1/error")

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "http_error"
        assert data["message"] == "Bad request test"
        assert "request_id" in data
        assert "timestamp" in data

    def test_database_error_is_service_unavailable(self, settings):
        async def error_endpoint():
            raise DatabaseConnectionError("pool exhausted")

        response = self._service_with(settings, error_endpoint).get("/api/v1/error")

        assert response.status_code == 503
        assert response.json()["error"] == "database_error"

    def test_unexpected_error_is_internal(self, settings):
        async def error_endpoint():
            raise RuntimeError("boom")

        response = self._service_with(settings, error_endpoint).get("/api/v1/error")

        assert response.status_code == 500
        assert "boom" not in response.text
