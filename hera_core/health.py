"""
Health, readiness and metrics endpoints shared by the Hera services.

Response bodies follow the "Health Check Response Format for HTTP APIs"
draft: an overall status plus one entry per dependency check.
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable

import psutil
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ServiceHealth:
    """
    Builds the health router for one service.

    `engine_factory` is called lazily so tests can swap the database engine
    after the application module has been imported. `required_settings`
    maps configuration names to their current values; any empty value fails
    the startup probe.
    """

    def __init__(
        self,
        service_name: str,
        version: str,
        engine_factory: Callable[[], Engine],
        required_settings: Callable[[], Dict[str, Any]] = dict,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_factory = engine_factory
        self.required_settings = required_settings
        self.start_time = time.time()
        self.checks_performed = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Liveness probe for load balancers; touches no dependency."""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "timestamp": _now(),
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        def readiness() -> JSONResponse:
            self.checks_performed += 1
            checks = {
                "database:connectivity": self._check_database(),
                "system:memory": self._check_memory(),
                "storage:disk_space": self._check_disk_space(),
            }
            overall = self.overall_status(checks.values())
            return JSONResponse(
                status_code=status.HTTP_200_OK if overall != HealthStatus.FAIL
                else status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": overall,
                    "version": self.version,
                    "serviceId": self.service_name,
                    "checks": checks,
                    "timestamp": _now(),
                },
            )

        @router.get("/health/startup")
        def startup() -> JSONResponse:
            checks = {
                "database:migrations": self._check_migrations(),
                "config:environment": self._check_settings(),
            }
            if self.overall_status(checks.values()) == HealthStatus.FAIL:
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"status": "starting", "checks": checks},
                )
            return JSONResponse(content={"status": "started", "checks": checks})

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
            }

        return router

    def _check_database(self) -> Dict[str, Any]:
        try:
            started = time.perf_counter()
            with self.engine_factory().connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return {
                "status": HealthStatus.PASS,
                "componentType": "datastore",
                "observedValue": f"{(time.perf_counter() - started) * 1000:.2f}",
                "observedUnit": "ms",
                "time": _now(),
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": HealthStatus.FAIL, "componentType": "datastore",
                    "output": str(e), "time": _now()}

    def _check_migrations(self) -> Dict[str, Any]:
        try:
            tables = inspect(self.engine_factory()).get_table_names()
        except Exception as e:
            return {"status": HealthStatus.FAIL, "componentType": "datastore",
                    "output": str(e), "time": _now()}
        if "alembic_version" in tables:
            return {"status": HealthStatus.PASS, "componentType": "datastore", "time": _now()}
        return {"status": HealthStatus.WARN, "componentType": "datastore",
                "output": "Migrations table not found", "time": _now()}

    def _check_settings(self) -> Dict[str, Any]:
        missing = sorted(name for name, value in self.required_settings().items() if not value)
        if missing:
            return {"status": HealthStatus.FAIL, "componentType": "configuration",
                    "output": f"Missing settings: {', '.join(missing)}", "time": _now()}
        return {"status": HealthStatus.PASS, "componentType": "configuration", "time": _now()}

    @staticmethod
    def _threshold(observed: float, fail_below: float, warn_below: float) -> HealthStatus:
        if observed < fail_below:
            return HealthStatus.FAIL
        if observed < warn_below:
            return HealthStatus.WARN
        return HealthStatus.PASS

    def _check_disk_space(self) -> Dict[str, Any]:
        free_gb = psutil.disk_usage('/').free / (1024 ** 3)
        return {"status": self._threshold(free_gb, 1, 5), "componentType": "system",
                "observedValue": f"{free_gb:.2f}", "observedUnit": "GB", "time": _now()}

    def _check_memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / (1024 ** 2)
        return {"status": self._threshold(available_mb, 100, 500), "componentType": "system",
                "observedValue": f"{available_mb:.2f}", "observedUnit": "MB", "time": _now()}

    @staticmethod
    def overall_status(checks: Iterable[Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
