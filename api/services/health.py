# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Health Check Service

Health monitoring for MongoDB and Redis plus host metrics from psutil.
"""

import os
import time
import psutil
from datetime import datetime, timezone
from typing import Dict, Any
from opentelemetry import trace

from services.mongodb import MongoDBService
from services.redis import RedisService

tracer = trace.get_tracer(__name__)

SERVICE_NAME = "cesta-basica-api"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthCheckService:
    """Service for system health monitoring."""

    def __init__(self, mongodb_service: MongoDBService, redis_service: RedisService, config: Dict[str, Any] = None):
        self.mongodb_service = mongodb_service
        self.redis_service = redis_service
        self.config = config or {}
        self.service_version = self.config.get("SERVICE_VERSION", "1.0.0")

    def get_comprehensive_health(self) -> Dict[str, Any]:
        """
        Overall status with per-dependency details.

        MongoDB is required; Redis only backs the token blocklist and the
        stats cache, so losing it degrades the service instead of failing it.
        """
        with tracer.start_as_current_span("health.comprehensive_check") as span:
            start_time = time.time()

            mongodb_health = self.check_mongodb_health()
            redis_health = self.check_redis_health()

            overall_status = self.determine_overall_status(mongodb_health["status"], redis_health["status"])
            response_time_ms = round((time.time() - start_time) * 1000, 2)

            health_data = {
                "status": overall_status,
                "service": SERVICE_NAME,
                "version": self.service_version,
                "environment": self.config.get("ENVIRONMENT", "development"),
                "timestamp": now_iso(),
                "response_time_ms": response_time_ms,
                "dependencies": {
                    "mongodb": mongodb_health,
                    "redis": redis_health
                },
                "system_metrics": self.get_system_metrics()
            }

            span.set_attributes({
                "health.overall_status": overall_status,
                "health.response_time_ms": response_time_ms,
                "health.mongodb_status": mongodb_health["status"],
                "health.redis_status": redis_health["status"]
            })
            return health_data

    def check_mongodb_health(self) -> Dict[str, Any]:
        with tracer.start_as_current_span("health.mongodb_check") as span:
            start_time = time.time()
            try:
                result = self.mongodb_service.health_check()
            except Exception as e:
                span.record_exception(e)
                result = {"status": "unhealthy", "error": str(e)}

            result["response_time_ms"] = round((time.time() - start_time) * 1000, 2)
            result["last_check"] = now_iso()
            span.set_attribute("mongodb.status", result["status"])
            return result

    def check_redis_health(self) -> Dict[str, Any]:
        with tracer.start_as_current_span("health.redis_check") as span:
            try:
                result = self.redis_service.health_check()
            except Exception as e:
                span.record_exception(e)
                result = {"status": "unhealthy", "error": str(e)}

            result["last_check"] = now_iso()
            span.set_attribute("redis.status", result["status"])
            return result

    def get_system_metrics(self) -> Dict[str, Any]:
        """Get basic system performance metrics."""
        try:
            memory = psutil.virtual_memory()
            disk = psutil.disk_usage('/')

            return {
                "cpu_percent": psutil.cpu_percent(interval=0.1),
                "memory": {
                    "used_mb": round(memory.used / 1024 / 1024, 2),
                    "total_mb": round(memory.total / 1024 / 1024, 2),
                    "percent": memory.percent
                },
                "disk": {
                    "used_gb": round(disk.used / 1024 / 1024 / 1024, 2),
                    "total_gb": round(disk.total / 1024 / 1024 / 1024, 2),
                    "percent": round((disk.used / disk.total) * 100, 2)
                },
                "load_average": list(os.getloadavg()) if hasattr(os, 'getloadavg') else None
            }
        except Exception as e:
            return {
                "error": f"Failed to collect system metrics: {str(e)}"
            }

    def get_uptime(self) -> Dict[str, Any]:
        """Process uptime from psutil."""
        try:
            process = psutil.Process(os.getpid())
            create_time = process.create_time()
            return {
                "uptime_seconds": round(time.time() - create_time, 2),
                "started_at": datetime.fromtimestamp(create_time, timezone.utc).isoformat().replace("+00:00", "Z"),
                "process_id": os.getpid()
            }
        except psutil.Error as e:
            return {"error": f"Failed to get uptime: {str(e)}"}

    def get_configuration_status(self) -> Dict[str, Any]:
        """Which settings are present; never the values themselves."""
        return {
            "mongodb_configured": bool(self.config.get("MONGODB_URI")),
            "redis_configured": bool(self.config.get("REDIS_URL")),
            "jwt_keys_configured": bool(self.config.get("JWT_PRIVATE_KEY") and self.config.get("JWT_PUBLIC_KEY")),
            "docs_enabled": bool(self.config.get("DOCS_ENABLED")),
            "otel_enabled": bool(self.config.get("OTEL_ENABLED")),
            "timezone": self.config.get("TIMEZONE"),
            "base_url": self.config.get("BASE_URL", "not_set")
        }

    @staticmethod
    def determine_overall_status(mongodb_status: str, redis_status: str) -> str:
        if mongodb_status != "healthy":
            return "unhealthy"
        if redis_status != "healthy":
            return "degraded"
        return "healthy"

    def status_code_for(self, status: str) -> int:
        return 503 if status == "unhealthy" else 200

    def get_status_report(self) -> Dict[str, Any]:
        """Uptime, configuration, host metrics and dependency checks in one document."""
        with tracer.start_as_current_span("health.status_report"):
            return {
                "service": SERVICE_NAME,
                "version": self.service_version,
                "environment": self.config.get("ENVIRONMENT", "development"),
                "timestamp": now_iso(),
                "uptime": self.get_uptime(),
                "configuration": self.get_configuration_status(),
                "system_metrics": self.get_system_metrics(),
                "dependencies": {
                    "mongodb": self.check_mongodb_health(),
                    "redis": self.check_redis_health()
                }
            }
