# SPDX-License-Identifier: Apache-2.0

"""
Tests for health check and system status endpoints.

This module tests the dependency checks, the status rollup (MongoDB
required, Redis optional) and the HAL envelope of both endpoints.
"""

import pytest
import json
from unittest.mock import MagicMock, patch

from services.health import HealthCheckService, SERVICE_NAME


@pytest.fixture
def mongo():
    service = MagicMock()
    service.health_check.return_value = {"status": "healthy", "ping": True, "database": "cesta_basica_test"}
    return service


@pytest.fixture
def redis_service():
    service = MagicMock()
    service.health_check.return_value = {"status": "healthy", "backend": "redis"}
    return service


@pytest.fixture
def health_service(mongo, redis_service):
    return HealthCheckService(mongo, redis_service, {
        "ENVIRONMENT": "test",
        "MONGODB_URI": "mongodb://localhost:27017",
        "REDIS_URL": "",
        "JWT_PRIVATE_KEY": "secret-private",
        "JWT_PUBLIC_KEY": None,
        "TIMEZONE": "America/Sao_Paulo"
    })


class TestHealthCheckService:
    """Test dependency checks and status rollup."""

    @pytest.mark.parametrize("mongodb, redis, expected", [
        ("healthy", "healthy", "healthy"),
        ("healthy", "unavailable", "degraded"),
        ("healthy", "unhealthy", "degraded"),
        ("unhealthy", "healthy", "unhealthy"),
    ])
    def test_overall_status(self, mongodb, redis, expected):
        assert HealthCheckService.determine_overall_status(mongodb, redis) == expected

    def test_only_unhealthy_is_503(self, health_service):
        assert health_service.status_code_for("unhealthy") == 503
        assert health_service.status_code_for("degraded") == 200

    def test_comprehensive_health(self, health_service):
        health = health_service.get_comprehensive_health()

        assert health["status"] == "healthy"
        assert health["service"] == SERVICE_NAME
        assert health["environment"] == "test"
        assert "response_time_ms" in health["dependencies"]["mongodb"]
        assert "last_check" in health["dependencies"]["redis"]

    def test_mongodb_exception_is_unhealthy(self, health_service, mongo):
        mongo.health_check.side_effect = RuntimeError("no servers")

        result = health_service.check_mongodb_health()

        assert result["status"] == "unhealthy"
        assert result["error"] == "no servers"

    def test_configuration_status_hides_values(self, health_service):
        configuration = health_service.get_configuration_status()

        assert configuration["mongodb_configured"] is True
        assert configuration["redis_configured"] is False
        assert configuration["jwt_keys_configured"] is False
        assert "secret-private" not in json.dumps(configuration)

    def test_system_metrics_failure(self, health_service):
        with patch("services.health.psutil.virtual_memory", side_effect=OSError("denied")):
            metrics = health_service.get_system_metrics()

        assert "error" in metrics

    def test_uptime(self, health_service):
        uptime = health_service.get_uptime()

        assert uptime["uptime_seconds"] >= 0
        assert uptime["started_at"].endswith("Z")


class TestHealthEndpoints:
    """Test the /api/healthz and /api/status routes."""

    def test_healthz_healthy(self, client, flask_app, health_service):
        with patch.object(flask_app, 'health_service', health_service):
            response = client.get('/api/healthz')

        data = json.loads(response.data)
        assert response.status_code == 200
        assert data['status'] == 'healthy'
        assert data['_links']['self']['href'].endswith('/api/healthz')

    def test_healthz_redis_down_still_serves(self, client, flask_app, health_service, redis_service):
        redis_service.health_check.return_value = {"status": "unavailable"}

        with patch.object(flask_app, 'health_service', health_service):
            response = client.get('/api/healthz')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'degraded'

    def test_healthz_mongodb_down(self, client, flask_app, health_service, mongo):
        mongo.health_check.return_value = {"status": "unhealthy", "error": "timeout"}

        with patch.object(flask_app, 'health_service', health_service):
            response = client.get('/api/healthz')

        assert response.status_code == 503
        assert response.get_json()['dependencies']['mongodb']['error'] == 'timeout'

    def test_healthz_service_failure(self, client, flask_app):
        broken = MagicMock()
        broken.get_comprehensive_health.side_effect = RuntimeError("boom")

        with patch.object(flask_app, 'health_service', broken):
            response = client.get('/api/healthz')

        data = response.get_json()
        assert response.status_code == 503
        assert data['status'] == 'unhealthy'
        assert 'boom' in data['error']

    def test_status(self, client, flask_app, health_service):
        with patch.object(flask_app, 'health_service', health_service):
            response = client.get('/api/status')

        data = response.get_json()
        assert response.status_code == 200
        assert data['service'] == SERVICE_NAME
        assert data['dependencies']['mongodb']['status'] == 'healthy'
        assert 'uptime_seconds' in data['uptime']
