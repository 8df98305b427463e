# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Cesta Básica API.

Builds the Flask/OpenAPI application for municipal food basket
distribution: configuration from the environment, the service graph the
routes reach through ``current_app``, middleware and the blueprints.
Run directly for the development server.
"""

import os
import logging
from typing import Any, Callable, Dict, Tuple
from flask import jsonify
from flask_openapi3 import OpenAPI, Info, Tag
from observability.config import setup_observability
from observability.middleware import add_observability_middleware

from middleware.cors import configure_cors
from middleware.error_handler import ErrorHandlerMiddleware, register_custom_error_handlers
from middleware.auth import AuthMiddleware
from services.hal import create_hal_formatter
from services.mongodb import MongoDBService
from services.redis import RedisService
from services.auth import AuthService
from services.audit import AuditService
from services.health import HealthCheckService, SERVICE_NAME, now_iso
from services.families import FamilyService
from services.inventory import InventoryLedger
from services.deliveries import DeliveryService
from services.catalog import CatalogService
from services.institutions import InstitutionService
from services.reports import ReceiptService, ReportService

logger = logging.getLogger(__name__)


def _flag(value: str) -> bool:
    return value.lower() == 'true'


# config key -> (environment default, parser)
SETTINGS: Dict[str, Tuple[Any, Callable[[str], Any]]] = {
    'ENVIRONMENT': ('development', str),
    'SERVICE_VERSION': ('1.0.0', str),
    'TIMEZONE': ('America/Sao_Paulo', str),
    'DOCS_ENABLED': ('true', _flag),
    'BASE_URL': ('http://localhost:5000', str),
    'CORS_ORIGINS': ('', str),
    'JWT_PRIVATE_KEY': (None, str),
    'JWT_PUBLIC_KEY': (None, str),
    'JWT_ACCESS_TOKEN_EXPIRES': ('15', int),   # minutes
    'JWT_REFRESH_TOKEN_EXPIRES': ('7', int),   # days
    'MONGODB_URI': ('mongodb://localhost:27017/cesta_basica_dev', str),
    'MONGODB_DATABASE': ('cesta_basica_dev', str),
    'REDIS_URL': ('redis://localhost:6379', str),
    'REDIS_TOKEN': ('', str),
    'STATS_CACHE_TTL': ('60', int),            # seconds
}


def load_settings() -> Dict[str, Any]:
    settings = {}
    for key, (default, parse) in SETTINGS.items():
        raw = os.getenv(key, default)
        settings[key] = parse(raw) if raw is not None else None
    return settings


TAGS = [
    Tag(name="Authentication", description="User authentication and authorization"),
    Tag(name="Institutions", description="Partner institutions and their accounts"),
    Tag(name="Families", description="Family registry, institution links and LGPD consent"),
    Tag(name="Deliveries", description="Food basket deliveries and family blocking"),
    Tag(name="Inventory", description="Per-institution stock ledger"),
    Tag(name="Catalog", description="Products and suppliers"),
    Tag(name="Reports", description="Dashboards, alerts, exports and receipts"),
    Tag(name="Health", description="System health and status")
]

otel_enabled = setup_observability()
settings = load_settings()

app = OpenAPI(
    __name__,
    info=Info(
        title="Cesta Básica API",
        version=settings['SERVICE_VERSION'],
        description="Municipal food basket distribution API with HATEOAS Level-3 support"
    ),
    tags=TAGS,
    doc_ui=settings['DOCS_ENABLED']
)
app.config.update(settings)
app.config['DEBUG'] = settings['ENVIRONMENT'] == 'development'
app.config['OTEL_ENABLED'] = otel_enabled

add_observability_middleware(app, instrument=otel_enabled)


def wire_services(app: OpenAPI) -> None:
    """Build the service graph once and hang each service off the app."""
    config = app.config
    mongodb_service = MongoDBService(config['MONGODB_URI'], config['MONGODB_DATABASE'])
    redis_service = RedisService(config['REDIS_URL'], config['REDIS_TOKEN'])
    auth_service = AuthService(
        config['JWT_PRIVATE_KEY'],
        config['JWT_PUBLIC_KEY'],
        config['JWT_ACCESS_TOKEN_EXPIRES'],
        config['JWT_REFRESH_TOKEN_EXPIRES']
    )
    audit_service = AuditService(mongodb_service)
    family_service = FamilyService(mongodb_service, audit_service)
    receipt_service = ReceiptService(mongodb_service, audit_service)
    inventory_ledger = InventoryLedger(mongodb_service, audit_service, receipt_service)

    app.mongodb_service = mongodb_service
    app.redis_service = redis_service
    app.auth_service = auth_service
    app.audit_service = audit_service
    app.health_service = HealthCheckService(mongodb_service, redis_service, config)
    app.family_service = family_service
    app.receipt_service = receipt_service
    app.inventory_ledger = inventory_ledger
    app.delivery_service = DeliveryService(
        mongodb_service, audit_service, family_service, inventory_ledger, receipt_service
    )
    app.catalog_service = CatalogService(mongodb_service, audit_service)
    app.institution_service = InstitutionService(mongodb_service, audit_service, auth_service)
    app.report_service = ReportService(mongodb_service, redis_service, config['STATS_CACHE_TTL'])
    app.hal_formatter = create_hal_formatter(config['BASE_URL'])
    app.auth_middleware = AuthMiddleware(auth_service, redis_service)


wire_services(app)
ErrorHandlerMiddleware(app, app.config['BASE_URL'])
register_custom_error_handlers(app, app.hal_formatter)
configure_cors(app, origins=app.config['CORS_ORIGINS'], environment=app.config['ENVIRONMENT'])

from routes.auth import auth_bp
from routes.institutions import institutions_bp
from routes.families import families_bp
from routes.deliveries import deliveries_bp
from routes.inventory import inventory_bp
from routes.catalog import catalog_bp
from routes.reports import reports_bp

for blueprint in (auth_bp, institutions_bp, families_bp, deliveries_bp, inventory_bp, catalog_bp, reports_bp):
    app.register_api(blueprint)


def _system_response(data: Dict[str, Any], resource_type: str, path: str, status_code: int):
    builder = app.hal_formatter.builder
    body = builder.build_resource_response(
        data, resource_type, extra_links={'self': builder.link_builder.build_self_link(path)}
    )
    return jsonify(body), status_code


def _failure(message: str, error: Exception) -> Dict[str, Any]:
    return {
        "service": SERVICE_NAME,
        "version": app.config['SERVICE_VERSION'],
        "environment": app.config['ENVIRONMENT'],
        "timestamp": now_iso(),
        "error": f"{message}: {str(error)}"
    }


@app.route('/api/healthz')
def health_check():
    """Dependency health. 503 only when MongoDB is down."""
    health_service = app.health_service
    try:
        data = health_service.get_comprehensive_health()
        status_code = health_service.status_code_for(data["status"])
    except Exception as e:
        logger.exception("Health check failed")
        data = {"status": "unhealthy", **_failure("Health check service failed", e)}
        status_code = 503
    return _system_response(data, "health", '/api/healthz', status_code)


@app.route('/api/status')
def system_status():
    """Uptime, configuration flags, host metrics and dependency checks."""
    try:
        data, status_code = app.health_service.get_status_report(), 200
    except Exception as e:
        logger.exception("Status report failed")
        data, status_code = _failure("Status endpoint failed", e), 500
    return _system_response(data, "status", '/api/status', status_code)


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', '5000')), debug=app.config['DEBUG'])
