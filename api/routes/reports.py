# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Dashboards, alerts, CSV exports, receipts and the audit trail.
"""

from flask import Response, request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from models.entities import AuditLog, UserContext
from models.requests import GenerateReceiptRequest, ReceiptPath, ReportPath
from models.responses import ReceiptResponse
from middleware.auth import require_jwt, require_permission
from middleware.error_handler import AuthorizationException, ValidationException
from services.audit import AuditFilters
from services.mongodb import from_document
from services.reports import report_filename
from utils.request import RequestParser

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

reports_tag = Tag(name="Reports", description="Dashboards, alerts, exports and receipts")
reports_bp = APIBlueprint(
    'reports',
    __name__,
    url_prefix='/api/reports',
    abp_tags=[reports_tag]
)

EXPORTS = ("deliveries", "families", "institutions", "summary")


def _require_admin(user_context: UserContext) -> None:
    if not user_context.is_admin:
        raise AuthorizationException("Only administrators can access this report")


def _csv_response(report: str, content: str) -> Response:
    return Response(
        content,
        mimetype='text/csv',
        headers={
            'Content-Disposition': f'attachment; filename="{report_filename(report)}"',
            'Content-Type': 'text/csv; charset=utf-8'
        }
    )


@reports_bp.get('/stats')
@require_jwt
@require_permission('report:read')
def get_stats(user_context: UserContext):
    """
    Dashboard counters.

    Admins get system-wide totals unless they name an institution;
    institution users always get their own institution's counters.
    """
    institution_id = request.args.get('institution_id') or None
    if user_context.is_admin and not institution_id:
        stats = current_app.report_service.admin_stats()
        scope = "admin"
    else:
        stats = current_app.report_service.institution_stats(user_context, institution_id)
        scope = "institution"

    response = dict(stats)
    response["scope"] = scope
    response["_links"] = {"self": {"href": "/api/reports/stats"}}
    if user_context.is_admin:
        response["_links"]["alerts"] = {"href": "/api/reports/alerts"}
    return jsonify(response), 200


@reports_bp.get('/alerts')
@require_jwt
@require_permission('report:read')
def get_alerts(user_context: UserContext):
    """Possible duplicate service across institutions and stale block flags."""
    _require_admin(user_context)
    with tracer.start_as_current_span("reports.alerts_endpoint") as span:
        alerts = current_app.report_service.alerts()
        span.set_attribute("alerts.count", len(alerts))
        return jsonify({
            "total": len(alerts),
            "_embedded": {"alerts": alerts},
            "_links": {"self": {"href": "/api/reports/alerts"}}
        }), 200


@reports_bp.get('/summary')
@require_jwt
@require_permission('report:read')
def get_summary(user_context: UserContext):
    summary = current_app.report_service.summary(
        user_context,
        request.args.get('institution_id') or None,
        RequestParser.get_date_param('date_from'),
        RequestParser.get_date_param('date_to', upper_bound=True)
    )
    summary["_links"] = {
        "self": {"href": "/api/reports/summary"},
        "export": {"href": "/api/reports/export/summary", "type": "text/csv"}
    }
    return jsonify(summary), 200


@reports_bp.get('/export/<report>')
@require_jwt
@require_permission('report:export')
def export_report(user_context: UserContext, path: ReportPath):
    """
    Download a report as CSV (UTF-8 with BOM).

    ``report`` is one of deliveries, families, institutions or summary.
    """
    report = path.report
    if report not in EXPORTS:
        raise ValidationException(
            f"Unknown report: {report}",
            [{"field": "report", "message": f"Expected one of {', '.join(EXPORTS)}", "type": "enum"}]
        )

    with tracer.start_as_current_span("reports.export_endpoint", attributes={"report.name": report}):
        report_service = current_app.report_service
        institution_id = request.args.get('institution_id') or None
        date_from = RequestParser.get_date_param('date_from')
        date_to = RequestParser.get_date_param('date_to', upper_bound=True)

        if report == "deliveries":
            content = report_service.export_deliveries(user_context, institution_id, date_from, date_to)
        elif report == "families":
            content = report_service.export_families(user_context, institution_id)
        elif report == "institutions":
            _require_admin(user_context)
            content = report_service.export_institutions(user_context)
        else:
            content = report_service.export_summary(user_context, institution_id, date_from, date_to)

        logger.info(
            "Report exported",
            extra={"report": report, "user_id": user_context.user_id, "institution_id": institution_id}
        )
        return _csv_response(report, content)


# Receipts

@reports_bp.get('/receipts')
@require_jwt
@require_permission('receipt:read')
def list_receipts(user_context: UserContext):
    pagination = RequestParser.get_pagination_params()
    institution_id = request.args.get('institution_id') or None
    result = current_app.receipt_service.list_receipts(
        user_context, institution_id, page=pagination['page'], page_size=pagination['page_size']
    )
    response = current_app.hal_formatter.format_collection(
        [ReceiptResponse(**receipt.model_dump()).to_dict() for receipt in result.items],
        "receipt", result.total, result.page, result.page_size, user_context,
        {"institution_id": institution_id} if institution_id else None
    )
    return jsonify(response), 200


@reports_bp.post('/receipts')
@require_jwt
@require_permission('receipt:create')
def generate_receipt(user_context: UserContext):
    """Generate a receipt reference for a delivery or a stock movement."""
    receipt_request = RequestParser.parse_model(GenerateReceiptRequest)
    receipt = current_app.receipt_service.request_receipt(
        receipt_request.receipt_type, receipt_request.reference_id, user_context
    )
    data = ReceiptResponse(**receipt.model_dump()).to_dict()
    return jsonify(current_app.hal_formatter.format_resource(data, "receipt", user_context)), 201


@reports_bp.get('/receipts/<receipt_id>')
@require_jwt
@require_permission('receipt:read')
def get_receipt(user_context: UserContext, path: ReceiptPath):
    receipt = current_app.receipt_service.get_receipt(path.receipt_id, user_context)
    data = ReceiptResponse(**receipt.model_dump()).to_dict()
    response = current_app.hal_formatter.format_resource(data, "receipt", user_context)
    response["_links"]["content"] = {"href": f"/api/reports/receipts/{receipt.id}/content"}
    return jsonify(response), 200


@reports_bp.get('/receipts/<receipt_id>/content')
@require_jwt
@require_permission('receipt:read')
def get_receipt_content(user_context: UserContext, path: ReceiptPath):
    """Data needed to render the receipt document."""
    content = current_app.receipt_service.receipt_content(path.receipt_id, user_context)
    content["_links"] = {
        "self": {"href": f"/api/reports/receipts/{path.receipt_id}/content"},
        "receipt": {"href": f"/api/reports/receipts/{path.receipt_id}"}
    }
    return jsonify(content), 200


# Audit trail

@reports_bp.get('/audit-logs')
@require_jwt
@require_permission('audit_log:read')
def list_audit_logs(user_context: UserContext):
    """Audit entries, newest first, filtered by user, entity, action and date range."""
    pagination = RequestParser.get_pagination_params(default_page_size=50)
    filters = AuditFilters(
        user_id=request.args.get('user_id') or None,
        entity=request.args.get('entity') or None,
        action=request.args.get('action') or None,
        entity_id=request.args.get('entity_id') or None,
        start_date=RequestParser.get_date_param('start_date'),
        end_date=RequestParser.get_date_param('end_date', upper_bound=True)
    )
    result = current_app.audit_service.query_audit_logs(filters, pagination['page'], pagination['page_size'])

    query_params = {
        key: request.args[key]
        for key in ('user_id', 'entity', 'action', 'entity_id', 'start_date', 'end_date')
        if request.args.get(key)
    }
    response = current_app.hal_formatter.builder.build_collection_response(
        [AuditLog(**from_document(entry)).model_dump(mode="json") for entry in result.items],
        result.total, result.page, result.page_size, "/api/reports/audit-logs", query_params,
        embedded_name="audit_logs"
    )
    return jsonify(response), 200
