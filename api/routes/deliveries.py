# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Delivery endpoints.
"""

from flask import request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from models.entities import UserContext
from models.enums import ReceiptType
from models.requests import CreateDeliveryRequest, UpdateDeliveryNotesRequest, DeliveryFilters, DeliveryPath
from middleware.auth import require_jwt, require_permission
from services.deliveries import present_delivery
from services.families import FAMILIES
from utils.request import RequestParser

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

deliveries_tag = Tag(name="Deliveries", description="Food basket deliveries and family blocking")
deliveries_bp = APIBlueprint(
    'deliveries',
    __name__,
    url_prefix='/api/deliveries',
    abp_tags=[deliveries_tag]
)


def _delivery_resource(delivery, user_context: UserContext):
    family = current_app.mongodb_service.find_by_id(FAMILIES, delivery.family_id, include_deleted=True) or {}
    institution_name = current_app.family_service.institution_name(delivery.institution_id)
    data = present_delivery(delivery, family.get("name"), institution_name)
    return current_app.hal_formatter.format_resource(data, "delivery", user_context)


@deliveries_bp.post('')
@require_jwt
@require_permission('delivery:create')
def create_delivery(user_context: UserContext):
    """
    Record a delivery and block the family for the chosen period.

    A family blocked by another institution is rejected with
    ``BLOCKING_JUSTIFICATION_REQUIRED`` unless ``justification`` is given;
    items beyond the institution's stock are rejected with
    ``INSUFFICIENT_STOCK``.
    """
    with tracer.start_as_current_span(
        "deliveries.create_endpoint",
        attributes={"user.id": user_context.user_id, "user.role": user_context.role}
    ):
        delivery_request = RequestParser.parse_model(CreateDeliveryRequest)
        delivery = current_app.delivery_service.record_delivery(delivery_request, user_context)
        current_app.report_service.invalidate(
            user_context, delivery.institution_id, delivery.overridden_institution_id
        )
        return jsonify(_delivery_resource(delivery, user_context)), 201


@deliveries_bp.get('')
@require_jwt
@require_permission('delivery:read')
def list_deliveries(user_context: UserContext):
    """List deliveries, newest first, filtered by institution, family and date range."""
    pagination = RequestParser.get_pagination_params()
    filters = DeliveryFilters(
        institution_id=request.args.get('institution_id') or None,
        family_id=request.args.get('family_id') or None,
        date_from=RequestParser.get_date_param('date_from'),
        date_to=RequestParser.get_date_param('date_to', upper_bound=True)
    )

    result = current_app.delivery_service.list_deliveries(
        user_context, filters, page=pagination['page'], page_size=pagination['page_size']
    )
    query_params = {
        key: request.args[key]
        for key in ('institution_id', 'family_id', 'date_from', 'date_to')
        if request.args.get(key)
    }
    response = current_app.hal_formatter.format_collection(
        result.items, "delivery", result.total, result.page, result.page_size, user_context, query_params
    )
    return jsonify(response), 200


@deliveries_bp.get('/<delivery_id>')
@require_jwt
@require_permission('delivery:read')
def get_delivery(user_context: UserContext, path: DeliveryPath):
    delivery = current_app.delivery_service.get_delivery(path.delivery_id, user_context)
    return jsonify(_delivery_resource(delivery, user_context)), 200


@deliveries_bp.patch('/<delivery_id>/notes')
@require_jwt
@require_permission('delivery:update')
def update_delivery_notes(user_context: UserContext, path: DeliveryPath):
    """Only the notes of a recorded delivery can change."""
    notes_request = RequestParser.parse_model(UpdateDeliveryNotesRequest)
    delivery = current_app.delivery_service.update_notes(path.delivery_id, notes_request.notes, user_context)
    return jsonify(_delivery_resource(delivery, user_context)), 200


@deliveries_bp.get('/<delivery_id>/receipt')
@require_jwt
@require_permission('receipt:read')
def get_delivery_receipt(user_context: UserContext, path: DeliveryPath):
    """Receipt content for the delivery, generating the reference if it is missing."""
    delivery = current_app.delivery_service.get_delivery(path.delivery_id, user_context)
    receipt_service = current_app.receipt_service
    if delivery.receipt_id:
        receipt_id = delivery.receipt_id
    else:
        receipt_id = receipt_service.request_receipt(ReceiptType.DELIVERY, delivery.id, user_context).id
    content = receipt_service.receipt_content(receipt_id, user_context)
    content["_links"] = {
        "self": {"href": f"/api/deliveries/{delivery.id}/receipt"},
        "delivery": {"href": f"/api/deliveries/{delivery.id}"}
    }
    return jsonify(content), 200
