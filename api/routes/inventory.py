# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Inventory endpoints: stock movements and on-hand quantities.
"""

from flask import request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from models.entities import UserContext
from models.requests import StockMovementRequest, MovementFilters
from models.responses import StockMovementResponse, InventoryItemResponse, ReceiptResponse
from middleware.error_handler import ValidationException
from utils.request import RequestParser
from middleware.auth import require_jwt, require_permission

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

inventory_tag = Tag(name="Inventory", description="Stock entries, exits and balances")
inventory_bp = APIBlueprint(
    'inventory',
    __name__,
    url_prefix='/api/inventory',
    abp_tags=[inventory_tag]
)


@inventory_bp.get('')
@require_jwt
@require_permission('stock:read')
def get_inventory(user_context: UserContext):
    """On-hand quantity per product for an institution."""
    items = current_app.inventory_ledger.get_inventory(user_context, request.args.get('institution_id') or None)
    return jsonify({
        "total": len(items),
        "_embedded": {
            "items": [InventoryItemResponse(**item.model_dump()).to_dict() for item in items]
        },
        "_links": {
            "self": {"href": "/api/inventory"},
            "movements": {"href": "/api/inventory/movements"}
        }
    }), 200


@inventory_bp.post('/movements')
@require_jwt
@require_permission('stock:create')
def create_movement(user_context: UserContext):
    """
    Record an ENTRADA or SAIDA.

    An exit larger than the on-hand quantity is rejected with
    ``INSUFFICIENT_STOCK``.
    """
    with tracer.start_as_current_span(
        "inventory.create_movement_endpoint",
        attributes={"user.id": user_context.user_id}
    ):
        movement_request = RequestParser.parse_model(StockMovementRequest)
        movement, receipt = current_app.inventory_ledger.record_movement(movement_request, user_context)

        response = current_app.hal_formatter.format_resource(
            StockMovementResponse(**movement.model_dump()).to_dict(), "stock_movement", user_context
        )
        if receipt is not None:
            response["receipt"] = ReceiptResponse(**receipt.model_dump()).to_dict()
            response["_links"]["receipt"] = {"href": f"/api/reports/receipts/{receipt.id}"}
        return jsonify(response), 201


@inventory_bp.get('/movements')
@require_jwt
@require_permission('stock:read')
def list_movements(user_context: UserContext):
    """Movement history, newest first, filtered by product, type and date range."""
    pagination = RequestParser.get_pagination_params()
    movement_type = request.args.get('movement_type') or None
    if movement_type and movement_type not in ("ENTRADA", "SAIDA"):
        raise ValidationException(
            "Invalid movement_type",
            [{"field": "movement_type", "message": "Expected ENTRADA or SAIDA", "type": "enum"}]
        )

    filters = MovementFilters(
        product_id=request.args.get('product_id') or None,
        movement_type=movement_type,
        date_from=RequestParser.get_date_param('date_from'),
        date_to=RequestParser.get_date_param('date_to', upper_bound=True)
    )
    institution_id = request.args.get('institution_id') or None

    result = current_app.inventory_ledger.list_movements(
        user_context, institution_id, filters, page=pagination['page'], page_size=pagination['page_size']
    )
    query_params = {
        key: request.args[key]
        for key in ('institution_id', 'product_id', 'movement_type', 'date_from', 'date_to')
        if request.args.get(key)
    }
    response = current_app.hal_formatter.format_collection(
        [StockMovementResponse(**movement.model_dump()).to_dict() for movement in result.items],
        "stock_movement", result.total, result.page, result.page_size, user_context, query_params
    )
    return jsonify(response), 200
