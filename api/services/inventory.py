# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Inventory ledger: stock movements and the derived on-hand quantities.

Every movement is an immutable row in ``stock_movements``. The ``inventory``
collection keeps one row per (institution, product) that is moved with
``$inc`` after each movement; exits use a guarded update so two concurrent
exits can never take the quantity below zero.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple
from opentelemetry import trace
from pymongo import DESCENDING

from models.base import utcnow
from models.entities import DeliveryItem, InventoryItem, Product, Receipt, StockMovement, UserContext
from models.enums import MovementType
from models.requests import MovementFilters, StockMovementRequest
from domain.inventory import (
    exit_notes,
    insufficient_stock_message,
    receipt_type_for,
    signed_quantity,
    validate_stock_movement
)
from middleware.auth import require_institution_scope
from middleware.error_handler import (
    BusinessRuleException,
    InsufficientStockException,
    NotFoundException,
    ValidationException
)
from .audit import AuditService
from .mongodb import MongoDBService, PaginationResult, to_document, from_document, to_object_ids

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MOVEMENTS = "stock_movements"
INVENTORY = "inventory"
PRODUCTS = "products"
SUPPLIERS = "suppliers"

# Absorbs float drift from repeated $inc on two-decimal quantities
QUANTITY_EPSILON = 0.005


class InventoryLedger:
    """Records ENTRADA/SAIDA movements and maintains derived inventory rows."""

    def __init__(self, mongo_service: MongoDBService, audit_service: AuditService, receipt_service=None):
        self.mongo_service = mongo_service
        self.audit_service = audit_service
        self.receipt_service = receipt_service

    def get_available(self, institution_id: str, product_id: str) -> float:
        """On-hand quantity; a missing inventory row means zero."""
        document = self.mongo_service.find_one(
            INVENTORY, {"institutionId": institution_id, "productId": product_id}
        )
        if not document:
            return 0.0
        return round(float(document.get("quantity", 0.0)), 2)

    def get_product(self, product_id: str) -> Product:
        document = self.mongo_service.find_by_id(PRODUCTS, product_id)
        if not document:
            raise NotFoundException(f"Product {product_id} not found")
        return Product(**from_document(document))

    def check_availability(self, institution_id: str, items: Iterable[DeliveryItem]) -> None:
        """
        Validate a whole list of exits before any of them is written.

        Quantities of repeated products are summed first.

        Raises:
            InsufficientStockException: Any product lacks stock
        """
        totals: Dict[str, float] = OrderedDict()
        for item in items:
            totals[item.product_id] = round(totals.get(item.product_id, 0.0) + item.quantity, 2)

        for product_id, quantity in totals.items():
            product = self.get_product(product_id)
            available = self.get_available(institution_id, product_id)
            result = validate_stock_movement(MovementType.SAIDA, quantity, available)
            if not result.is_valid:
                logger.warning(
                    "Delivery items exceed stock",
                    extra={
                        "institution_id": institution_id,
                        "product_id": product_id,
                        "product_name": product.name,
                        "available": available,
                        "requested": quantity
                    }
                )
                raise InsufficientStockException(f"{product.name}: {result.errors[0]}")

    def record_movement(
        self,
        request: StockMovementRequest,
        user_context: UserContext,
        delivery_id: Optional[str] = None
    ) -> Tuple[StockMovement, Optional[Receipt]]:
        """
        Validate and record one stock movement.

        Movements that belong to a delivery get no receipt of their own; the
        delivery's receipt covers them.

        Returns:
            The stored movement and its receipt reference, if one was generated

        Raises:
            InsufficientStockException: An exit exceeds the on-hand quantity
        """
        with tracer.start_as_current_span("inventory.record_movement") as span:
            institution_id = require_institution_scope(user_context, request.institution_id)
            movement_type = request.movement_type
            quantity = round(request.quantity, 2)

            span.set_attributes({
                "institution.id": institution_id,
                "product.id": request.product_id,
                "inventory.movement_type": movement_type,
                "inventory.quantity": quantity
            })

            product = self.get_product(request.product_id)
            if not product.is_active and movement_type == MovementType.ENTRADA:
                raise BusinessRuleException(f"Produto inativo: {product.name}")

            if request.supplier_id and not self.mongo_service.find_by_id(SUPPLIERS, request.supplier_id):
                raise NotFoundException(f"Supplier {request.supplier_id} not found")

            available = self.get_available(institution_id, request.product_id)
            result = validate_stock_movement(movement_type, quantity, available)
            if not result.is_valid:
                span.set_attribute("inventory.validation", "rejected")
                if result.insufficient_stock:
                    raise InsufficientStockException(result.errors[0])
                raise ValidationException(
                    "Invalid stock movement",
                    [{"field": "quantity", "message": error} for error in result.errors]
                )

            notes = request.notes
            if movement_type == MovementType.SAIDA:
                notes = exit_notes(request.destination, request.notes)

            movement = StockMovement(
                institution_id=institution_id,
                product_id=request.product_id,
                movement_type=movement_type,
                quantity=quantity,
                supplier_id=request.supplier_id,
                delivery_id=delivery_id,
                movement_date=request.movement_date or utcnow(),
                notes=notes,
                created_by_user_id=user_context.user_id,
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            self.mongo_service.create(
                MOVEMENTS, to_document(movement.model_dump()), user_context.user_id, doc_id=movement.id
            )

            if not self._apply_to_inventory(movement):
                # A concurrent exit took the stock between validation and update
                self.mongo_service.hard_delete_by_id(MOVEMENTS, movement.id)
                current = self.get_available(institution_id, request.product_id)
                span.set_attribute("inventory.validation", "lost_race")
                logger.warning(
                    "Stock exit rejected by guarded update",
                    extra={
                        "institution_id": institution_id,
                        "product_id": request.product_id,
                        "available": current,
                        "requested": quantity
                    }
                )
                raise InsufficientStockException(insufficient_stock_message(current, quantity))

            self.audit_service.log_action(
                user_context, "stock_movement", movement.id, "create", after=movement.model_dump(mode="json")
            )
            logger.info(
                "Stock movement recorded",
                extra={
                    "movement_id": movement.id,
                    "institution_id": institution_id,
                    "product_id": request.product_id,
                    "movement_type": movement_type,
                    "quantity": quantity,
                    "delivery_id": delivery_id
                }
            )

            receipt = None
            if delivery_id is None and self.receipt_service is not None:
                receipt = self.receipt_service.generate_receipt(
                    receipt_type_for(movement_type), institution_id, movement.id, user_context
                )

            return movement, receipt

    def _apply_to_inventory(self, movement: StockMovement) -> bool:
        """Move the derived row. False when a guarded exit matched nothing."""
        now = utcnow()
        key = {"institutionId": movement.institution_id, "productId": movement.product_id}
        update = {
            "$inc": {"quantity": signed_quantity(movement.movement_type, movement.quantity)},
            "$set": {"lastMovementDate": movement.movement_date, "updatedAt": now}
        }

        if movement.movement_type == MovementType.ENTRADA:
            update["$setOnInsert"] = {"createdAt": now, "deletedAt": None}
            self.mongo_service.update_one(INVENTORY, key, update, upsert=True)
            return True

        guarded = dict(key, quantity={"$gte": movement.quantity - QUANTITY_EPSILON})
        return self.mongo_service.update_one(INVENTORY, guarded, update) is not None

    def revert_movement(self, movement: StockMovement, user_context: UserContext) -> None:
        """Remove a movement and undo its effect on the inventory row."""
        with tracer.start_as_current_span("inventory.revert_movement") as span:
            span.set_attribute("movement.id", movement.id)
            self.mongo_service.update_one(
                INVENTORY,
                {"institutionId": movement.institution_id, "productId": movement.product_id},
                {"$inc": {"quantity": -signed_quantity(movement.movement_type, movement.quantity)},
                 "$set": {"updatedAt": utcnow()}}
            )
            self.mongo_service.hard_delete_by_id(MOVEMENTS, movement.id)
            self.audit_service.log_action(
                user_context, "stock_movement", movement.id, "compensate",
                before=movement.model_dump(mode="json")
            )

    def get_inventory(self, user_context: UserContext, institution_id: Optional[str] = None) -> List[InventoryItem]:
        """Inventory rows for an institution, joined with product name and unit."""
        with tracer.start_as_current_span("inventory.get_inventory") as span:
            institution_id = require_institution_scope(user_context, institution_id)
            span.set_attribute("institution.id", institution_id)

            rows = self.mongo_service.find(INVENTORY, {"institutionId": institution_id})
            products = self._products_by_id(row["productId"] for row in rows)

            items = []
            for row in rows:
                product = products.get(row["productId"], {})
                items.append(InventoryItem(
                    id=row["id"],
                    institution_id=institution_id,
                    product_id=row["productId"],
                    quantity=max(round(float(row.get("quantity", 0.0)), 2), 0.0),
                    last_movement_date=row.get("lastMovementDate"),
                    product_name=product.get("name"),
                    unit=product.get("unit")
                ))

            items.sort(key=lambda item: (item.product_name or "").lower())
            return items

    def list_movements(
        self,
        user_context: UserContext,
        institution_id: Optional[str] = None,
        filters: Optional[MovementFilters] = None,
        page: int = 1,
        page_size: int = 20
    ) -> PaginationResult:
        """Movement history for an institution, newest first."""
        with tracer.start_as_current_span("inventory.list_movements") as span:
            institution_id = require_institution_scope(user_context, institution_id)
            span.set_attribute("institution.id", institution_id)

            query: Dict[str, Any] = {"institutionId": institution_id}
            if filters:
                if filters.product_id:
                    query["productId"] = filters.product_id
                if filters.movement_type:
                    query["movementType"] = filters.movement_type
                if filters.date_from or filters.date_to:
                    date_filter = {}
                    if filters.date_from:
                        date_filter["$gte"] = filters.date_from
                    if filters.date_to:
                        date_filter["$lt"] = filters.date_to
                    query["movementDate"] = date_filter

            result = self.mongo_service.paginate(
                MOVEMENTS, page=page, page_size=page_size, filters=query,
                sort_by="movementDate", sort_order=DESCENDING
            )
            result.items = [StockMovement(**from_document(doc)) for doc in result.items]
            return result

    def movements_for_delivery(self, delivery_id: str) -> List[StockMovement]:
        documents = self.mongo_service.find(MOVEMENTS, {"deliveryId": delivery_id})
        return [StockMovement(**from_document(doc)) for doc in documents]

    def _products_by_id(self, product_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        documents = self.mongo_service.find(PRODUCTS, {"_id": {"$in": to_object_ids(ids)}}, include_deleted=True)
        return {doc["id"]: doc for doc in documents}
