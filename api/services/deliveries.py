# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Delivery recording.

A delivery is written in several steps against separate collections: the
delivery row, the family's block fields, one stock exit per item and the
receipt reference. When a later step fails the earlier writes are undone so a
failed request never leaves a delivery without its block.
"""

import logging
from typing import Any, Dict, List, Optional
from opentelemetry import trace
from pymongo import DESCENDING

from models.base import utcnow, to_naive_utc
from models.entities import Delivery, Family, StockMovement, UserContext
from models.enums import MovementType, ReceiptType
from models.requests import CreateDeliveryRequest, DeliveryFilters, StockMovementRequest
from models.responses import DeliveryResponse
from domain.deliveries import build_block_update
from domain.eligibility import check_delivery_eligibility
from middleware.auth import require_institution_scope
from middleware.error_handler import (
    AuthorizationException,
    JustificationRequiredException,
    NotFoundException,
    ServiceUnavailableException
)
from .audit import AuditService
from .families import FamilyService, FAMILIES, INSTITUTIONS
from .inventory import InventoryLedger
from .mongodb import MongoDBService, PaginationResult, to_document, from_document
from .reports import ReceiptService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DELIVERIES = "deliveries"


def present_delivery(
    delivery: Delivery,
    family_name: Optional[str] = None,
    institution_name: Optional[str] = None
) -> Dict[str, Any]:
    data = delivery.model_dump()
    data["family_name"] = family_name
    data["institution_name"] = institution_name
    return DeliveryResponse(**data).to_dict()


def _block_snapshot(family: Family) -> Dict[str, Any]:
    """Family block fields as stored before a delivery, for compensation."""
    return {
        "isBlocked": family.is_blocked,
        "blockedUntil": family.blocked_until,
        "blockedByInstitutionId": family.blocked_by_institution_id,
        "blockReason": family.block_reason
    }


class DeliveryService:
    """Records deliveries and the block they place on the receiving family."""

    def __init__(
        self,
        mongo_service: MongoDBService,
        audit_service: AuditService,
        family_service: FamilyService,
        inventory_ledger: InventoryLedger,
        receipt_service: ReceiptService
    ):
        self.mongo_service = mongo_service
        self.audit_service = audit_service
        self.family_service = family_service
        self.inventory_ledger = inventory_ledger
        self.receipt_service = receipt_service

    def record_delivery(self, request: CreateDeliveryRequest, user_context: UserContext) -> Delivery:
        """
        Record a delivery and block the family for the chosen period.

        Raises:
            NotFoundException: Family or institution missing
            JustificationRequiredException: Another institution's block is active
                and no justification was given
            InsufficientStockException: An item exceeds the institution's stock
            ServiceUnavailableException: The family could not be updated; the
                delivery was removed again
        """
        with tracer.start_as_current_span("deliveries.record") as span:
            institution_id = require_institution_scope(user_context, request.institution_id)
            span.set_attributes({
                "family.id": request.family_id,
                "institution.id": institution_id,
                "delivery.blocking_period_days": int(request.blocking_period_days),
                "delivery.items_count": len(request.items)
            })

            institution = self.mongo_service.find_by_id(INSTITUTIONS, institution_id)
            if not institution:
                raise NotFoundException(f"Institution {institution_id} not found")

            family = self.family_service.get_family(request.family_id)

            now = utcnow()
            eligibility = check_delivery_eligibility(family, institution_id, request.justification, now)
            if not eligibility.eligible:
                span.set_attribute("delivery.eligibility", "justification_required")
                logger.warning(
                    "Delivery rejected: family blocked by another institution",
                    extra={
                        "family_id": family.id,
                        "institution_id": institution_id,
                        "blocked_by_institution_id": family.blocked_by_institution_id,
                        "blocked_until": family.blocked_until.isoformat() if family.blocked_until else None
                    }
                )
                raise JustificationRequiredException(eligibility.reason)
            span.set_attribute("delivery.eligibility", "override" if eligibility.override else "eligible")

            if request.items:
                self.inventory_ledger.check_availability(institution_id, request.items)

            delivery = Delivery(
                family_id=family.id,
                institution_id=institution_id,
                delivery_date=to_naive_utc(request.delivery_date) or now,
                blocking_period_days=request.blocking_period_days,
                notes=request.notes,
                delivered_by_user_id=user_context.user_id,
                items=request.items,
                fraud_justification=eligibility.justification if eligibility.override else None,
                overridden_institution_id=family.blocked_by_institution_id if eligibility.override else None,
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            self.mongo_service.create(
                DELIVERIES, to_document(delivery.model_dump()), user_context.user_id, doc_id=delivery.id
            )
            span.set_attribute("delivery.id", delivery.id)

            self._apply_block(delivery, family, institution.get("name"), user_context)
            self._take_stock(delivery, family, user_context)

            try:
                receipt = self.receipt_service.generate_receipt(
                    ReceiptType.DELIVERY, institution_id, delivery.id, user_context
                )
                delivery.receipt_id = receipt.id
            except Exception as e:
                # The delivery stands; a receipt can be requested again later
                logger.error(
                    "Receipt generation failed for delivery",
                    extra={"delivery_id": delivery.id, "error": str(e)},
                    exc_info=True
                )

            self.audit_service.log_action(
                user_context, "delivery", delivery.id, "create", after=delivery.model_dump(mode="json")
            )
            if eligibility.override:
                self.audit_service.log_action(
                    user_context, "delivery", delivery.id, "fraud_override",
                    before=_block_snapshot(family),
                    after={
                        "justification": eligibility.justification,
                        "family_id": family.id,
                        "institution_id": institution_id
                    }
                )
                logger.warning(
                    "Delivery recorded over another institution's block",
                    extra={
                        "delivery_id": delivery.id,
                        "family_id": family.id,
                        "institution_id": institution_id,
                        "blocked_by_institution_id": family.blocked_by_institution_id
                    }
                )

            logger.info(
                "Delivery recorded",
                extra={
                    "delivery_id": delivery.id,
                    "family_id": family.id,
                    "institution_id": institution_id,
                    "blocking_period_days": int(delivery.blocking_period_days),
                    "user_id": user_context.user_id
                }
            )
            return delivery

    def _apply_block(
        self,
        delivery: Delivery,
        family: Family,
        institution_name: Optional[str],
        user_context: UserContext
    ) -> None:
        """Block the family; on failure remove the delivery and fail with 503."""
        update = build_block_update(
            delivery.delivery_date,
            delivery.blocking_period_days,
            delivery.institution_id,
            user_context.user_id,
            institution_name
        )
        error = None
        try:
            updated = self.mongo_service.update_by_id(FAMILIES, family.id, update, user_context.user_id)
        except Exception as e:
            updated = False
            error = str(e)

        if updated:
            return

        logger.error(
            "Family block update failed, removing delivery",
            extra={"delivery_id": delivery.id, "family_id": family.id, "error": error}
        )
        self.mongo_service.hard_delete_by_id(DELIVERIES, delivery.id)
        logger.warning(
            "Delivery compensated after failed family update",
            extra={"delivery_id": delivery.id, "family_id": family.id}
        )
        raise ServiceUnavailableException("Could not update the family's block; the delivery was not recorded")

    def _take_stock(self, delivery: Delivery, family: Family, user_context: UserContext) -> None:
        """
        Write one SAIDA per item. If any exit fails, the exits already
        written, the family block and the delivery are undone and the
        error propagates.
        """
        written: List[StockMovement] = []
        try:
            for item in delivery.items:
                movement, _ = self.inventory_ledger.record_movement(
                    StockMovementRequest(
                        product_id=item.product_id,
                        movement_type=MovementType.SAIDA,
                        quantity=item.quantity,
                        institution_id=delivery.institution_id,
                        movement_date=delivery.delivery_date,
                        notes=f"Entrega de cesta básica - {family.name}"
                    ),
                    user_context,
                    delivery_id=delivery.id
                )
                written.append(movement)
        except Exception:
            logger.error(
                "Stock exit failed during delivery, rolling back",
                extra={"delivery_id": delivery.id, "movements_written": len(written)},
                exc_info=True
            )
            for movement in written:
                self.inventory_ledger.revert_movement(movement, user_context)
            self.mongo_service.update_by_id(FAMILIES, family.id, _block_snapshot(family), user_context.user_id)
            self.mongo_service.hard_delete_by_id(DELIVERIES, delivery.id)
            self.audit_service.log_action(
                user_context, "delivery", delivery.id, "compensate",
                after={"family_id": family.id, "movements_reverted": len(written)}
            )
            raise

    def get_delivery(self, delivery_id: str, user_context: UserContext) -> Delivery:
        document = self.mongo_service.find_by_id(DELIVERIES, delivery_id)
        if not document:
            raise NotFoundException(f"Delivery {delivery_id} not found")
        delivery = Delivery(**from_document(document))
        if not user_context.can_act_for(delivery.institution_id):
            raise AuthorizationException("Delivery belongs to another institution")
        return delivery

    def update_notes(self, delivery_id: str, notes: Optional[str], user_context: UserContext) -> Delivery:
        """Notes are the only field of a delivery that may change."""
        with tracer.start_as_current_span("deliveries.update_notes") as span:
            span.set_attribute("delivery.id", delivery_id)
            delivery = self.get_delivery(delivery_id, user_context)

            self.mongo_service.update_by_id(DELIVERIES, delivery_id, {"notes": notes}, user_context.user_id)
            self.audit_service.log_action(
                user_context, "delivery", delivery_id, "update",
                before={"notes": delivery.notes}, after={"notes": notes}
            )
            delivery.notes = notes
            return delivery

    def list_deliveries(
        self,
        user_context: UserContext,
        filters: Optional[DeliveryFilters] = None,
        page: int = 1,
        page_size: int = 20
    ) -> PaginationResult:
        """
        Paginated deliveries, newest first, with family and institution names.

        Institution users only ever see their own institution's deliveries.
        """
        with tracer.start_as_current_span("deliveries.list") as span:
            filters = filters or DeliveryFilters()
            query: Dict[str, Any] = {}

            if filters.institution_id or not user_context.is_admin:
                query["institutionId"] = require_institution_scope(user_context, filters.institution_id)
            if filters.family_id:
                query["familyId"] = filters.family_id
            if filters.date_from or filters.date_to:
                query["deliveryDate"] = {}
                if filters.date_from:
                    query["deliveryDate"]["$gte"] = filters.date_from
                if filters.date_to:
                    query["deliveryDate"]["$lt"] = filters.date_to

            span.set_attribute("deliveries.filters_count", len(query))
            result = self.mongo_service.paginate(
                DELIVERIES, page=page, page_size=page_size, filters=query,
                sort_by="deliveryDate", sort_order=DESCENDING
            )

            deliveries = [Delivery(**from_document(doc)) for doc in result.items]
            family_names = {}
            institution_names = {}
            for delivery in deliveries:
                if delivery.family_id not in family_names:
                    doc = self.mongo_service.find_by_id(FAMILIES, delivery.family_id, include_deleted=True)
                    family_names[delivery.family_id] = doc.get("name") if doc else None
                if delivery.institution_id not in institution_names:
                    institution_names[delivery.institution_id] = self.family_service.institution_name(
                        delivery.institution_id
                    )

            result.items = [
                present_delivery(d, family_names.get(d.family_id), institution_names.get(d.institution_id))
                for d in deliveries
            ]
            return result
