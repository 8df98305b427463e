# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for delivery recording, family blocking and compensation.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from bson import ObjectId

from models.entities import DeliveryItem, StockMovement
from models.enums import MovementType, ReceiptType
from models.requests import CreateDeliveryRequest, DeliveryFilters
from services.deliveries import DeliveryService, DELIVERIES
from services.families import FAMILIES, INSTITUTIONS
from services.mongodb import PaginationResult
from middleware.error_handler import (
    AuthorizationException,
    InsufficientStockException,
    JustificationRequiredException,
    NotFoundException,
    ServiceUnavailableException,
    ValidationException
)


@pytest.fixture
def family_service():
    return MagicMock()


@pytest.fixture
def inventory_ledger():
    return MagicMock()


@pytest.fixture
def receipt_service():
    service = MagicMock()
    service.generate_receipt.return_value = MagicMock(id=str(ObjectId()))
    return service


@pytest.fixture
def delivery_service(as_document, mock_mongo, mock_audit, family_service, inventory_ledger, receipt_service, sample_institution):
    mock_mongo.find_by_id.side_effect = lambda collection, doc_id, include_deleted=False: (
        as_document(sample_institution) if collection == INSTITUTIONS and doc_id == sample_institution.id else None
    )
    return DeliveryService(mock_mongo, mock_audit, family_service, inventory_ledger, receipt_service)


def family_updates(mock_mongo):
    return [c.args[2] for c in mock_mongo.update_by_id.call_args_list if c.args[0] == FAMILIES]


class TestRecordDelivery:

    def test_delivery_blocks_family_for_period(
        self, delivery_service, mock_mongo, family_service, sample_family, institution_context
    ):
        family_service.get_family.return_value = sample_family
        delivery_date = datetime(2025, 4, 1, 10, 0)
        request = CreateDeliveryRequest(
            family_id=sample_family.id, delivery_date=delivery_date, blocking_period_days=45
        )

        delivery = delivery_service.record_delivery(request, institution_context)

        assert delivery.institution_id == institution_context.institution_id
        assert delivery.delivered_by_user_id == institution_context.user_id
        assert mock_mongo.create.call_args.args[0] == DELIVERIES
        [update] = family_updates(mock_mongo)
        assert update["isBlocked"] is True
        assert update["blockedUntil"] == delivery_date + timedelta(days=45)
        assert update["blockedByInstitutionId"] == institution_context.institution_id
        assert "Instituição Esperança" in update["blockReason"]

    def test_receipt_attached(self, delivery_service, family_service, receipt_service, sample_family, institution_context):
        family_service.get_family.return_value = sample_family

        delivery = delivery_service.record_delivery(
            CreateDeliveryRequest(family_id=sample_family.id), institution_context
        )

        receipt_service.generate_receipt.assert_called_once_with(
            ReceiptType.DELIVERY, institution_context.institution_id, delivery.id, institution_context
        )
        assert delivery.receipt_id == receipt_service.generate_receipt.return_value.id

    def test_receipt_failure_keeps_delivery(
        self, delivery_service, mock_mongo, family_service, receipt_service, sample_family, institution_context
    ):
        family_service.get_family.return_value = sample_family
        receipt_service.generate_receipt.side_effect = RuntimeError("boom")

        delivery = delivery_service.record_delivery(
            CreateDeliveryRequest(family_id=sample_family.id), institution_context
        )

        assert delivery.receipt_id is None
        mock_mongo.hard_delete_by_id.assert_not_called()

    def test_blocked_by_other_institution_requires_justification(
        self, delivery_service, mock_mongo, family_service, blocked_family, institution_context
    ):
        family_service.get_family.return_value = blocked_family

        with pytest.raises(JustificationRequiredException) as exc_info:
            delivery_service.record_delivery(
                CreateDeliveryRequest(family_id=blocked_family.id), institution_context
            )

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "BLOCKING_JUSTIFICATION_REQUIRED"
        mock_mongo.create.assert_not_called()

    def test_justification_overrides_and_is_audited(
        self, delivery_service, mock_mongo, mock_audit, family_service, blocked_family, institution_context
    ):
        family_service.get_family.return_value = blocked_family

        delivery = delivery_service.record_delivery(
            CreateDeliveryRequest(family_id=blocked_family.id, justification="Situação de emergência"),
            institution_context
        )

        assert delivery.fraud_justification == "Situação de emergência"
        assert delivery.overridden_institution_id == blocked_family.blocked_by_institution_id
        actions = [c.args[3] for c in mock_audit.log_action.call_args_list]
        assert actions == ["create", "fraud_override"]
        [update] = family_updates(mock_mongo)
        assert update["blockedByInstitutionId"] == institution_context.institution_id

    def test_blocking_institution_delivers_again(
        self, as_document, delivery_service, family_service, blocked_family, admin_context, other_institution_id, mock_mongo,
        sample_institution
    ):
        mock_mongo.find_by_id.side_effect = lambda collection, doc_id, include_deleted=False: as_document(
            sample_institution
        )
        family_service.get_family.return_value = blocked_family

        delivery = delivery_service.record_delivery(
            CreateDeliveryRequest(family_id=blocked_family.id, institution_id=other_institution_id),
            admin_context
        )

        assert delivery.fraud_justification is None
        assert delivery.overridden_institution_id is None

    def test_admin_must_name_institution(self, delivery_service, sample_family, admin_context):
        with pytest.raises(ValidationException):
            delivery_service.record_delivery(CreateDeliveryRequest(family_id=sample_family.id), admin_context)

    def test_unknown_institution(self, delivery_service, sample_family, admin_context):
        with pytest.raises(NotFoundException):
            delivery_service.record_delivery(
                CreateDeliveryRequest(family_id=sample_family.id, institution_id=str(ObjectId())), admin_context
            )

    def test_insufficient_stock_rejected_before_writing(
        self, delivery_service, mock_mongo, family_service, inventory_ledger, sample_family, institution_context
    ):
        family_service.get_family.return_value = sample_family
        inventory_ledger.check_availability.side_effect = InsufficientStockException("Estoque insuficiente")

        with pytest.raises(InsufficientStockException):
            delivery_service.record_delivery(
                CreateDeliveryRequest(
                    family_id=sample_family.id,
                    items=[DeliveryItem(product_id=str(ObjectId()), quantity=2)]
                ),
                institution_context
            )

        mock_mongo.create.assert_not_called()

    def test_items_written_as_stock_exits(
        self, delivery_service, family_service, inventory_ledger, sample_family, institution_context
    ):
        family_service.get_family.return_value = sample_family
        inventory_ledger.record_movement.return_value = (MagicMock(), MagicMock())
        product_id = str(ObjectId())

        delivery = delivery_service.record_delivery(
            CreateDeliveryRequest(
                family_id=sample_family.id,
                items=[DeliveryItem(product_id=product_id, quantity=1.5)]
            ),
            institution_context
        )

        movement_request = inventory_ledger.record_movement.call_args.args[0]
        assert movement_request.movement_type == MovementType.SAIDA
        assert movement_request.product_id == product_id
        assert movement_request.quantity == 1.5
        assert "Família Silva" in movement_request.notes
        assert inventory_ledger.record_movement.call_args.kwargs["delivery_id"] == delivery.id


class TestDeliveryCompensation:

    def test_failed_block_removes_delivery(
        self, delivery_service, mock_mongo, family_service, sample_family, institution_context
    ):
        family_service.get_family.return_value = sample_family
        mock_mongo.update_by_id.return_value = False

        with pytest.raises(ServiceUnavailableException) as exc_info:
            delivery_service.record_delivery(
                CreateDeliveryRequest(family_id=sample_family.id), institution_context
            )

        assert exc_info.value.status_code == 503
        delivery_id = mock_mongo.create.call_args.kwargs["doc_id"]
        mock_mongo.hard_delete_by_id.assert_called_once_with(DELIVERIES, delivery_id)

    def test_block_update_exception_removes_delivery(
        self, delivery_service, mock_mongo, family_service, sample_family, institution_context
    ):
        family_service.get_family.return_value = sample_family
        mock_mongo.update_by_id.side_effect = RuntimeError("connection reset")

        with pytest.raises(ServiceUnavailableException):
            delivery_service.record_delivery(
                CreateDeliveryRequest(family_id=sample_family.id), institution_context
            )

        mock_mongo.hard_delete_by_id.assert_called_once()

    def test_failed_stock_exit_reverts_everything(
        self, delivery_service, mock_mongo, mock_audit, family_service, inventory_ledger,
        blocked_family, institution_context
    ):
        family_service.get_family.return_value = blocked_family
        first = StockMovement(
            institution_id=institution_context.institution_id,
            product_id=str(ObjectId()),
            movement_type=MovementType.SAIDA,
            quantity=1,
            created_by=institution_context.user_id,
            updated_by=institution_context.user_id
        )
        inventory_ledger.record_movement.side_effect = [
            (first, MagicMock()),
            InsufficientStockException("Estoque insuficiente")
        ]

        with pytest.raises(InsufficientStockException):
            delivery_service.record_delivery(
                CreateDeliveryRequest(
                    family_id=blocked_family.id,
                    justification="Emergência",
                    items=[
                        DeliveryItem(product_id=first.product_id, quantity=1),
                        DeliveryItem(product_id=str(ObjectId()), quantity=3)
                    ]
                ),
                institution_context
            )

        inventory_ledger.revert_movement.assert_called_once_with(first, institution_context)
        restored = family_updates(mock_mongo)[-1]
        assert restored["blockedUntil"] == blocked_family.blocked_until
        assert restored["blockedByInstitutionId"] == blocked_family.blocked_by_institution_id
        mock_mongo.hard_delete_by_id.assert_called_once()
        assert mock_audit.log_action.call_args.args[3] == "compensate"


class TestDeliveryQueries:

    def test_get_delivery_of_other_institution(
        self, as_document, delivery_service, mock_mongo, sample_delivery, other_institution_id, institution_context
    ):
        foreign = sample_delivery.model_copy(update={"institution_id": other_institution_id})
        mock_mongo.find_by_id.side_effect = None
        mock_mongo.find_by_id.return_value = as_document(foreign)

        with pytest.raises(AuthorizationException):
            delivery_service.get_delivery(foreign.id, institution_context)

    def test_update_notes(self, as_document, delivery_service, mock_mongo, mock_audit, sample_delivery, institution_context):
        mock_mongo.find_by_id.side_effect = None
        mock_mongo.find_by_id.return_value = as_document(sample_delivery)

        delivery = delivery_service.update_notes(sample_delivery.id, "Retirada pelo vizinho", institution_context)

        assert delivery.notes == "Retirada pelo vizinho"
        mock_mongo.update_by_id.assert_called_once_with(
            DELIVERIES, sample_delivery.id, {"notes": "Retirada pelo vizinho"}, institution_context.user_id
        )
        assert mock_audit.log_action.call_args.kwargs["before"] == {"notes": "Entrega mensal"}

    def test_list_scoped_to_own_institution(self, delivery_service, mock_mongo, institution_context):
        mock_mongo.paginate.return_value = PaginationResult([], 0, 1, 20)
        date_from = datetime(2025, 1, 1)

        delivery_service.list_deliveries(institution_context, DeliveryFilters(date_from=date_from))

        filters = mock_mongo.paginate.call_args.kwargs["filters"]
        assert filters == {
            "institutionId": institution_context.institution_id,
            "deliveryDate": {"$gte": date_from}
        }

    def test_list_date_range_excludes_upper_bound(self, delivery_service, mock_mongo, admin_context):
        mock_mongo.paginate.return_value = PaginationResult([], 0, 1, 20)
        date_from, date_to = datetime(2024, 5, 1, 3, 0), datetime(2024, 6, 1, 3, 0)

        delivery_service.list_deliveries(admin_context, DeliveryFilters(date_from=date_from, date_to=date_to))

        filters = mock_mongo.paginate.call_args.kwargs["filters"]
        assert filters == {"deliveryDate": {"$gte": date_from, "$lt": date_to}}

    def test_list_includes_names(
        self, as_document, delivery_service, mock_mongo, family_service, sample_delivery, sample_family, admin_context
    ):
        mock_mongo.paginate.return_value = PaginationResult([as_document(sample_delivery)], 1, 1, 20)
        mock_mongo.find_by_id.side_effect = None
        mock_mongo.find_by_id.return_value = as_document(sample_family)
        family_service.institution_name.return_value = "Instituição Esperança"

        result = delivery_service.list_deliveries(admin_context)

        assert result.items[0]["family_name"] == "Família Silva"
        assert result.items[0]["institution_name"] == "Instituição Esperança"
        assert "institutionId" not in mock_mongo.paginate.call_args.kwargs["filters"]
