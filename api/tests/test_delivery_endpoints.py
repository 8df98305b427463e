# SPDX-License-Identifier: Apache-2.0

"""
Integration tests for the delivery endpoints.
"""

import json
import pytest
from datetime import datetime

from models.entities import Receipt
from services.mongodb import PaginationResult
from services.deliveries import present_delivery
from middleware.error_handler import (
    JustificationRequiredException, InsufficientStockException, NotFoundException
)


class TestCreateDelivery:
    """Test recording deliveries over HTTP."""

    def test_create_delivery(self, client, mock_services, sample_delivery, sample_family, institution_headers):
        mock_services['delivery_service'].record_delivery.return_value = sample_delivery
        mock_services['mongodb_service'].find_by_id.return_value = {"id": sample_family.id, "name": "Família Silva"}

        response = client.post('/api/deliveries', headers=institution_headers, data=json.dumps({
            "family_id": sample_family.id,
            "blocking_period_days": 30,
            "items": [{"product_id": "p1", "quantity": 2}]
        }))

        data = response.get_json()
        assert response.status_code == 201
        assert data['family_name'] == "Família Silva"
        assert data['institution_name'] == "Instituição Esperança"
        assert data['_links']['family']['href'].endswith(f'/api/families/{sample_family.id}')
        request = mock_services['delivery_service'].record_delivery.call_args.args[0]
        assert request.items[0].quantity == 2
        mock_services['report_service'].invalidate.assert_called_once()

    def test_override_refreshes_blocking_institution_stats(
        self, client, mock_services, sample_delivery, other_institution_id, institution_headers
    ):
        override = sample_delivery.model_copy(update={
            "fraud_justification": "Família desalojada pela enchente",
            "overridden_institution_id": other_institution_id
        })
        mock_services['delivery_service'].record_delivery.return_value = override

        response = client.post('/api/deliveries', headers=institution_headers, data=json.dumps({
            "family_id": sample_delivery.family_id,
            "justification": "Família desalojada pela enchente"
        }))

        assert response.status_code == 201
        assert response.get_json()['overridden_institution_id'] == other_institution_id
        scopes = mock_services['report_service'].invalidate.call_args.args[1:]
        assert scopes == (sample_delivery.institution_id, other_institution_id)

    @pytest.mark.parametrize("days", [0, 20, 365])
    def test_blocking_period_outside_allowed_values(self, client, mock_services, institution_headers, days):
        response = client.post('/api/deliveries', headers=institution_headers, data=json.dumps({
            "family_id": "f1",
            "blocking_period_days": days
        }))

        data = response.get_json()
        assert response.status_code == 400
        assert data['errors'][0]['field'] == 'blocking_period_days'
        mock_services['delivery_service'].record_delivery.assert_not_called()

    def test_blocked_by_other_institution(self, client, mock_services, institution_headers):
        mock_services['delivery_service'].record_delivery.side_effect = JustificationRequiredException(
            "Família bloqueada pela instituição Casa do Pão até 10/04/2025"
        )

        response = client.post('/api/deliveries', headers=institution_headers, data=json.dumps({"family_id": "f1"}))

        data = response.get_json()
        assert response.status_code == 409
        assert data['code'] == "BLOCKING_JUSTIFICATION_REQUIRED"
        mock_services['report_service'].invalidate.assert_not_called()

    def test_insufficient_stock(self, client, mock_services, institution_headers):
        mock_services['delivery_service'].record_delivery.side_effect = InsufficientStockException(
            "Estoque insuficiente para Arroz 5kg"
        )

        response = client.post('/api/deliveries', headers=institution_headers, data=json.dumps({
            "family_id": "f1",
            "items": [{"product_id": "p1", "quantity": 99}]
        }))

        assert response.status_code == 422
        assert response.get_json()['code'] == "INSUFFICIENT_STOCK"

    def test_non_positive_item_quantity(self, client, mock_services, institution_headers):
        response = client.post('/api/deliveries', headers=institution_headers, data=json.dumps({
            "family_id": "f1",
            "items": [{"product_id": "p1", "quantity": 0}]
        }))

        assert response.status_code == 400

    def test_requires_body(self, client, mock_services, institution_headers):
        response = client.post('/api/deliveries', headers=institution_headers)

        assert response.status_code == 400


class TestDeliveryQueries:

    def test_list_with_date_range(self, client, mock_services, sample_delivery, institution_headers):
        mock_services['delivery_service'].list_deliveries.return_value = PaginationResult(
            [present_delivery(sample_delivery)], 1, 1, 20
        )

        response = client.get(
            '/api/deliveries?date_from=2025-03-01&date_to=2025-03-31T23:59:59Z',
            headers=institution_headers
        )

        data = response.get_json()
        assert response.status_code == 200
        assert data['_embedded']['items'][0]['id'] == sample_delivery.id
        assert 'date_from=2025-03-01' in data['_links']['self']['href']
        filters = mock_services['delivery_service'].list_deliveries.call_args.args[1]
        assert filters.date_from.day == 1
        assert filters.date_to.hour == 23

    def test_date_only_range_covers_whole_local_days(self, client, mock_services, institution_headers):
        mock_services['delivery_service'].list_deliveries.return_value = PaginationResult([], 0, 1, 20)

        response = client.get('/api/deliveries?date_from=2024-05-01&date_to=2024-05-31', headers=institution_headers)

        assert response.status_code == 200
        filters = mock_services['delivery_service'].list_deliveries.call_args.args[1]
        # America/Sao_Paulo is UTC-3
        assert filters.date_from == datetime(2024, 5, 1, 3, 0)
        assert filters.date_to == datetime(2024, 6, 1, 3, 0)
        assert filters.date_from <= datetime(2024, 5, 31, 14, 0) < filters.date_to
        assert datetime(2024, 6, 1, 1, 0) < filters.date_to

    def test_invalid_date(self, client, mock_services, institution_headers):
        response = client.get('/api/deliveries?date_from=ontem', headers=institution_headers)

        data = response.get_json()
        assert response.status_code == 400
        assert data['errors'][0]['field'] == 'date_from'

    def test_unknown_delivery(self, client, mock_services, institution_headers):
        mock_services['delivery_service'].get_delivery.side_effect = NotFoundException("Delivery d1 not found")

        response = client.get('/api/deliveries/d1', headers=institution_headers)

        assert response.status_code == 404

    def test_update_notes(self, client, mock_services, sample_delivery, institution_headers):
        updated = sample_delivery.model_copy(update={"notes": "Retirada pela vizinha"})
        mock_services['delivery_service'].update_notes.return_value = updated

        response = client.patch(
            f'/api/deliveries/{sample_delivery.id}/notes',
            headers=institution_headers,
            data=json.dumps({"notes": "Retirada pela vizinha"})
        )

        assert response.status_code == 200
        assert response.get_json()['notes'] == "Retirada pela vizinha"


class TestDeliveryReceipt:

    def test_receipt_generated_on_demand(self, client, mock_services, sample_delivery, institution_headers):
        receipt = Receipt(
            receipt_type="DELIVERY",
            institution_id=sample_delivery.institution_id,
            reference_id=sample_delivery.id,
            transaction_id="001/2025"
        )
        mock_services['delivery_service'].get_delivery.return_value = sample_delivery
        mock_services['receipt_service'].request_receipt.return_value = receipt
        mock_services['receipt_service'].receipt_content.return_value = {"transaction_id": "001/2025"}

        response = client.get(f'/api/deliveries/{sample_delivery.id}/receipt', headers=institution_headers)

        data = response.get_json()
        assert response.status_code == 200
        assert data['transaction_id'] == "001/2025"
        assert data['_links']['delivery']['href'] == f'/api/deliveries/{sample_delivery.id}'
        mock_services['receipt_service'].receipt_content.assert_called_once()
        assert mock_services['receipt_service'].receipt_content.call_args.args[0] == receipt.id

    def test_existing_receipt_reused(self, client, mock_services, sample_delivery, institution_headers):
        delivered = sample_delivery.model_copy(update={"receipt_id": "r1"})
        mock_services['delivery_service'].get_delivery.return_value = delivered
        mock_services['receipt_service'].receipt_content.return_value = {}

        client.get(f'/api/deliveries/{sample_delivery.id}/receipt', headers=institution_headers)

        mock_services['receipt_service'].request_receipt.assert_not_called()
