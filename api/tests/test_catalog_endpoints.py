# SPDX-License-Identifier: Apache-2.0

"""
Integration tests for catalog and institution management endpoints.
"""

import json

from services.mongodb import PaginationResult
from middleware.error_handler import ConflictException, NotFoundException


class TestProductEndpoints:

    def test_list_products(self, client, mock_services, sample_product, institution_headers):
        mock_services['catalog_service'].list_products.return_value = [sample_product]

        response = client.get('/api/catalog/products?include_inactive=true', headers=institution_headers)

        data = response.get_json()
        assert response.status_code == 200
        assert data['_embedded']['items'][0]['name'] == "Arroz 5kg"
        assert data['_embedded']['items'][0]['is_active'] is True
        mock_services['catalog_service'].list_products.assert_called_once_with(include_inactive=True)

    def test_admin_creates_product(self, client, mock_services, sample_product, admin_headers):
        mock_services['catalog_service'].create_product.return_value = sample_product

        response = client.post('/api/catalog/products', headers=admin_headers, data=json.dumps({
            "name": "Arroz 5kg",
            "unit": "pacote"
        }))

        data = response.get_json()
        assert response.status_code == 201
        assert data['_links']['self']['href'].endswith(f'/api/catalog/products/{sample_product.id}')

    def test_institution_user_cannot_create_product(self, client, mock_services, institution_headers):
        response = client.post('/api/catalog/products', headers=institution_headers, data=json.dumps({
            "name": "Feijão 1kg"
        }))

        assert response.status_code == 403
        mock_services['catalog_service'].create_product.assert_not_called()

    def test_duplicate_product_name(self, client, mock_services, admin_headers):
        mock_services['catalog_service'].create_product.side_effect = ConflictException(
            "Product Arroz 5kg already exists"
        )

        response = client.post('/api/catalog/products', headers=admin_headers, data=json.dumps({"name": "Arroz 5kg"}))

        assert response.status_code == 409
        assert 'code' not in response.get_json()

    def test_delete_deactivates(self, client, mock_services, sample_product, admin_headers):
        mock_services['catalog_service'].deactivate_product.return_value = sample_product.model_copy(
            update={"is_active": False}
        )

        response = client.delete(f'/api/catalog/products/{sample_product.id}', headers=admin_headers)

        assert response.status_code == 200
        assert response.get_json()['is_active'] is False


class TestSupplierEndpoints:

    def test_supplier_document_formatted(self, client, mock_services, sample_supplier, institution_headers):
        mock_services['catalog_service'].get_supplier.return_value = sample_supplier

        response = client.get(f'/api/catalog/suppliers/{sample_supplier.id}', headers=institution_headers)

        data = response.get_json()
        assert response.status_code == 200
        assert data['document_type'] == "PJ"
        assert data['document_formatted'] == "11.222.333/0001-81"

    def test_search_suppliers(self, client, mock_services, sample_supplier, institution_headers):
        mock_services['catalog_service'].list_suppliers.return_value = [sample_supplier]

        response = client.get('/api/catalog/suppliers?search=atacad', headers=institution_headers)

        assert response.get_json()['total'] == 1
        mock_services['catalog_service'].list_suppliers.assert_called_once_with("atacad")

    def test_unknown_supplier(self, client, mock_services, admin_headers):
        mock_services['catalog_service'].get_supplier.side_effect = NotFoundException("Supplier s1 not found")

        response = client.get('/api/catalog/suppliers/s1', headers=admin_headers)

        assert response.status_code == 404

    def test_institution_user_cannot_delete_supplier(self, client, mock_services, sample_supplier, institution_headers):
        response = client.delete(f'/api/catalog/suppliers/{sample_supplier.id}', headers=institution_headers)

        assert response.status_code == 403


class TestInstitutionEndpoints:
    """Institution management is restricted to administrators."""

    def test_create_institution(self, client, mock_services, sample_institution, admin_headers):
        mock_services['institution_service'].create_institution.return_value = sample_institution

        response = client.post('/api/institutions', headers=admin_headers, data=json.dumps({
            "name": "Instituição Esperança",
            "email": "Contato@Instituicao.org",
            "password": "senhaForte123"
        }))

        data = response.get_json()
        assert response.status_code == 201
        assert data['id'] == sample_institution.id
        request = mock_services['institution_service'].create_institution.call_args.args[0]
        assert request.email == "contato@instituicao.org"
        mock_services['report_service'].invalidate.assert_called_once()

    def test_weak_password(self, client, mock_services, admin_headers):
        response = client.post('/api/institutions', headers=admin_headers, data=json.dumps({
            "name": "Casa",
            "email": "casa@casa.org",
            "password": "12345678"
        }))

        assert response.status_code == 400
        assert response.get_json()['errors'][0]['field'] == 'password'

    def test_institution_user_forbidden(self, client, mock_services, institution_headers):
        response = client.get('/api/institutions', headers=institution_headers)

        assert response.status_code == 403
        mock_services['institution_service'].list_institutions.assert_not_called()

    def test_list_institutions(self, client, mock_services, sample_institution, admin_headers):
        mock_services['institution_service'].list_institutions.return_value = PaginationResult(
            [sample_institution], 1, 1, 20
        )

        response = client.get('/api/institutions?search=esperan', headers=admin_headers)

        data = response.get_json()
        assert response.status_code == 200
        assert data['_embedded']['items'][0]['email'] == "contato@instituicao.org"
        assert 'search=esperan' in data['_links']['self']['href']

    def test_delete_with_families_conflict(self, client, mock_services, sample_institution, admin_headers):
        mock_services['institution_service'].delete_institution.side_effect = ConflictException(
            "Institution has associated families"
        )

        response = client.delete(f'/api/institutions/{sample_institution.id}', headers=admin_headers)

        assert response.status_code == 409
        mock_services['report_service'].invalidate.assert_not_called()

    def test_delete_institution(self, client, mock_services, sample_institution, admin_headers):
        response = client.delete(f'/api/institutions/{sample_institution.id}', headers=admin_headers)

        assert response.status_code == 204
        assert response.data == b''
