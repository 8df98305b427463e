# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Product and supplier catalogue endpoints.
"""

from flask import jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from models.entities import Supplier, UserContext
from models.requests import (
    CreateProductRequest,
    UpdateProductRequest,
    CreateSupplierRequest,
    UpdateSupplierRequest,
    ProductPath,
    SupplierPath
)
from models.responses import ProductResponse, SupplierResponse
from domain.documents import format_document
from middleware.auth import require_jwt, require_permission
from utils.request import RequestParser

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

catalog_tag = Tag(name="Catalog", description="Products and suppliers")
catalog_bp = APIBlueprint(
    'catalog',
    __name__,
    url_prefix='/api/catalog',
    abp_tags=[catalog_tag]
)


def _present_supplier(supplier: Supplier):
    data = supplier.model_dump()
    if supplier.document_number:
        data["document_formatted"] = format_document(supplier.document_number, supplier.document_type)
    return SupplierResponse(**data).to_dict()


def _listing(items, resource_type: str, path: str, user_context: UserContext):
    hal_formatter = current_app.hal_formatter
    return {
        "total": len(items),
        "_embedded": {"items": [hal_formatter.format_resource(item, resource_type, user_context) for item in items]},
        "_links": {"self": {"href": path}}
    }


# Products

@catalog_bp.get('/products')
@require_jwt
@require_permission('product:read')
def list_products(user_context: UserContext):
    """Active products; ``include_inactive=true`` lists all of them."""
    include_inactive = RequestParser.get_bool_param('include_inactive')
    products = current_app.catalog_service.list_products(include_inactive=include_inactive)
    return jsonify(_listing(
        [ProductResponse(**product.model_dump()).to_dict() for product in products],
        "product", "/api/catalog/products", user_context
    )), 200


@catalog_bp.post('/products')
@require_jwt
@require_permission('product:create')
def create_product(user_context: UserContext):
    product = current_app.catalog_service.create_product(RequestParser.parse_model(CreateProductRequest), user_context)
    data = ProductResponse(**product.model_dump()).to_dict()
    return jsonify(current_app.hal_formatter.format_resource(data, "product", user_context)), 201


@catalog_bp.get('/products/<product_id>')
@require_jwt
@require_permission('product:read')
def get_product(user_context: UserContext, path: ProductPath):
    product = current_app.catalog_service.get_product(path.product_id)
    data = ProductResponse(**product.model_dump()).to_dict()
    return jsonify(current_app.hal_formatter.format_resource(data, "product", user_context)), 200


@catalog_bp.put('/products/<product_id>')
@require_jwt
@require_permission('product:update')
def update_product(user_context: UserContext, path: ProductPath):
    product = current_app.catalog_service.update_product(
        path.product_id, RequestParser.parse_model(UpdateProductRequest), user_context
    )
    data = ProductResponse(**product.model_dump()).to_dict()
    return jsonify(current_app.hal_formatter.format_resource(data, "product", user_context)), 200


@catalog_bp.delete('/products/<product_id>')
@require_jwt
@require_permission('product:delete')
def deactivate_product(user_context: UserContext, path: ProductPath):
    """Products are deactivated, never removed, so past movements keep their names."""
    product = current_app.catalog_service.deactivate_product(path.product_id, user_context)
    data = ProductResponse(**product.model_dump()).to_dict()
    return jsonify(current_app.hal_formatter.format_resource(data, "product", user_context)), 200


# Suppliers

@catalog_bp.get('/suppliers')
@require_jwt
@require_permission('supplier:read')
def list_suppliers(user_context: UserContext):
    suppliers = current_app.catalog_service.list_suppliers(RequestParser.get_search())
    return jsonify(_listing(
        [_present_supplier(supplier) for supplier in suppliers],
        "supplier", "/api/catalog/suppliers", user_context
    )), 200


@catalog_bp.post('/suppliers')
@require_jwt
@require_permission('supplier:create')
def create_supplier(user_context: UserContext):
    """Suppliers are individuals (CPF) or companies (CNPJ); the document is validated."""
    supplier = current_app.catalog_service.create_supplier(RequestParser.parse_model(CreateSupplierRequest), user_context)
    return jsonify(current_app.hal_formatter.format_resource(_present_supplier(supplier), "supplier", user_context)), 201


@catalog_bp.get('/suppliers/<supplier_id>')
@require_jwt
@require_permission('supplier:read')
def get_supplier(user_context: UserContext, path: SupplierPath):
    supplier = current_app.catalog_service.get_supplier(path.supplier_id)
    return jsonify(current_app.hal_formatter.format_resource(_present_supplier(supplier), "supplier", user_context)), 200


@catalog_bp.put('/suppliers/<supplier_id>')
@require_jwt
@require_permission('supplier:update')
def update_supplier(user_context: UserContext, path: SupplierPath):
    supplier = current_app.catalog_service.update_supplier(
        path.supplier_id, RequestParser.parse_model(UpdateSupplierRequest), user_context
    )
    return jsonify(current_app.hal_formatter.format_resource(_present_supplier(supplier), "supplier", user_context)), 200


@catalog_bp.delete('/suppliers/<supplier_id>')
@require_jwt
@require_permission('supplier:delete')
def delete_supplier(user_context: UserContext, path: SupplierPath):
    """Rejected with 409 while any stock movement references the supplier."""
    current_app.catalog_service.delete_supplier(path.supplier_id, user_context)
    return '', 204
