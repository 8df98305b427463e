# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Product and supplier catalogue.
"""

import re
import logging
from typing import List, Optional
from opentelemetry import trace
from pymongo import ASCENDING

from models.entities import Product, Supplier, UserContext
from models.requests import (
    CreateProductRequest,
    UpdateProductRequest,
    CreateSupplierRequest,
    UpdateSupplierRequest
)
from middleware.error_handler import ConflictException, NotFoundException, ValidationException
from .audit import AuditService
from .mongodb import MongoDBService, DuplicateDocumentError, to_document, from_document

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PRODUCTS = "products"
SUPPLIERS = "suppliers"
MOVEMENTS = "stock_movements"

DUPLICATE_PRODUCT_MESSAGE = "Já existe um produto com este nome"
SUPPLIER_IN_USE_MESSAGE = "Fornecedor possui movimentações de estoque e não pode ser excluído"


def _name_query(name: str) -> dict:
    return {"name": {"$regex": f"^{re.escape(name.strip())}$", "$options": "i"}}


class CatalogService:
    """Admin-managed products and suppliers; institutions read them."""

    def __init__(self, mongo_service: MongoDBService, audit_service: AuditService):
        self.mongo_service = mongo_service
        self.audit_service = audit_service

    # Products

    def get_product(self, product_id: str) -> Product:
        document = self.mongo_service.find_by_id(PRODUCTS, product_id)
        if not document:
            raise NotFoundException(f"Product {product_id} not found")
        return Product(**from_document(document))

    def _ensure_product_name_free(self, name: str, exclude_id: Optional[str] = None) -> None:
        query = _name_query(name)
        query["isActive"] = True
        for document in self.mongo_service.find(PRODUCTS, query):
            if document["id"] != exclude_id:
                raise ConflictException(DUPLICATE_PRODUCT_MESSAGE)

    def create_product(self, request: CreateProductRequest, user_context: UserContext) -> Product:
        with tracer.start_as_current_span("catalog.create_product") as span:
            self._ensure_product_name_free(request.name)
            product = Product(
                name=request.name,
                unit=request.unit,
                description=request.description,
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            try:
                self.mongo_service.create(
                    PRODUCTS, to_document(product.model_dump()), user_context.user_id, doc_id=product.id
                )
            except DuplicateDocumentError:
                raise ConflictException(DUPLICATE_PRODUCT_MESSAGE)

            span.set_attribute("product.id", product.id)
            self.audit_service.log_action(
                user_context, "product", product.id, "create", after=product.model_dump(mode="json")
            )
            return product

    def update_product(self, product_id: str, request: UpdateProductRequest, user_context: UserContext) -> Product:
        with tracer.start_as_current_span("catalog.update_product") as span:
            span.set_attribute("product.id", product_id)
            product = self.get_product(product_id)
            changes = request.model_dump(exclude_unset=True)
            if not changes:
                return product

            # Names only need to be unique among active products
            active = changes.get("is_active", product.is_active)
            if active and ("name" in changes or "is_active" in changes):
                self._ensure_product_name_free(changes.get("name", product.name), exclude_id=product_id)

            try:
                self.mongo_service.update_by_id(PRODUCTS, product_id, to_document(changes), user_context.user_id)
            except DuplicateDocumentError:
                raise ConflictException(DUPLICATE_PRODUCT_MESSAGE)

            updated = self.get_product(product_id)
            self.audit_service.log_action(
                user_context, "product", product_id, "update",
                before=product.model_dump(mode="json"), after=updated.model_dump(mode="json")
            )
            return updated

    def deactivate_product(self, product_id: str, user_context: UserContext) -> Product:
        """Products are never removed, only hidden from new movements."""
        with tracer.start_as_current_span("catalog.deactivate_product") as span:
            span.set_attribute("product.id", product_id)
            product = self.get_product(product_id)
            self.mongo_service.update_by_id(PRODUCTS, product_id, {"isActive": False}, user_context.user_id)
            self.audit_service.log_action(
                user_context, "product", product_id, "delete",
                before={"is_active": product.is_active}, after={"is_active": False}
            )
            product.is_active = False
            return product

    def list_products(self, include_inactive: bool = False) -> List[Product]:
        filters = {} if include_inactive else {"isActive": True}
        documents = self.mongo_service.find(PRODUCTS, filters, sort_by="name", sort_order=ASCENDING)
        return [Product(**from_document(doc)) for doc in documents]

    # Suppliers

    def get_supplier(self, supplier_id: str) -> Supplier:
        document = self.mongo_service.find_by_id(SUPPLIERS, supplier_id)
        if not document:
            raise NotFoundException(f"Supplier {supplier_id} not found")
        return Supplier(**from_document(document))

    def create_supplier(self, request: CreateSupplierRequest, user_context: UserContext) -> Supplier:
        with tracer.start_as_current_span("catalog.create_supplier") as span:
            supplier = Supplier(
                **request.model_dump(),
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            self.mongo_service.create(
                SUPPLIERS, to_document(supplier.model_dump()), user_context.user_id, doc_id=supplier.id
            )
            span.set_attribute("supplier.id", supplier.id)
            self.audit_service.log_action(
                user_context, "supplier", supplier.id, "create", after=supplier.model_dump(mode="json")
            )
            return supplier

    def update_supplier(self, supplier_id: str, request: UpdateSupplierRequest, user_context: UserContext) -> Supplier:
        """Changes are validated against the merged record, so a type switch re-checks the document."""
        with tracer.start_as_current_span("catalog.update_supplier") as span:
            span.set_attribute("supplier.id", supplier_id)
            supplier = self.get_supplier(supplier_id)
            changes = request.model_dump(exclude_unset=True)
            if not changes:
                return supplier

            merged = supplier.model_dump()
            merged.update(changes)
            try:
                updated = Supplier(**merged)
            except ValueError as e:
                raise ValidationException(f"Invalid supplier data: {e}")

            fields = {key: getattr(updated, key) for key in changes}
            self.mongo_service.update_by_id(SUPPLIERS, supplier_id, to_document(fields), user_context.user_id)
            self.audit_service.log_action(
                user_context, "supplier", supplier_id, "update",
                before=supplier.model_dump(mode="json"), after=updated.model_dump(mode="json")
            )
            return updated

    def delete_supplier(self, supplier_id: str, user_context: UserContext) -> None:
        with tracer.start_as_current_span("catalog.delete_supplier") as span:
            span.set_attribute("supplier.id", supplier_id)
            supplier = self.get_supplier(supplier_id)

            movements = self.mongo_service.count(MOVEMENTS, {"supplierId": supplier_id})
            if movements:
                span.set_attribute("catalog.delete_result", "in_use")
                raise ConflictException(SUPPLIER_IN_USE_MESSAGE)

            self.mongo_service.soft_delete_by_id(SUPPLIERS, supplier_id, user_context.user_id)
            self.audit_service.log_action(
                user_context, "supplier", supplier_id, "delete", before=supplier.model_dump(mode="json")
            )

    def list_suppliers(self, search: Optional[str] = None) -> List[Supplier]:
        filters = {}
        if search:
            filters["name"] = {"$regex": re.escape(search.strip()), "$options": "i"}
        documents = self.mongo_service.find(SUPPLIERS, filters, sort_by="name", sort_order=ASCENDING)
        return [Supplier(**from_document(doc)) for doc in documents]
