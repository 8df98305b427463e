# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Models package - Pydantic schemas and data models for the Cesta Básica platform.
"""

# Base models
from .base import BaseEntity, generate_object_id, utcnow

# Enumerations
from .enums import (
    UserRole,
    UserStatus,
    BlockingPeriod,
    MovementType,
    ReceiptType,
    DocumentType,
    FamilySearchScenario,
    AlertType,
    AlertSeverity
)

# Core entities
from .entities import (
    Institution,
    User,
    Family,
    InstitutionFamily,
    Delivery,
    DeliveryItem,
    Product,
    Supplier,
    StockMovement,
    InventoryItem,
    Receipt,
    AuditLog,
    UserContext
)

__all__ = [
    "BaseEntity",
    "generate_object_id",
    "utcnow",
    "UserRole",
    "UserStatus",
    "BlockingPeriod",
    "MovementType",
    "ReceiptType",
    "DocumentType",
    "FamilySearchScenario",
    "AlertType",
    "AlertSeverity",
    "Institution",
    "User",
    "Family",
    "InstitutionFamily",
    "Delivery",
    "DeliveryItem",
    "Product",
    "Supplier",
    "StockMovement",
    "InventoryItem",
    "Receipt",
    "AuditLog",
    "UserContext"
]
