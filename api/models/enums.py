# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Enumeration types for the Cesta Básica platform.
"""

from enum import Enum


class UserRole(str, Enum):
    """Account roles."""
    ADMIN = "admin"
    INSTITUTION = "institution"


class UserStatus(str, Enum):
    """User account status enumeration."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class BlockingPeriod(int, Enum):
    """Allowed blocking periods, in days, after a delivery."""
    FIFTEEN = 15
    THIRTY = 30
    FORTY_FIVE = 45
    SIXTY = 60
    NINETY = 90


class MovementType(str, Enum):
    """Stock movement direction."""
    ENTRADA = "ENTRADA"
    SAIDA = "SAIDA"


class ReceiptType(str, Enum):
    """Kinds of generated receipts."""
    STOCK_ENTRY = "STOCK_ENTRY"
    STOCK_EXIT = "STOCK_EXIT"
    DELIVERY = "DELIVERY"


class DocumentType(str, Enum):
    """Supplier document type: individual (CPF) or company (CNPJ)."""
    PF = "PF"
    PJ = "PJ"


class FamilySearchScenario(str, Enum):
    """Outcome of a family lookup by CPF from an institution's point of view."""
    FOUND_UNLINKED = "found_unlinked"
    LINKED_OTHER_INSTITUTION = "linked_other_institution"
    LINKED_SAME_INSTITUTION = "linked_same_institution"
    NOT_FOUND = "not_found"


class AlertType(str, Enum):
    """Dashboard alert types."""
    FRAUD = "fraud"
    EXPIRED_BLOCK = "expired_block"


class AlertSeverity(str, Enum):
    """Dashboard alert severities."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
