# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Core entity models for the Cesta Básica platform.
"""

import re
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict, ValidationInfo
from .base import BaseEntity, generate_object_id, utcnow
from .enums import (
    UserRole,
    UserStatus,
    BlockingPeriod,
    MovementType,
    ReceiptType,
    DocumentType,
)
from domain.documents import only_digits, validate_cpf, validate_document

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

DEFAULT_REVOCATION_REASON = "Revogação solicitada pelo titular"


def _validate_email(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not re.match(EMAIL_PATTERN, v.lower()):
        raise ValueError('Invalid email format')
    return v.lower()


class Institution(BaseEntity):
    """Partner institution that distributes baskets to families."""

    name: str = Field(..., min_length=1, max_length=200, description="Institution name")
    address: Optional[str] = Field(None, max_length=500, description="Street address")
    phone: Optional[str] = Field(None, max_length=30, description="Contact phone")
    email: Optional[str] = Field(None, description="Contact email, unique across institutions")
    responsible_name: Optional[str] = Field(None, max_length=200, description="Person in charge")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError('Institution name cannot be empty')
        return v.strip()

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        return _validate_email(v)


class User(BaseEntity):
    """User account. Institution users are bound to a single institution."""

    email: str = Field(..., description="User email address")
    name: str = Field(..., min_length=1, max_length=200, description="User full name")
    password_hash: str = Field(..., description="Hashed password")
    role: UserRole = Field(default=UserRole.INSTITUTION, description="Account role")
    institution_id: Optional[str] = Field(None, description="Institution the user acts for")
    status: UserStatus = Field(default=UserStatus.ACTIVE, description="User account status")
    last_login: Optional[datetime] = Field(None, description="Last login timestamp")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        return _validate_email(v)

    @model_validator(mode='after')
    def validate_institution_binding(self):
        """Institution accounts must point at an institution."""
        if self.role == UserRole.INSTITUTION and not self.institution_id:
            raise ValueError('Institution users require institution_id')
        return self

    def is_active(self) -> bool:
        """Check if user account is active."""
        return self.status == UserStatus.ACTIVE and not self.is_deleted()


class Family(BaseEntity):
    """
    Family registered to receive baskets.

    The block fields are rewritten on every delivery. A block is only in
    effect while ``blocked_until`` lies in the future, regardless of the
    ``is_blocked`` flag (see ``domain.eligibility.is_block_active``).
    """

    name: str = Field(..., min_length=1, max_length=200, description="Family name")
    contact_person: str = Field(..., min_length=1, max_length=200, description="Responsible person")
    cpf: Optional[str] = Field(None, description="CPF of the responsible person, digits only")
    phone: Optional[str] = Field(None, max_length=30, description="Contact phone")
    address: Optional[str] = Field(None, max_length=500, description="Street address")
    members_count: int = Field(default=1, ge=1, description="Number of people in the household")

    is_blocked: bool = Field(default=False, description="Block flag set by the last delivery")
    blocked_until: Optional[datetime] = Field(None, description="Block expiry")
    blocked_by_institution_id: Optional[str] = Field(None, description="Institution that set the block")
    block_reason: Optional[str] = Field(None, max_length=500, description="Why the family is blocked")

    consent_given_at: Optional[datetime] = Field(None, description="Digital LGPD consent timestamp")
    consent_term_id: Optional[str] = Field(None, description="Printed consent term identifier")
    consent_term_signed: bool = Field(default=False, description="Whether the printed term was signed")
    consent_revoked_at: Optional[datetime] = Field(None, description="Consent revocation timestamp")
    consent_revocation_reason: Optional[str] = Field(None, description="Reason given for revocation")

    @field_validator('name', 'contact_person')
    @classmethod
    def validate_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Value cannot be empty')
        return v.strip()

    @field_validator('cpf')
    @classmethod
    def validate_cpf_digits(cls, v):
        """Store CPF as digits and reject invalid check digits."""
        if v is None or not v.strip():
            return None
        digits = only_digits(v)
        if not validate_cpf(digits):
            raise ValueError('Invalid CPF')
        return digits

    @model_validator(mode='after')
    def validate_block_fields(self):
        """A blocked family always carries an expiry."""
        if self.is_blocked and self.blocked_until is None:
            raise ValueError('blocked_until is required when is_blocked is set')
        return self

    def has_valid_consent(self) -> bool:
        """Consent holds while not revoked and either given digitally or signed on paper."""
        if self.consent_revoked_at is not None:
            return False
        return self.consent_given_at is not None or self.consent_term_signed


class InstitutionFamily(BaseModel):
    """Association row binding one family to one institution."""

    id: str = Field(default_factory=generate_object_id)
    institution_id: str = Field(..., description="Serving institution")
    family_id: str = Field(..., description="Served family")
    created_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = Field(None)


class DeliveryItem(BaseModel):
    """Product handed out as part of a delivery."""

    product_id: str = Field(..., description="Product identifier")
    quantity: float = Field(..., gt=0, description="Quantity delivered")

    @field_validator('quantity')
    @classmethod
    def round_quantity(cls, v):
        return round(v, 2)


class Delivery(BaseEntity):
    """A basket handed to a family. Only ``notes`` may change after creation."""

    family_id: str = Field(..., description="Receiving family")
    institution_id: str = Field(..., description="Delivering institution")
    delivery_date: datetime = Field(default_factory=utcnow, description="When the basket was handed over")
    blocking_period_days: BlockingPeriod = Field(default=BlockingPeriod.THIRTY, description="Days the family stays blocked")
    notes: Optional[str] = Field(None, max_length=1000, description="Free-text notes")
    delivered_by_user_id: Optional[str] = Field(None, description="User who recorded the delivery")
    items: List[DeliveryItem] = Field(default_factory=list, description="Products taken from stock")
    fraud_justification: Optional[str] = Field(None, description="Justification for overriding another institution's block")
    overridden_institution_id: Optional[str] = Field(None, description="Institution whose active block was overridden")
    receipt_id: Optional[str] = Field(None, description="Generated receipt reference")


class Product(BaseEntity):
    """Catalogue product. Removal deactivates it."""

    name: str = Field(..., min_length=1, max_length=200, description="Product name")
    unit: str = Field(default="unidade", max_length=30, description="Unit of measure")
    description: Optional[str] = Field(None, max_length=1000)
    is_active: bool = Field(default=True)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError('Product name cannot be empty')
        return v.strip()


class Supplier(BaseEntity):
    """Stock supplier identified by CPF (PF) or CNPJ (PJ)."""

    name: str = Field(..., min_length=1, max_length=200)
    document_type: DocumentType = Field(default=DocumentType.PJ)
    document_number: Optional[str] = Field(None, description="CPF or CNPJ, digits only")
    contact_name: Optional[str] = Field(None, max_length=200)
    contact_phone: Optional[str] = Field(None, max_length=30)
    contact_email: Optional[str] = Field(None)
    address: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator('contact_email')
    @classmethod
    def validate_email(cls, v):
        if not v:
            return None
        return _validate_email(v)

    @field_validator('document_number')
    @classmethod
    def validate_document_number(cls, v, info: ValidationInfo):
        """Check CPF/CNPJ digits against the declared document type."""
        if v is None or not v.strip():
            return None
        document_type = info.data.get('document_type', DocumentType.PJ)
        digits = only_digits(v)
        if not validate_document(digits, document_type):
            raise ValueError(f'Invalid document number for type {document_type}')
        return digits


class StockMovement(BaseEntity):
    """Single stock in/out transaction for a product at an institution."""

    institution_id: str = Field(...)
    product_id: str = Field(...)
    movement_type: MovementType = Field(...)
    quantity: float = Field(..., gt=0)
    supplier_id: Optional[str] = Field(None, description="Supplier, for entries")
    delivery_id: Optional[str] = Field(None, description="Delivery that consumed the stock, for exits")
    movement_date: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = Field(None, max_length=1000)
    created_by_user_id: Optional[str] = Field(None)

    @field_validator('quantity')
    @classmethod
    def round_quantity(cls, v):
        return round(v, 2)


class InventoryItem(BaseModel):
    """Derived on-hand quantity per (institution, product)."""

    id: str = Field(default_factory=generate_object_id)
    institution_id: str = Field(...)
    product_id: str = Field(...)
    quantity: float = Field(default=0.0, ge=0)
    last_movement_date: Optional[datetime] = Field(None)
    product_name: Optional[str] = Field(None)
    unit: Optional[str] = Field(None)


class Receipt(BaseModel):
    """Reference to a generated receipt document."""

    id: str = Field(default_factory=generate_object_id)
    receipt_type: ReceiptType = Field(...)
    institution_id: str = Field(...)
    reference_id: str = Field(..., description="Delivery or stock movement identifier")
    transaction_id: Optional[str] = Field(None, description="Human sequence such as 001/2025")
    generated_by_user_id: Optional[str] = Field(None)
    generated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=True)


class AuditLog(BaseModel):
    """Audit log entry for compliance and accountability."""

    id: str = Field(default_factory=generate_object_id, description="Unique identifier")
    timestamp: datetime = Field(default_factory=utcnow, description="Action timestamp")
    user_id: str = Field(..., description="User who performed the action")
    institution_id: Optional[str] = Field(None, description="Institution the user acted for")
    entity: str = Field(..., description="Entity type")
    entity_id: str = Field(..., description="Entity identifier")
    action: str = Field(..., description="Action performed")
    before: Optional[Dict[str, Any]] = Field(None, description="State before action")
    after: Optional[Dict[str, Any]] = Field(None, description="State after action")
    ip_address: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="Client user agent")
    trace_id: Optional[str] = Field(None, description="OpenTelemetry trace ID")
    span_id: Optional[str] = Field(None, description="OpenTelemetry span ID")
    schema_version: int = Field(default=1, description="Schema version")

    model_config = ConfigDict(
        use_enum_values=True
    )

    @field_validator('entity')
    @classmethod
    def validate_entity(cls, v):
        valid_entities = [
            'institution', 'user', 'family', 'institution_family', 'delivery',
            'product', 'supplier', 'stock_movement', 'receipt'
        ]
        if v not in valid_entities:
            raise ValueError(f'Invalid entity type: {v}')
        return v

    @field_validator('action')
    @classmethod
    def validate_action(cls, v):
        valid_actions = [
            'create', 'update', 'delete', 'link', 'unlink', 'fraud_override',
            'consent_give', 'consent_revoke', 'compensate',
            'login', 'logout', 'export'
        ]
        if v not in valid_actions:
            raise ValueError(f'Invalid action type: {v}')
        return v


class UserContext(BaseModel):
    """User context for request processing with authentication and authorization data."""

    user_id: str = Field(..., description="Authenticated user ID")
    role: UserRole = Field(..., description="Account role")
    institution_id: Optional[str] = Field(None, description="Institution bound to the account")
    email: Optional[str] = Field(None, description="User email")
    name: Optional[str] = Field(None, description="User display name")
    permissions: List[str] = Field(default_factory=list, description="User's effective permissions")
    token_payload: Optional[Dict[str, Any]] = Field(None, description="Original JWT payload")
    ip_address: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="Client user agent")
    session_id: Optional[str] = Field(None, description="Session identifier")

    model_config = ConfigDict(
        use_enum_values=True
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def has_permission(self, permission: str) -> bool:
        """Check if user has a specific permission."""
        return permission in self.permissions

    def has_any_permission(self, permissions: List[str]) -> bool:
        """Check if user has any of the specified permissions."""
        return any(perm in self.permissions for perm in permissions)

    def can_act_for(self, institution_id: Optional[str]) -> bool:
        """Admins act for any institution; institution users only for their own."""
        if self.is_admin:
            return True
        return institution_id is not None and institution_id == self.institution_id
