# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Request models for API endpoints.
"""

import re
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from .enums import BlockingPeriod, MovementType, DocumentType, ReceiptType
from .entities import DeliveryItem, EMAIL_PATTERN
from domain.documents import only_digits, validate_cpf


class _RequestModel(BaseModel):
    model_config = ConfigDict(
        use_enum_values=True,
        str_strip_whitespace=True
    )


def _cpf_digits(value: str) -> str:
    digits = only_digits(value)
    if not validate_cpf(digits):
        raise ValueError('Invalid CPF')
    return digits


class LoginRequest(_RequestModel):
    """Request model for user authentication."""

    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if not re.match(EMAIL_PATTERN, v.lower()):
            raise ValueError('Invalid email format')
        return v.lower()


class RefreshTokenRequest(_RequestModel):
    """Request model for token refresh."""

    refresh_token: str = Field(..., description="Refresh token")


class CreateInstitutionRequest(_RequestModel):
    """
    Request model for creating an institution.

    ``password`` is used for the login account provisioned together with the
    institution; the account email is the institution email.
    """

    name: str = Field(..., min_length=1, max_length=200)
    address: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = Field(None, max_length=30)
    email: str = Field(..., description="Institution email, also the login")
    responsible_name: Optional[str] = Field(None, max_length=200)
    password: str = Field(..., min_length=8, description="Password for the institution account")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if not re.match(EMAIL_PATTERN, v.lower()):
            raise ValueError('Invalid email format')
        return v.lower()

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        """Validate password strength."""
        if not any(c.isalpha() for c in v):
            raise ValueError('Password must contain at least one letter')
        if not any(c.isdigit() for c in v):
            raise ValueError('Password must contain at least one digit')
        return v


class UpdateInstitutionRequest(_RequestModel):
    """Request model for updating an institution."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    address: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = Field(None, max_length=30)
    email: Optional[str] = Field(None)
    responsible_name: Optional[str] = Field(None, max_length=200)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if v is None:
            return v
        if not re.match(EMAIL_PATTERN, v.lower()):
            raise ValueError('Invalid email format')
        return v.lower()


class CreateFamilyRequest(_RequestModel):
    """Request model for registering a family."""

    name: str = Field(..., min_length=1, max_length=200)
    contact_person: str = Field(..., min_length=1, max_length=200)
    cpf: Optional[str] = Field(None, description="CPF, formatted or digits")
    phone: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = Field(None, max_length=500)
    members_count: int = Field(default=1, ge=1)
    institution_id: Optional[str] = Field(
        None, description="Institution to link the new family to; defaults to the caller's"
    )
    consent_given: bool = Field(default=False, description="Digital LGPD consent collected at registration")

    @field_validator('cpf')
    @classmethod
    def normalise_cpf(cls, v):
        return _cpf_digits(v) if v else None


class UpdateFamilyRequest(_RequestModel):
    """Request model for updating family contact data. Block fields are not editable here."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    contact_person: Optional[str] = Field(None, min_length=1, max_length=200)
    cpf: Optional[str] = Field(None)
    phone: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = Field(None, max_length=500)
    members_count: Optional[int] = Field(None, ge=1)

    @field_validator('cpf')
    @classmethod
    def normalise_cpf(cls, v):
        return _cpf_digits(v) if v else v


class LinkFamilyRequest(_RequestModel):
    """Request model for linking a family to an institution."""

    institution_id: Optional[str] = Field(None, description="Target institution; defaults to the caller's")


class GiveConsentRequest(_RequestModel):
    """Request model for recording LGPD consent."""

    term_id: Optional[str] = Field(None, description="Printed term identifier")
    term_signed: bool = Field(default=False, description="Whether the printed term was signed")


class RevokeConsentRequest(_RequestModel):
    """Request model for revoking LGPD consent."""

    reason: Optional[str] = Field(None, max_length=500)


class CreateDeliveryRequest(_RequestModel):
    """Request model for recording a delivery."""

    family_id: str = Field(..., description="Receiving family")
    institution_id: Optional[str] = Field(None, description="Delivering institution; defaults to the caller's")
    delivery_date: Optional[datetime] = Field(None, description="Defaults to now")
    blocking_period_days: BlockingPeriod = Field(default=BlockingPeriod.THIRTY)
    notes: Optional[str] = Field(None, max_length=1000)
    items: List[DeliveryItem] = Field(default_factory=list, description="Products taken from stock")
    justification: Optional[str] = Field(
        None, max_length=1000, description="Required to override another institution's active block"
    )


class UpdateDeliveryNotesRequest(_RequestModel):
    """Notes are the only mutable part of a delivery."""

    notes: Optional[str] = Field(None, max_length=1000)


class StockMovementRequest(_RequestModel):
    """Request model for stock entries and exits."""

    product_id: str = Field(...)
    movement_type: MovementType = Field(...)
    quantity: float = Field(..., gt=0, description="Quantity, two decimal places")
    institution_id: Optional[str] = Field(None, description="Defaults to the caller's institution")
    supplier_id: Optional[str] = Field(None)
    movement_date: Optional[datetime] = Field(None)
    destination: Optional[str] = Field(None, max_length=200, description="Exit destination, stored in notes")
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator('quantity')
    @classmethod
    def round_quantity(cls, v):
        return round(v, 2)


class CreateProductRequest(_RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    unit: str = Field(default="unidade", max_length=30)
    description: Optional[str] = Field(None, max_length=1000)


class UpdateProductRequest(_RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    unit: Optional[str] = Field(None, max_length=30)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = Field(None)


class CreateSupplierRequest(_RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    document_type: DocumentType = Field(default=DocumentType.PJ)
    document_number: Optional[str] = Field(None)
    contact_name: Optional[str] = Field(None, max_length=200)
    contact_phone: Optional[str] = Field(None, max_length=30)
    contact_email: Optional[str] = Field(None)
    address: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


class UpdateSupplierRequest(_RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    document_type: Optional[DocumentType] = Field(None)
    document_number: Optional[str] = Field(None)
    contact_name: Optional[str] = Field(None, max_length=200)
    contact_phone: Optional[str] = Field(None, max_length=30)
    contact_email: Optional[str] = Field(None)
    address: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


class GenerateReceiptRequest(_RequestModel):
    receipt_type: ReceiptType = Field(...)
    reference_id: str = Field(...)


class DeliveryFilters(BaseModel):
    """Filters for delivery queries."""

    institution_id: Optional[str] = Field(None)
    family_id: Optional[str] = Field(None)
    date_from: Optional[datetime] = Field(None)
    date_to: Optional[datetime] = Field(None, description="Exclusive upper bound")


class MovementFilters(BaseModel):
    """Filters for stock movement queries."""

    product_id: Optional[str] = Field(None)
    movement_type: Optional[MovementType] = Field(None)
    date_from: Optional[datetime] = Field(None)
    date_to: Optional[datetime] = Field(None, description="Exclusive upper bound")


# Path parameters

class InstitutionPath(BaseModel):
    institution_id: str = Field(..., description="Institution ID")


class FamilyPath(BaseModel):
    family_id: str = Field(..., description="Family ID")


class FamilyInstitutionPath(BaseModel):
    family_id: str = Field(..., description="Family ID")
    institution_id: str = Field(..., description="Institution ID")


class DeliveryPath(BaseModel):
    delivery_id: str = Field(..., description="Delivery ID")


class ProductPath(BaseModel):
    product_id: str = Field(..., description="Product ID")


class SupplierPath(BaseModel):
    supplier_id: str = Field(..., description="Supplier ID")


class ReceiptPath(BaseModel):
    receipt_id: str = Field(..., description="Receipt ID")


class CpfPath(BaseModel):
    cpf: str = Field(..., description="CPF, digits or formatted")


class ReportPath(BaseModel):
    report: str = Field(..., description="deliveries, families, institutions or summary")
