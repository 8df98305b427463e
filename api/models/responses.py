# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Response models for API endpoints.

Routes build these from entities and hand the resulting dict to the HAL
builder, which adds ``_links``/``_embedded``.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime


class HalLink(BaseModel):
    """HAL link representation."""

    href: str = Field(..., description="Link URL")
    method: Optional[str] = Field(None, description="HTTP method")
    type: Optional[str] = Field(None, description="Content type")
    title: Optional[str] = Field(None, description="Link title")
    templated: Optional[bool] = Field(None, description="Whether URL is templated")


class _ResponseModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True, extra="ignore")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class InstitutionResponse(_ResponseModel):
    id: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    responsible_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UserResponse(_ResponseModel):
    """User response model (without sensitive data)."""

    id: str
    email: str
    name: str
    role: str
    institution_id: Optional[str] = None
    status: str
    last_login: Optional[datetime] = None


class FamilyResponse(_ResponseModel):
    id: str
    name: str
    contact_person: str
    cpf: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    members_count: int
    is_blocked: bool
    blocked_until: Optional[datetime] = None
    blocked_by_institution_id: Optional[str] = None
    block_reason: Optional[str] = None
    block_active: bool = Field(False, description="Block evaluated against the current time")
    has_valid_consent: bool = False
    consent_given_at: Optional[datetime] = None
    consent_revoked_at: Optional[datetime] = None
    institution_id: Optional[str] = Field(None, description="Associated institution, if any")
    created_at: datetime
    updated_at: datetime


class FamilySearchResponse(_ResponseModel):
    """Result of a CPF lookup."""

    scenario: str
    family: Optional[FamilyResponse] = None
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None


class DeliveryResponse(_ResponseModel):
    id: str
    family_id: str
    institution_id: str
    delivery_date: datetime
    blocking_period_days: int
    notes: Optional[str] = None
    delivered_by_user_id: Optional[str] = None
    items: List[Dict[str, Any]] = Field(default_factory=list)
    fraud_justification: Optional[str] = None
    overridden_institution_id: Optional[str] = None
    receipt_id: Optional[str] = None
    family_name: Optional[str] = None
    institution_name: Optional[str] = None
    created_at: datetime


class ProductResponse(_ResponseModel):
    id: str
    name: str
    unit: str
    description: Optional[str] = None
    is_active: bool


class SupplierResponse(_ResponseModel):
    id: str
    name: str
    document_type: str
    document_number: Optional[str] = None
    document_formatted: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None


class StockMovementResponse(_ResponseModel):
    id: str
    institution_id: str
    product_id: str
    movement_type: str
    quantity: float
    supplier_id: Optional[str] = None
    delivery_id: Optional[str] = None
    movement_date: datetime
    notes: Optional[str] = None
    created_by_user_id: Optional[str] = None


class InventoryItemResponse(_ResponseModel):
    institution_id: str
    product_id: str
    product_name: Optional[str] = None
    unit: Optional[str] = None
    quantity: float
    last_movement_date: Optional[datetime] = None


class ReceiptResponse(_ResponseModel):
    id: str
    receipt_type: str
    institution_id: str
    reference_id: str
    transaction_id: Optional[str] = None
    generated_by_user_id: Optional[str] = None
    generated_at: datetime


class AlertResponse(_ResponseModel):
    alert_type: str
    severity: str
    family_id: str
    family_name: Optional[str] = None
    message: str
    institution_ids: List[str] = Field(default_factory=list)


class AuthTokenResponse(_ResponseModel):
    """Authentication token response."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


class ErrorResponse(BaseModel):
    """Error response model following RFC 7807."""

    type: str = Field(..., description="Error type URI")
    title: str = Field(..., description="Error title")
    status: int = Field(..., description="HTTP status code")
    detail: str = Field(..., description="Error detail")
    instance: str = Field(..., description="Request instance")
    code: Optional[str] = Field(None, description="Business rule tag")
    errors: Optional[List[Dict[str, Any]]] = Field(None, description="Validation errors")
