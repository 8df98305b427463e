# SPDX-License-Identifier: Apache-2.0

"""
Inventory ledger rules for stock entries (ENTRADA) and exits (SAIDA).
"""

from dataclasses import dataclass, field
from typing import List, Optional

from models.enums import MovementType, ReceiptType

INSUFFICIENT_STOCK_TAG = "INSUFFICIENT_STOCK"


@dataclass
class ValidationResult:
    """Result of stock movement validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    insufficient_stock: bool = False


def format_quantity(value: float) -> str:
    """Render quantities without a trailing ``.0`` for whole numbers."""
    value = round(float(value), 2)
    if value == int(value):
        return str(int(value))
    return f"{value:.2f}"


def insufficient_stock_message(available: float, requested: float) -> str:
    return (
        f"Estoque insuficiente. Quantidade disponível: {format_quantity(available)}, "
        f"quantidade solicitada: {format_quantity(requested)}"
    )


def validate_stock_movement(
    movement_type: str,
    quantity: float,
    available: Optional[float]
) -> ValidationResult:
    """
    Validate a movement against the on-hand quantity.

    A missing inventory row counts as zero. Entries always pass once the
    quantity is positive; exits fail when more is requested than is on hand.
    """
    errors = []

    if quantity is None or quantity <= 0:
        errors.append("Quantity must be greater than zero")
        return ValidationResult(is_valid=False, errors=errors)

    if movement_type not in (MovementType.ENTRADA, MovementType.SAIDA):
        errors.append(f"Invalid movement type: {movement_type}")
        return ValidationResult(is_valid=False, errors=errors)

    if movement_type == MovementType.SAIDA:
        on_hand = round(available or 0.0, 2)
        if round(quantity, 2) > on_hand:
            errors.append(insufficient_stock_message(on_hand, quantity))
            return ValidationResult(is_valid=False, errors=errors, insufficient_stock=True)

    return ValidationResult(is_valid=not errors, errors=errors)


def exit_notes(destination: Optional[str], notes: Optional[str]) -> Optional[str]:
    """Exit destination is stored ahead of the notes as ``"destination | notes"``."""
    destination = (destination or "").strip()
    notes = (notes or "").strip()
    if destination and notes:
        return f"{destination} | {notes}"
    return destination or notes or None


def signed_quantity(movement_type: str, quantity: float) -> float:
    return quantity if movement_type == MovementType.ENTRADA else -quantity


def receipt_type_for(movement_type: str) -> ReceiptType:
    return ReceiptType.STOCK_ENTRY if movement_type == MovementType.ENTRADA else ReceiptType.STOCK_EXIT
