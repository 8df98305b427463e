# SPDX-License-Identifier: Apache-2.0

"""
Delivery recording rules: the block a delivery places on a family.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from models.base import utcnow
from models.enums import BlockingPeriod

ALLOWED_BLOCKING_PERIODS = tuple(p.value for p in BlockingPeriod)


def compute_blocked_until(delivery_date: datetime, blocking_period_days: int) -> datetime:
    """Block expiry is exactly ``blocking_period_days`` days after the delivery."""
    if int(blocking_period_days) not in ALLOWED_BLOCKING_PERIODS:
        raise ValueError(
            f"Invalid blocking period {blocking_period_days}; "
            f"allowed: {', '.join(str(p) for p in ALLOWED_BLOCKING_PERIODS)}"
        )
    return delivery_date + timedelta(days=int(blocking_period_days))


def block_reason(blocking_period_days: int, institution_name: Optional[str] = None) -> str:
    reason = f"Cesta básica entregue - bloqueio de {int(blocking_period_days)} dias"
    if institution_name:
        reason += f" ({institution_name})"
    return reason


def build_block_update(
    delivery_date: datetime,
    blocking_period_days: int,
    institution_id: str,
    updated_by: str,
    institution_name: Optional[str] = None
) -> Dict[str, Any]:
    """Family document fields written after a delivery."""
    return {
        "isBlocked": True,
        "blockedUntil": compute_blocked_until(delivery_date, blocking_period_days),
        "blockedByInstitutionId": institution_id,
        "blockReason": block_reason(blocking_period_days, institution_name),
        "updatedAt": utcnow(),
        "updatedBy": updated_by
    }
