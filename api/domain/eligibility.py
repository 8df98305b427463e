# SPDX-License-Identifier: Apache-2.0

"""
Delivery eligibility rules.

A family's block is two nullable fields re-evaluated on every call; there is
no stored state machine and no job that clears expired blocks.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models.base import utcnow
from models.entities import Family

JUSTIFICATION_REQUIRED_TAG = "BLOCKING_JUSTIFICATION_REQUIRED"


@dataclass
class EligibilityResult:
    """Outcome of an eligibility check."""
    eligible: bool
    requires_justification: bool = False
    override: bool = False
    reason: Optional[str] = None
    justification: Optional[str] = None


def is_block_active(family: Family, now: Optional[datetime] = None) -> bool:
    """
    True while the family is flagged as blocked and the expiry is in the future.

    A flag left set after ``blocked_until`` has passed does not count.
    """
    if not family.is_blocked or family.blocked_until is None:
        return False
    return family.blocked_until > (now or utcnow())


def check_delivery_eligibility(
    family: Family,
    institution_id: str,
    justification: Optional[str] = None,
    now: Optional[datetime] = None
) -> EligibilityResult:
    """
    Decide whether ``institution_id`` may record a new delivery for ``family``.

    Args:
        family: Family as currently stored
        institution_id: Institution attempting the delivery
        justification: Free text supplied to override another institution's block
        now: Reference time, defaults to the current UTC time

    Returns:
        EligibilityResult; ``override`` is set when the delivery goes through
        only because a justification was given.
    """
    if not is_block_active(family, now):
        return EligibilityResult(eligible=True)

    if family.blocked_by_institution_id == institution_id:
        return EligibilityResult(eligible=True, reason="Repeat delivery by the blocking institution")

    cleaned = (justification or "").strip()
    if not cleaned:
        until = family.blocked_until.strftime("%d/%m/%Y")
        return EligibilityResult(
            eligible=False,
            requires_justification=True,
            reason=(
                f"{JUSTIFICATION_REQUIRED_TAG}: family is blocked by another "
                f"institution until {until}; a justification is required"
            )
        )

    return EligibilityResult(
        eligible=True,
        override=True,
        reason="Blocked by another institution, overridden with justification",
        justification=cleaned
    )
