# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Tests for delivery eligibility and the block a delivery places on a family.
"""

import pytest
from datetime import datetime, timedelta

from models.base import utcnow
from domain.eligibility import is_block_active, check_delivery_eligibility, JUSTIFICATION_REQUIRED_TAG
from domain.deliveries import (
    ALLOWED_BLOCKING_PERIODS,
    compute_blocked_until,
    block_reason,
    build_block_update
)


class TestBlockActive:
    """Block evaluation against the current time."""

    def test_unblocked_family(self, sample_family):
        assert is_block_active(sample_family) is False

    def test_blocked_family_in_the_future(self, blocked_family):
        assert is_block_active(blocked_family) is True

    def test_flag_left_set_after_expiry_is_ignored(self, blocked_family):
        blocked_family.blocked_until = utcnow() - timedelta(minutes=1)

        assert blocked_family.is_blocked is True
        assert is_block_active(blocked_family) is False

    def test_reference_time_is_respected(self, blocked_family):
        later = blocked_family.blocked_until + timedelta(seconds=1)

        assert is_block_active(blocked_family, now=later) is False


class TestDeliveryEligibility:
    """Eligibility decisions for a new delivery."""

    def test_unblocked_family_is_eligible(self, sample_family, institution_id):
        result = check_delivery_eligibility(sample_family, institution_id)

        assert result.eligible is True
        assert result.override is False
        assert result.requires_justification is False

    def test_blocking_institution_may_deliver_again(self, blocked_family, other_institution_id):
        result = check_delivery_eligibility(blocked_family, other_institution_id)

        assert result.eligible is True
        assert result.override is False

    def test_other_institution_needs_justification(self, blocked_family, institution_id):
        result = check_delivery_eligibility(blocked_family, institution_id)

        assert result.eligible is False
        assert result.requires_justification is True
        assert result.reason.startswith(JUSTIFICATION_REQUIRED_TAG)
        assert blocked_family.blocked_until.strftime("%d/%m/%Y") in result.reason

    @pytest.mark.parametrize("justification", ["", "   ", None])
    def test_blank_justification_does_not_override(self, blocked_family, institution_id, justification):
        result = check_delivery_eligibility(blocked_family, institution_id, justification)

        assert result.eligible is False
        assert result.requires_justification is True

    def test_justification_overrides_block(self, blocked_family, institution_id):
        result = check_delivery_eligibility(
            blocked_family, institution_id, "  Família em situação de emergência  "
        )

        assert result.eligible is True
        assert result.override is True
        assert result.justification == "Família em situação de emergência"

    def test_expired_block_needs_no_justification(self, blocked_family, institution_id):
        now = blocked_family.blocked_until + timedelta(days=1)

        result = check_delivery_eligibility(blocked_family, institution_id, now=now)

        assert result.eligible is True
        assert result.override is False


class TestBlockingPeriods:
    """Blocked-until computation for the allowed periods."""

    def test_allowed_periods(self):
        assert ALLOWED_BLOCKING_PERIODS == (15, 30, 45, 60, 90)

    @pytest.mark.parametrize("days", [15, 30, 45, 60, 90])
    def test_blocked_until_is_date_plus_period(self, days):
        delivery_date = datetime(2025, 3, 10, 14, 30)

        assert compute_blocked_until(delivery_date, days) == delivery_date + timedelta(days=days)

    @pytest.mark.parametrize("days", [0, 7, 31, 120])
    def test_other_periods_are_rejected(self, days):
        with pytest.raises(ValueError, match="Invalid blocking period"):
            compute_blocked_until(datetime(2025, 3, 10), days)

    def test_block_reason_mentions_period_and_institution(self):
        assert block_reason(45) == "Cesta básica entregue - bloqueio de 45 dias"
        assert block_reason(15, "Casa do Pão").endswith("(Casa do Pão)")

    def test_block_update_fields(self, institution_id):
        delivery_date = datetime(2025, 1, 31, 9, 0)

        update = build_block_update(delivery_date, 30, institution_id, "user-1", "Casa do Pão")

        assert update["isBlocked"] is True
        assert update["blockedUntil"] == datetime(2025, 3, 2, 9, 0)
        assert update["blockedByInstitutionId"] == institution_id
        assert "30 dias" in update["blockReason"]
        assert update["updatedBy"] == "user-1"
