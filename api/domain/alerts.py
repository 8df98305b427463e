# SPDX-License-Identifier: Apache-2.0

"""
Dashboard alerts derived from recent deliveries and family block state.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from models.base import utcnow
from models.enums import AlertType, AlertSeverity

FRAUD_WINDOW_DAYS = 30


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    family_id: str
    message: str
    family_name: Optional[str] = None
    institution_ids: List[str] = field(default_factory=list)


def detect_multi_institution_deliveries(
    deliveries: Iterable[Dict[str, Any]],
    family_names: Dict[str, str],
    now: Optional[datetime] = None
) -> List[Alert]:
    """Families served by more than one institution inside the fraud window."""
    since = (now or utcnow()) - timedelta(days=FRAUD_WINDOW_DAYS)
    institutions_by_family = defaultdict(set)

    for delivery in deliveries:
        delivery_date = delivery.get("delivery_date")
        if delivery_date is None or delivery_date < since:
            continue
        institutions_by_family[delivery["family_id"]].add(delivery["institution_id"])

    alerts = []
    for family_id, institution_ids in institutions_by_family.items():
        if len(institution_ids) > 1:
            name = family_names.get(family_id)
            alerts.append(Alert(
                alert_type=AlertType.FRAUD,
                severity=AlertSeverity.HIGH,
                family_id=family_id,
                family_name=name,
                institution_ids=sorted(institution_ids),
                message=(
                    f"Família {name or family_id} recebeu cestas de "
                    f"{len(institution_ids)} instituições nos últimos {FRAUD_WINDOW_DAYS} dias"
                )
            ))
    return alerts


def detect_expired_blocks(families: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> List[Alert]:
    """Families still flagged as blocked although the expiry has passed."""
    now = now or utcnow()
    alerts = []
    for family in families:
        blocked_until = family.get("blocked_until")
        if family.get("is_blocked") and blocked_until is not None and blocked_until < now:
            alerts.append(Alert(
                alert_type=AlertType.EXPIRED_BLOCK,
                severity=AlertSeverity.LOW,
                family_id=family["id"],
                family_name=family.get("name"),
                message=f"Bloqueio da família {family.get('name', family['id'])} expirou"
            ))
    return alerts
