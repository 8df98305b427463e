# SPDX-License-Identifier: Apache-2.0

"""
Receipt numbering.
"""

from datetime import datetime
from typing import Any, Dict, List

_EPOCH = datetime.min


def _sort_key(delivery: Dict[str, Any]):
    return (
        delivery.get("delivery_date") or _EPOCH,
        delivery.get("created_at") or _EPOCH,
        str(delivery.get("id", ""))
    )


def delivery_transaction_id(delivery_id: str, delivery_date: datetime, year_deliveries: List[Dict[str, Any]]) -> str:
    """
    Sequence of a delivery within its calendar year, as ``NNN/YYYY``.

    ``year_deliveries`` holds ``id``, ``delivery_date`` and ``created_at`` of
    every delivery in that year. They are ordered by delivery date, then
    creation time, then id. A delivery missing from the list is numbered
    after every delivery dated on or before it.
    """
    year = delivery_date.year
    ordered = sorted(year_deliveries, key=_sort_key)

    for position, delivery in enumerate(ordered, start=1):
        if str(delivery.get("id")) == str(delivery_id):
            return f"{position:03d}/{year}"

    earlier = sum(
        1 for d in ordered
        if (d.get("delivery_date") or _EPOCH) <= delivery_date
    )
    return f"{earlier + 1:03d}/{year}"
