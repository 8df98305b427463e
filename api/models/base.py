# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Shared entity fields and time helpers.

Timestamps are kept as naive UTC datetimes throughout, which is what
pymongo hands back when reading, so stored and fresh values compare.
"""

import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo
from pydantic import BaseModel, Field, ConfigDict
from bson import ObjectId


def generate_object_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC. Naive values are assumed to be UTC already."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def local_timezone() -> ZoneInfo:
    return ZoneInfo(os.getenv("TIMEZONE", "America/Sao_Paulo"))


def local_day_bounds(day: date) -> Tuple[datetime, datetime]:
    """
    First instant of ``day`` and of the day after, in the configured
    timezone, as naive UTC.
    """
    start = datetime.combine(day, time.min, tzinfo=local_timezone())
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=local_timezone())
    return to_naive_utc(start), to_naive_utc(end)


class BaseEntity(BaseModel):
    """Identity, authorship and soft-delete fields every stored entity carries."""

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        validate_assignment=True,
        arbitrary_types_allowed=True
    )

    id: str = Field(default_factory=generate_object_id, description="Unique identifier")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")
    deleted_at: Optional[datetime] = Field(None, description="Set when the entity is soft deleted")
    created_by: str = Field(..., description="Creating user")
    updated_by: str = Field(..., description="Last updating user")
    schema_version: int = Field(default=1, description="Document schema version")

    def touch(self, user_id: str) -> None:
        self.updated_at = utcnow()
        self.updated_by = user_id

    def soft_delete(self, user_id: str) -> None:
        self.touch(user_id)
        self.deleted_at = self.updated_at

    def is_deleted(self) -> bool:
        return self.deleted_at is not None
