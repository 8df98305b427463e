# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Audit trail for family, delivery, stock and account changes.

Every entry records who acted, for which institution, on what and the
before/after snapshots, stamped with the active trace so an entry can be
matched to the request that produced it.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, Optional, Any
from opentelemetry import trace
from pymongo import DESCENDING

from .mongodb import MongoDBService, PaginationResult, to_document
from models.entities import AuditLog, UserContext

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

AUDIT_LOGS = "audit_logs"

# Filter attribute -> document field
_EXACT_MATCH_FIELDS = {
    "user_id": "userId",
    "entity": "entity",
    "entity_id": "entityId",
    "action": "action",
}


@dataclass
class AuditFilters:
    """Criteria for browsing the audit trail. Unset criteria match everything."""

    user_id: Optional[str] = None
    entity: Optional[str] = None
    action: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    entity_id: Optional[str] = None

    def to_mongo_query(self) -> Dict[str, Any]:
        query = {
            field: getattr(self, attr)
            for attr, field in _EXACT_MATCH_FIELDS.items()
            if getattr(self, attr)
        }

        window = {}
        if self.start_date:
            window["$gte"] = self.start_date
        if self.end_date:
            window["$lt"] = self.end_date
        if window:
            query["timestamp"] = window

        return query

    def active_count(self) -> int:
        return sum(1 for f in fields(self) if getattr(self, f.name) is not None)


def count_changed_fields(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> int:
    """Number of top-level keys whose value differs between two snapshots."""
    if not before or not after:
        return 0
    return sum(1 for key in set(before) | set(after) if before.get(key) != after.get(key))


class AuditService:
    """Writes and reads the ``audit_logs`` collection."""

    def __init__(self, mongo_service: MongoDBService):
        self.mongo_service = mongo_service

    def _stamp_trace(self, entry: AuditLog) -> None:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            entry.trace_id = format(context.trace_id, "032x")
            entry.span_id = format(context.span_id, "016x")

    def log_action(
        self,
        user_context: UserContext,
        entity: str,
        entity_id: str,
        action: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Persist one audit entry and return its id.

        Failures are logged and re-raised so the caller's operation fails
        with them rather than going unrecorded.
        """
        with tracer.start_as_current_span(
            "audit.log_action",
            attributes={
                "audit.entity": entity,
                "audit.action": action,
                "audit.entity_id": entity_id,
                "user.id": user_context.user_id
            }
        ) as span:
            entry = AuditLog(
                user_id=user_context.user_id,
                institution_id=user_context.institution_id,
                entity=entity,
                entity_id=entity_id,
                action=action,
                before=before,
                after=after,
                ip_address=user_context.ip_address,
                user_agent=user_context.user_agent
            )
            self._stamp_trace(entry)

            try:
                audit_id = self.mongo_service.create(
                    AUDIT_LOGS, to_document(entry.model_dump()), user_context.user_id, doc_id=entry.id
                )
            except Exception as e:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                logger.error(
                    f"Could not record {action} on {entity} {entity_id}",
                    extra={"user_id": user_context.user_id, "error": str(e)},
                    exc_info=True
                )
                raise

            logger.info(
                f"Audit: {action} {entity} {entity_id}",
                extra={
                    "audit_id": audit_id,
                    "user_id": user_context.user_id,
                    "institution_id": user_context.institution_id,
                    "trace_id": entry.trace_id,
                    "changes_count": count_changed_fields(before, after)
                }
            )
            return audit_id

    def query_audit_logs(
        self,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        page_size: int = 50
    ) -> PaginationResult:
        """Paginated audit entries, newest first."""
        filters = filters or AuditFilters()
        with tracer.start_as_current_span(
            "audit.query_logs",
            attributes={"audit.page": page, "audit.page_size": page_size, "audit.filters": filters.active_count()}
        ):
            return self.mongo_service.paginate(
                AUDIT_LOGS,
                page=page,
                page_size=page_size,
                filters=filters.to_mongo_query(),
                sort_by="timestamp",
                sort_order=DESCENDING
            )
