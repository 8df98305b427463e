# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for the audit trail.
"""

import pytest
from datetime import datetime, timezone
from pymongo import DESCENDING

from services.audit import AuditService, AuditFilters, AUDIT_LOGS, count_changed_fields


@pytest.fixture
def audit_service(mock_mongo):
    return AuditService(mock_mongo)


class TestLogAction:

    def test_persists_camel_case_entry(self, audit_service, mock_mongo, institution_context):
        audit_id = audit_service.log_action(
            institution_context, "family", "f1", "update",
            before={"address": "Rua A"}, after={"address": "Rua B"}
        )

        collection, document, user_id = mock_mongo.create.call_args.args
        assert collection == AUDIT_LOGS
        assert user_id == institution_context.user_id
        assert audit_id == mock_mongo.create.call_args.kwargs['doc_id']
        assert document['entityId'] == "f1"
        assert document['institutionId'] == institution_context.institution_id
        assert document['before'] == {"address": "Rua A"}
        assert "id" not in document

    def test_storage_failure_propagates(self, audit_service, mock_mongo, admin_context):
        mock_mongo.create.side_effect = RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            audit_service.log_action(admin_context, "delivery", "d1", "create")


class TestQuery:

    def test_filters_become_mongo_query(self):
        start = datetime(2025, 3, 1, tzinfo=timezone.utc)
        filters = AuditFilters(user_id="u1", action="fraud_override", start_date=start)

        assert filters.to_mongo_query() == {
            "userId": "u1",
            "action": "fraud_override",
            "timestamp": {"$gte": start}
        }
        assert filters.active_count() == 3

    def test_no_filters_match_everything(self, audit_service, mock_mongo):
        audit_service.query_audit_logs(page=2, page_size=10)

        kwargs = mock_mongo.paginate.call_args.kwargs
        assert mock_mongo.paginate.call_args.args == (AUDIT_LOGS,)
        assert kwargs['filters'] == {}
        assert kwargs['page'] == 2
        assert kwargs['sort_by'] == "timestamp"
        assert kwargs['sort_order'] == DESCENDING


def test_count_changed_fields():
    assert count_changed_fields({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == 2
    assert count_changed_fields(None, {"a": 1}) == 0
