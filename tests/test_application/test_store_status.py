"""
Tests for StoreStatusQuery
"""
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy.exc import ProgrammingError

from conftest import HOLDINGS_PATH, TEST_IDENTITY

from finsync.application.orchestrator import PipelineOrchestrator, SyncTarget
from finsync.application.store_status import StoreStatusQuery
from finsync.application.users import CreateOrUpdateUserUseCase
from finsync.infrastructure.audit.repository import AuditCallRepository


def _by_table(result):
    return {row["table"]: row for row in result["tables"]}


def test_empty_store(db_session):
    result = StoreStatusQuery(db_session).execute()

    assert result["summary"] == {"populated": 0, "empty": 10, "errors": 0, "total": 10}
    assert all(row["status"] == "EMPTY" for row in result["tables"])
    assert result["recentCalls"] == []


def test_counts_after_sync(db_session, proxy):
    PipelineOrchestrator(db_session, proxy).run(
        SyncTarget(identity=TEST_IDENTITY, endpoint=HOLDINGS_PATH, fi_type="DEPOSIT")
    )

    result = StoreStatusQuery(db_session).execute()
    tables = _by_table(result)

    assert tables["users"] == {"table": "users", "layer": "A", "status": "OK", "rows": 1}
    assert tables["accounts"]["rows"] == 2
    assert tables["accounts"]["layer"] == "B"
    assert tables["deposit_summaries"]["rows"] == 2
    assert tables["portfolio_snapshots"]["layer"] == "C"
    assert tables["insights"]["status"] == "EMPTY"

    [call] = result["recentCalls"]
    assert call["endpoint"] == HOLDINGS_PATH
    assert call["httpStatus"] == 200
    assert call["calledAt"].endswith("+00:00")


def test_unreadable_table_is_reported(db_session):
    original_query = db_session.query

    def flaky_query(model, *args, **kwargs):
        if getattr(model, "__tablename__", None) == "insights":
            raise ProgrammingError("SELECT count(*) FROM insights", {}, Exception("relation does not exist"))
        return original_query(model, *args, **kwargs)

    with patch.object(db_session, "query", side_effect=flaky_query):
        result = StoreStatusQuery(db_session).execute()

    tables = _by_table(result)
    assert tables["insights"]["status"] == "ERROR"
    assert tables["insights"]["rows"] is None
    assert result["summary"]["errors"] == 1
    assert tables["users"]["status"] == "EMPTY"


def test_recent_calls_newest_first(db_session):
    user = CreateOrUpdateUserUseCase(db_session).execute(TEST_IDENTITY)
    repo = AuditCallRepository(db_session)
    for index in range(7):
        repo.append_call(
            user.id, f"/pfm/api/v2/call-{index}", "POST", {}, {}, 200, 10,
            called_at=datetime(2025, 1, 1, 9, index, tzinfo=timezone.utc),
        )
    db_session.commit()

    calls = StoreStatusQuery(db_session).execute()["recentCalls"]

    assert [call["endpoint"] for call in calls] == [f"/pfm/api/v2/call-{index}" for index in (6, 5, 4, 3, 2)]
    assert calls[0]["calledAt"] == "2025-01-01T09:06:00+00:00"


def test_unreadable_audit_table_hides_recent_calls(db_session):
    original_query = db_session.query

    def flaky_query(model, *args, **kwargs):
        if getattr(model, "__tablename__", None) == "audit_calls":
            raise ProgrammingError("SELECT FROM audit_calls", {}, Exception("permission denied"))
        return original_query(model, *args, **kwargs)

    with patch.object(db_session, "query", side_effect=flaky_query):
        result = StoreStatusQuery(db_session).execute()

    assert _by_table(result)["audit_calls"]["status"] == "ERROR"
    assert result["recentCalls"] is None
