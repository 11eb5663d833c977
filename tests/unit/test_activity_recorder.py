from datetime import UTC, date, datetime
from unittest.mock import AsyncMock

import pytest

from support_agent.db.helpers import DatabaseError
from support_agent.infrastructure.audit import ActivityRecorder

MODULE = "support_agent.infrastructure.audit.activity_recorder"
NOW = datetime(2024, 6, 15, 9, 30, tzinfo=UTC)


@pytest.mark.asyncio
async def test_append_inserts_row(monkeypatch):
    execute = AsyncMock(return_value=1)
    monkeypatch.setattr(f"{MODULE}.execute_query", execute)

    record = await ActivityRecorder(pool=None, clock=lambda: NOW).append(
        "help_provided", {"message_id": "msg-1"}
    )

    assert record.activity_type == "help_provided"
    assert record.timestamp == NOW
    params = execute.await_args.args[2]
    assert params[0] == "help_provided"
    assert params[2] == NOW


@pytest.mark.asyncio
async def test_append_never_raises_on_database_failure(monkeypatch):
    monkeypatch.setattr(
        f"{MODULE}.execute_query", AsyncMock(side_effect=DatabaseError("connection lost"))
    )

    record = await ActivityRecorder(pool=None, clock=lambda: NOW).append("escalated", {"x": 1})

    assert record.details == {"x": 1}


@pytest.mark.asyncio
async def test_daily_activity_queries_utc_day(monkeypatch):
    fetch = AsyncMock(
        return_value=[{"activity_type": "ignored", "details": None, "timestamp": NOW}]
    )
    monkeypatch.setattr(f"{MODULE}.fetch_all", fetch)

    records = await ActivityRecorder(pool=None).daily_activity(date(2024, 6, 15))

    assert records[0].details == {}
    start, end = fetch.await_args.args[2]
    assert start == datetime(2024, 6, 15, tzinfo=UTC)
    assert end == datetime(2024, 6, 16, tzinfo=UTC)
