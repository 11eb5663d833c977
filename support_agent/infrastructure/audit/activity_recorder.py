"""
ActivityRecorder - append-only audit trail of pipeline outcomes.

Every finished run writes one row to agent_activity:

    CREATE TABLE agent_activity (
        id            BIGSERIAL PRIMARY KEY,
        activity_type TEXT        NOT NULL,
        details       JSONB       NOT NULL,
        timestamp     TIMESTAMPTZ NOT NULL
    );

Rows are never updated or deleted. Design principles:
- Write to structured logs first, then the database
- Never fail the run if the database write fails
- Daily reads feed the activity report
"""

from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from psycopg.types.json import Jsonb

from support_agent.db.helpers import execute_query, fetch_all
from support_agent.db.pool import DatabasePoolManager
from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import ActivityRecord

logger = get_logger(__name__)


class ActivityRecorder:
    """Audit sink for one support mailbox."""

    def __init__(
        self,
        pool: DatabasePoolManager,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._pool = pool
        self._clock = clock

    async def append(self, activity_type: str, details: dict[str, Any]) -> ActivityRecord:
        """
        Record one activity.

        Returns the record even when the database write failed; the failure
        is logged with enough data to recreate the row by hand.
        """
        record = ActivityRecord(activity_type=activity_type, details=details, timestamp=self._clock())

        logger.info("Activity recorded", activity_type=activity_type, details=details)

        try:
            await execute_query(
                self._pool,
                """
                INSERT INTO agent_activity (activity_type, details, timestamp)
                VALUES (%s, %s, %s)
                """,
                (activity_type, Jsonb(details), record.timestamp),
            )
        except Exception as e:
            logger.error(
                "CRITICAL: Failed to write activity to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "activity_type": activity_type,
                    "details": details,
                    "timestamp": record.timestamp.isoformat(),
                },
            )

        return record

    async def daily_activity(self, day: date) -> list[ActivityRecord]:
        """
        All activity recorded on a UTC calendar day, oldest first.

        Raises:
            DatabaseError: If the query fails
        """
        start = datetime.combine(day, time.min, tzinfo=UTC)
        rows = await fetch_all(
            self._pool,
            """
            SELECT activity_type, details, timestamp
            FROM agent_activity
            WHERE timestamp >= %s AND timestamp < %s
            ORDER BY timestamp
            """,
            (start, start + timedelta(days=1)),
        )
        return [
            ActivityRecord(
                activity_type=row["activity_type"],
                details=row.get("details") or {},
                timestamp=row["timestamp"],
            )
            for row in rows
        ]
