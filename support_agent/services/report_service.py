"""
Daily activity report for the support mailbox.
Aggregates one UTC day of agent_activity rows and emails a plain-text
summary to the admin address.
"""

from collections import Counter
from datetime import date
from typing import Any, Protocol

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import ActivityRecord

logger = get_logger(__name__)

AUTOMATED_TYPES = ("refund_processed", "help_provided", "info_provided")
RUN_TYPES = AUTOMATED_TYPES + ("escalated", "processing_failed", "processing_timed_out")
TOP_REASONS = 5


class ActivitySource(Protocol):
    async def daily_activity(self, day: date) -> list[ActivityRecord]: ...


class ReportMailer(Protocol):
    async def send(self, to: str, subject: str, body: str, in_reply_to=None) -> str: ...


class ReportService:
    def __init__(self, activity: ActivitySource, mailer: ReportMailer, admin_email: str):
        self._activity = activity
        self._mailer = mailer
        self._admin_email = admin_email

    async def build_daily_report(self, day: date) -> dict[str, Any]:
        """
        Summarize a day's activity.

        Raises:
            DatabaseError: If the activity rows cannot be read
        """
        records = await self._activity.daily_activity(day)
        counts = Counter(record.activity_type for record in records)

        total_runs = sum(counts[activity_type] for activity_type in RUN_TYPES)
        automated = sum(counts[activity_type] for activity_type in AUTOMATED_TYPES)
        automation_rate = round(automated / total_runs * 100, 1) if total_runs else 0.0

        reasons = Counter(
            reason
            for record in records
            if record.activity_type == "escalated"
            for reason in record.details.get("reasons", [])
        )
        refunded = sum(
            int(record.details.get("amount", 0))
            for record in records
            if record.activity_type == "refund_processed"
        )

        report = {
            "date": day.isoformat(),
            "summary": {
                "total_runs": total_runs,
                "refunds_processed": counts["refund_processed"],
                "help_provided": counts["help_provided"],
                "info_provided": counts["info_provided"],
                "escalated": counts["escalated"],
                "failed": counts["processing_failed"] + counts["processing_timed_out"],
                "ignored": counts["ignored"],
                "automation_rate": automation_rate,
            },
            "refunded_amount": refunded,
            "top_escalation_reasons": reasons.most_common(TOP_REASONS),
            "activity_counts": dict(counts),
        }

        logger.info("Daily report built", date=report["date"], total_runs=total_runs)
        return report

    async def send_daily_report(self, day: date) -> dict[str, Any]:
        """Build the report and email it to the admin address."""
        report = await self.build_daily_report(day)
        await self._mailer.send(
            self._admin_email,
            f"Support Agent Daily Report - {report['date']}",
            format_report(report),
        )
        logger.info("Daily report sent", date=report["date"])
        return report


def format_report(report: dict[str, Any]) -> str:
    summary = report["summary"]
    lines = [
        "Support Agent Daily Report",
        f"Date: {report['date']}",
        "",
        "SUMMARY",
        f"Total runs: {summary['total_runs']}",
        f"Refunds processed: {summary['refunds_processed']}",
        f"Help responses: {summary['help_provided']}",
        f"Info responses: {summary['info_provided']}",
        f"Escalated: {summary['escalated']}",
        f"Failed: {summary['failed']}",
        f"Ignored (automated senders): {summary['ignored']}",
        f"Automation rate: {summary['automation_rate']}%",
        "",
        f"Refunded total: {report['refunded_amount'] / 100:.2f}",
    ]

    if report["top_escalation_reasons"]:
        lines += ["", "TOP ESCALATION REASONS"]
        lines += [f"- {reason} ({count})" for reason, count in report["top_escalation_reasons"]]

    return "\n".join(lines)
