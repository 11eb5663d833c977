from datetime import date

import pytest

from support_agent.services.report_service import ReportService, format_report


async def _seed(recorder):
    await recorder.append("refund_processed", {"amount": 49900})
    await recorder.append("help_provided", {})
    await recorder.append("info_provided", {})
    await recorder.append("escalated", {"reasons": ["Escalation keyword found: lawsuit"]})
    await recorder.append("escalated", {"reasons": ["Escalation keyword found: lawsuit", "Low AI confidence: 0.4"]})
    await recorder.append("processing_failed", {"error": "boom"})
    await recorder.append("ignored", {"reason": "automated sender"})


@pytest.mark.asyncio
async def test_daily_report_summary(recorder, mailbox):
    await _seed(recorder)
    service = ReportService(recorder, mailbox, "admin@example.com")

    report = await service.build_daily_report(date(2024, 6, 15))

    summary = report["summary"]
    assert summary["total_runs"] == 6
    assert summary["refunds_processed"] == 1
    assert summary["escalated"] == 2
    assert summary["failed"] == 1
    assert summary["ignored"] == 1
    assert summary["automation_rate"] == 50.0
    assert report["refunded_amount"] == 49900
    assert report["top_escalation_reasons"][0] == ("Escalation keyword found: lawsuit", 2)


@pytest.mark.asyncio
async def test_empty_day_has_zero_rate(recorder, mailbox):
    report = await ReportService(recorder, mailbox, "admin@example.com").build_daily_report(
        date(2024, 6, 15)
    )

    assert report["summary"]["total_runs"] == 0
    assert report["summary"]["automation_rate"] == 0.0


@pytest.mark.asyncio
async def test_send_daily_report_emails_admin(recorder, mailbox):
    await _seed(recorder)

    await ReportService(recorder, mailbox, "admin@example.com").send_daily_report(date(2024, 6, 15))

    sent = mailbox.sent[0]
    assert sent["to"] == "admin@example.com"
    assert sent["subject"] == "Support Agent Daily Report - 2024-06-15"
    assert "Automation rate: 50.0%" in sent["body"]
    assert "Refunded total: 499.00" in sent["body"]


def test_format_report_omits_empty_reason_section():
    report = {
        "date": "2024-06-15",
        "summary": {
            "total_runs": 0,
            "refunds_processed": 0,
            "help_provided": 0,
            "info_provided": 0,
            "escalated": 0,
            "failed": 0,
            "ignored": 0,
            "automation_rate": 0.0,
        },
        "refunded_amount": 0,
        "top_escalation_reasons": [],
    }

    assert "TOP ESCALATION REASONS" not in format_report(report)
