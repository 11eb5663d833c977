import json

import pytest

from support_agent.config import (
    PROJECT_ROOT,
    Settings,
    load_business_rules,
    parse_business_rules,
)
from support_agent.pipeline.errors import ConfigurationError


def test_shipped_business_rules_are_valid():
    rules = load_business_rules(PROJECT_ROOT / "config" / "business_rules.json")

    assert rules.refunds.default_refund_amount == 49900
    assert "lawsuit" in rules.escalation.keywords


def test_refund_thresholds_have_defaults():
    rules = parse_business_rules(
        {"escalation": {"confidence_threshold": 0.7, "sentiment_threshold": -0.5, "keywords": ["legal"]}}
    )

    assert rules.refunds.max_compliant_assets == 5
    assert rules.refunds.max_completed_projects == 0
    assert rules.refunds.max_days_since_signup == 30
    assert "noreply" in rules.automated_sender_patterns


def test_missing_escalation_options_are_named():
    with pytest.raises(ConfigurationError) as exc_info:
        parse_business_rules({"escalation": {"keywords": ["legal"]}})

    message = str(exc_info.value)
    assert "escalation.confidence_threshold" in message
    assert "escalation.sentiment_threshold" in message


def test_missing_rules_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_business_rules(tmp_path / "absent.json")


def test_unreadable_rules_file(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text("{broken")

    with pytest.raises(ConfigurationError):
        load_business_rules(path)


def test_rules_file_round_trip(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            {
                "refunds": {"default_refund_amount": 1000},
                "escalation": {"confidence_threshold": 0.5, "sentiment_threshold": -0.2, "keywords": ["x"]},
            }
        )
    )

    assert load_business_rules(path).refunds.default_refund_amount == 1000


def test_lease_outlives_run_deadline():
    settings = Settings(_env_file=None, RUN_TIMEOUT_SECONDS=60, LEASE_MARGIN_SECONDS=15)

    assert settings.lease_ttl_ms() == 75_000


def test_monitored_addresses_default_to_mailbox():
    settings = Settings(_env_file=None, SUPPORT_MAILBOX="Support@Acme.test")

    assert settings.monitored_addresses() == {"support@acme.test"}


def test_missing_required_lists_unset_secrets():
    settings = Settings(
        _env_file=None,
        DATABASE_URL="postgresql://localhost/support",
        OPENAI_API_KEY="sk-test",
        GOOGLE_CLIENT_ID="id",
        GOOGLE_CLIENT_SECRET="secret",
        GMAIL_REFRESH_TOKEN=None,
        STRIPE_SECRET_KEY=None,
    )

    assert settings.missing_required() == ["GMAIL_REFRESH_TOKEN", "STRIPE_SECRET_KEY"]
