import pytest

from support_agent.config import Settings
from support_agent.pipeline.errors import ConfigurationError
from support_agent.services.container import SupportServices


@pytest.mark.asyncio
async def test_create_refuses_missing_secrets():
    settings = Settings(_env_file=None, DATABASE_URL=None, OPENAI_API_KEY=None)

    with pytest.raises(ConfigurationError) as exc_info:
        await SupportServices.create(settings)

    assert "DATABASE_URL" in str(exc_info.value)


@pytest.mark.asyncio
async def test_create_refuses_invalid_business_rules(tmp_path):
    rules_path = tmp_path / "rules.json"
    rules_path.write_text('{"escalation": {}}')
    settings = Settings(
        _env_file=None,
        DATABASE_URL="postgresql://localhost/support",
        OPENAI_API_KEY="sk-test",
        GOOGLE_CLIENT_ID="id",
        GOOGLE_CLIENT_SECRET="secret",
        GMAIL_REFRESH_TOKEN="refresh",
        STRIPE_SECRET_KEY="sk_test",
        BUSINESS_RULES_PATH=str(rules_path),
    )

    with pytest.raises(ConfigurationError):
        await SupportServices.create(settings)
