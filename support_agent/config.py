import json
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from support_agent.pipeline.errors import ConfigurationError

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_PATH = PROJECT_ROOT / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres (accounts + agent_activity)
    DATABASE_URL: str | None = None
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # Redis (idempotency leases)
    REDIS_URL: str = "redis://localhost:6379/0"

    # OpenAI classification oracle
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.2
    OPENAI_MAX_TOKENS: int = 1200
    OPENAI_TIMEOUT_SECONDS: float = 30.0
    OPENAI_MAX_RETRIES: int = 3

    # Gmail mailbox
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    GMAIL_REFRESH_TOKEN: str | None = None
    SUPPORT_MAILBOX: str = "support@example.com"
    MONITORED_ADDRESSES: list[str] = Field(default_factory=list)
    ADMIN_EMAIL: str = "admin@example.com"
    CANDIDATE_QUERY: str = "in:inbox is:unread"
    CANDIDATE_BATCH_SIZE: int = 50

    # Pub/Sub push token (appended as ?token= on the subscription URL)
    WEBHOOK_TOKEN: str | None = None

    # Bearer token for the manual response endpoints; unset disables them
    RESPONSES_API_TOKEN: str | None = None

    # Stripe billing
    STRIPE_SECRET_KEY: str | None = None

    # Pipeline runs
    RUN_TIMEOUT_SECONDS: float = 120.0
    LEASE_MARGIN_SECONDS: float = 30.0
    COMPLETION_MARKER_TTL_SECONDS: int = 7 * 24 * 3600

    # Reference data
    BUSINESS_RULES_PATH: str = str(PROJECT_ROOT / "config" / "business_rules.json")
    KNOWLEDGE_DIR: str = str(PROJECT_ROOT / "config" / "knowledge")
    KNOWLEDGE_FILES: list[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def monitored_addresses(self) -> set[str]:
        """Addresses whose push notifications trigger an intake pass."""
        addresses = self.MONITORED_ADDRESSES or [self.SUPPORT_MAILBOX]
        return {address.strip().lower() for address in addresses if address.strip()}

    def lease_ttl_ms(self) -> int:
        """Lease must outlive the run deadline so a live run never loses its claim."""
        return int((self.RUN_TIMEOUT_SECONDS + self.LEASE_MARGIN_SECONDS) * 1000)

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 4, "timeout": 15.0})

        return config

    def missing_required(self) -> list[str]:
        """Names of settings the pipeline cannot serve without."""
        required = {
            "DATABASE_URL": self.DATABASE_URL,
            "OPENAI_API_KEY": self.OPENAI_API_KEY,
            "GOOGLE_CLIENT_ID": self.GOOGLE_CLIENT_ID,
            "GOOGLE_CLIENT_SECRET": self.GOOGLE_CLIENT_SECRET,
            "GMAIL_REFRESH_TOKEN": self.GMAIL_REFRESH_TOKEN,
            "STRIPE_SECRET_KEY": self.STRIPE_SECRET_KEY,
        }
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    return Settings()


# =================================================================
# BUSINESS RULES
# =================================================================


class RefundRules(BaseModel):
    """Auto-approval thresholds for refunds."""

    max_compliant_assets: int = 5  # compliant_assets must be strictly below
    max_completed_projects: int = 0  # completed_projects must be at most
    max_days_since_signup: int = 30  # days_since_signup must be at most
    default_refund_amount: int = Field(default=49900, gt=0)  # minor currency units


class EscalationRules(BaseModel):
    """Triggers for handing a message to a human."""

    confidence_threshold: float = Field(ge=0.0, le=1.0)
    sentiment_threshold: float = Field(ge=-1.0, le=1.0)
    keywords: list[str] = Field(min_length=1)
    high_severity_keywords: list[str] = Field(
        default_factory=lambda: ["legal", "ceo", "urgent", "lawsuit"]
    )
    high_priority_sentiment: float = -0.6
    high_priority_reason_count: int = 2  # more reasons than this raises priority to high


class BusinessRules(BaseModel):
    """Every recognized business-rule option, validated once at startup."""

    refunds: RefundRules = Field(default_factory=RefundRules)
    escalation: EscalationRules
    automated_sender_patterns: list[str] = Field(
        default_factory=lambda: [
            "noreply",
            "no-reply",
            "donotreply",
            "automated",
            "notification",
            "unsubscribe",
            "delivery-subsystem",
        ]
    )
    support_signature: str = "Support Team"


def load_business_rules(path: str | Path) -> BusinessRules:
    """
    Load and validate business rules from a JSON file.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or lacks required options
    """
    rules_path = Path(path)
    if not rules_path.exists():
        raise ConfigurationError(f"Business rules file not found: {rules_path}")

    try:
        raw = json.loads(rules_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Business rules file unreadable: {e}") from e

    return parse_business_rules(raw)


def parse_business_rules(raw: dict) -> BusinessRules:
    """Validate a business-rules mapping, naming every missing or invalid option."""
    try:
        return BusinessRules.model_validate(raw)
    except PydanticValidationError as e:
        problems = [
            ".".join(str(part) for part in error["loc"]) + f" ({error['msg']})"
            for error in e.errors()
        ]
        raise ConfigurationError(
            f"Invalid business rule configuration: {', '.join(problems)}"
        ) from e
