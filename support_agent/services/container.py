"""
SupportServices - the dependency container for one host process.

Built by the FastAPI lifespan or a worker job, it owns the database pool,
the Redis client and the outbound HTTP clients, and wires the pipeline
components on top of them. The host closes it on shutdown.
"""

from dataclasses import dataclass

from openai import AsyncOpenAI

from support_agent.config import BusinessRules, Settings, load_business_rules
from support_agent.db.pool import DatabasePoolManager
from support_agent.infrastructure.audit import ActivityRecorder
from support_agent.infrastructure.observability.logging import get_logger
from support_agent.pipeline.action_executor import ActionExecutor
from support_agent.pipeline.context_aggregator import ContextAggregator
from support_agent.pipeline.errors import ConfigurationError
from support_agent.pipeline.event_intake import EventIntake
from support_agent.pipeline.idempotency import IdempotencyLeases
from support_agent.pipeline.rule_engine import RuleEngine
from support_agent.repositories.account_store import AccountStore
from support_agent.services.billing_provider import BillingProvider
from support_agent.services.classification_service import ClassificationService
from support_agent.services.gmail_service import GmailService
from support_agent.services.knowledge_base import KnowledgeBase
from support_agent.services.redis_client import RedisClient
from support_agent.services.report_service import ReportService

logger = get_logger(__name__)


@dataclass
class SupportServices:
    settings: Settings
    rules: BusinessRules
    db: DatabasePoolManager
    redis: RedisClient
    gmail: GmailService
    billing: BillingProvider
    openai: AsyncOpenAI
    oracle: ClassificationService
    knowledge: KnowledgeBase
    intake: EventIntake
    reports: ReportService

    @classmethod
    async def create(cls, settings: Settings) -> "SupportServices":
        """
        Validate configuration, open pools and wire the pipeline.

        Raises:
            ConfigurationError: If required settings or business rules are missing or invalid
            RuntimeError: If Postgres or Redis cannot be reached
        """
        missing = settings.missing_required()
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

        rules = load_business_rules(settings.BUSINESS_RULES_PATH)

        db = DatabasePoolManager(settings.DATABASE_URL, settings.get_db_pool_config())
        redis = RedisClient(settings.REDIS_URL)
        gmail = GmailService(
            mailbox=settings.SUPPORT_MAILBOX,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            refresh_token=settings.GMAIL_REFRESH_TOKEN,
        )
        billing = BillingProvider(settings.STRIPE_SECRET_KEY)
        openai_client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
            max_retries=0,  # ClassificationService runs its own retry loop
        )

        try:
            await db.initialize()
            await redis.initialize()
        except Exception:
            await gmail.close()
            await billing.close()
            await redis.close()
            await db.close()
            await openai_client.close()
            raise

        rule_engine = RuleEngine(rules)
        recorder = ActivityRecorder(db)
        oracle = ClassificationService(
            openai_client,
            model=settings.OPENAI_MODEL,
            temperature=settings.OPENAI_TEMPERATURE,
            max_tokens=settings.OPENAI_MAX_TOKENS,
            max_retries=settings.OPENAI_MAX_RETRIES,
            signature=rules.support_signature,
        )

        knowledge = KnowledgeBase(settings.KNOWLEDGE_DIR, settings.KNOWLEDGE_FILES or None)
        intake = EventIntake(
            mailbox=gmail,
            leases=IdempotencyLeases(
                redis, settings.lease_ttl_ms(), settings.COMPLETION_MARKER_TTL_SECONDS
            ),
            aggregator=ContextAggregator(AccountStore(db), billing, rules.refunds),
            oracle=oracle,
            knowledge=knowledge,
            rule_engine=rule_engine,
            executor=ActionExecutor(
                messaging=gmail,
                billing=billing,
                drafter=oracle,
                rule_engine=rule_engine,
                admin_email=settings.ADMIN_EMAIL,
                signature=rules.support_signature,
            ),
            recorder=recorder,
            rules=rules,
            admin_email=settings.ADMIN_EMAIL,
            run_timeout_s=settings.RUN_TIMEOUT_SECONDS,
            candidate_query=settings.CANDIDATE_QUERY,
            batch_size=settings.CANDIDATE_BATCH_SIZE,
        )

        logger.info("Support services ready", mailbox=settings.SUPPORT_MAILBOX)
        return cls(
            settings=settings,
            rules=rules,
            db=db,
            redis=redis,
            gmail=gmail,
            billing=billing,
            openai=openai_client,
            oracle=oracle,
            knowledge=knowledge,
            intake=intake,
            reports=ReportService(recorder, gmail, settings.ADMIN_EMAIL),
        )

    async def aclose(self) -> None:
        """Close clients and pools; errors are logged, never raised."""
        for name, close in (
            ("gmail", self.gmail.close),
            ("billing", self.billing.close),
            ("openai", self.openai.close),
            ("redis", self.redis.close),
            ("database", self.db.close),
        ):
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing service", service=name, error=str(e))

        logger.info("Support services closed")
