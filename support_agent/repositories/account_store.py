"""
Read-only account lookups backing request context.

Rows come from the product database: users, projects and user_assets.
"""

from support_agent.db.helpers import DatabaseError, fetch_all, fetch_one
from support_agent.db.pool import DatabasePoolManager
from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import AccountRecord, AssetUsage, ProjectRecord

logger = get_logger(__name__)


class AccountStoreError(DatabaseError):
    """More specific exception for account lookup failures."""


class AccountStore:
    """Identity, project and asset-usage queries for one sender."""

    USER_SELECT_COLUMNS = """
        id, email, name, created_at, subscription_status, subscription_plan
    """

    def __init__(self, pool: DatabasePoolManager):
        self._pool = pool

    @staticmethod
    def _row_to_account(row: dict | None) -> AccountRecord | None:
        if not row:
            return None

        created_at = row.get("created_at")
        if created_at is None:
            raise AccountStoreError("Account row has no created_at", operation="find_by_address")

        return AccountRecord(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            created_at=created_at,
            subscription_status=row.get("subscription_status"),
            subscription_plan=row.get("subscription_plan"),
        )

    async def find_by_address(self, email: str) -> AccountRecord | None:
        """Return the account registered to `email`, or None."""
        query = f"""
            SELECT {self.USER_SELECT_COLUMNS}
            FROM users
            WHERE lower(email) = lower(%s)
            LIMIT 1
        """
        row = await fetch_one(self._pool, query, (email,))
        account = self._row_to_account(row)

        logger.debug("Account lookup", found=account is not None)
        return account

    async def list_projects(self, user_id: str) -> list[ProjectRecord]:
        query = """
            SELECT id, name, status, created_at, completed_at, asset_count
            FROM projects
            WHERE user_id = %s
            ORDER BY created_at DESC
        """
        rows = await fetch_all(self._pool, query, (user_id,))
        return [
            ProjectRecord(
                id=str(row["id"]),
                name=row.get("name") or "",
                status=row.get("status") or "",
                created_at=row.get("created_at"),
                completed_at=row.get("completed_at"),
                asset_count=int(row.get("asset_count") or 0),
            )
            for row in rows
        ]

    async def usage_summary(self, user_id: str) -> AssetUsage:
        """Count compliant assets, broken down by asset type."""
        query = """
            SELECT asset_type, COUNT(*) AS compliant_count
            FROM user_assets
            WHERE user_id = %s
              AND compliance_status = 'compliant'
            GROUP BY asset_type
        """
        rows = await fetch_all(self._pool, query, (user_id,))
        breakdown = tuple(
            {"asset_type": row.get("asset_type"), "count": int(row["compliant_count"])}
            for row in rows
        )
        return AssetUsage(
            compliant_assets=sum(item["count"] for item in breakdown),
            breakdown=breakdown,
        )
