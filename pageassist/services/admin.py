"""
Admin Service - dashboard aggregates and account moderation.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.db.models import ChatSession, LedgerEntry, User
from pageassist.exceptions import UserNotFoundError
from pageassist.models.api import LedgerKind
from pageassist.models.domain import AdminTotals

logger = get_logger(__name__)

RECENT_USERS_LIMIT = 10
LIST_LIMIT = 100


class AdminService:
    """Read-mostly queries for the admin surface."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def totals(self) -> AdminTotals:
        """User count, outstanding balance, usage revenue and today's active users."""
        now = datetime.now(UTC)
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        user_count, balance_sum = (
            await self.db.execute(
                select(func.count(User.id), func.coalesce(func.sum(User.balance), 0))
            )
        ).one()

        revenue = (
            await self.db.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    LedgerEntry.kind == LedgerKind.USAGE
                )
            )
        ).scalar_one()

        active_today = (
            await self.db.execute(
                select(func.count(func.distinct(ChatSession.user_id))).where(
                    ChatSession.updated_at >= today_start
                )
            )
        ).scalar_one()

        return AdminTotals(
            total_users=int(user_count or 0),
            total_balance=Decimal(balance_sum or 0),
            total_revenue=abs(Decimal(revenue or 0)),
            active_today=int(active_today or 0),
            generated_at=now,
        )

    async def recent_users(self, limit: int = LIST_LIMIT) -> list[User]:
        """Newest users first."""
        stmt = select(User).order_by(User.created_at.desc()).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def recent_transactions(self, limit: int = LIST_LIMIT) -> list[tuple[LedgerEntry, User]]:
        """Newest ledger entries with their owners."""
        stmt = (
            select(LedgerEntry, User)
            .join(User, LedgerEntry.user_id == User.id)
            .order_by(LedgerEntry.created_at.desc())
            .limit(limit)
        )
        return [(entry, owner) for entry, owner in (await self.db.execute(stmt)).all()]

    async def find_user_by_email(self, email: str) -> User:
        """
        Raises:
            UserNotFoundError: No user with that email
        """
        stmt = select(User).where(User.email == email.strip().lower())
        user = (await self.db.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(email)
        return user

    async def set_blocked(self, user_id: UUID, block: bool, admin_id: UUID) -> None:
        """
        Block or unblock an account.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        user.is_blocked = block
        await self.db.commit()
        logger.info(
            "admin_user_block_changed",
            user_id=str(user_id),
            blocked=block,
            admin_id=str(admin_id),
        )
