"""
Ledger Service - balance changes with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Ledger operations never commit: they run inside the caller's unit of work so
that a debit is atomic with the writes it pays for.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.db.models import ChatSession, LedgerEntry, Message, User
from pageassist.exceptions import (
    DataIntegrityError,
    InsufficientBalanceError,
    UserNotFoundError,
    ValidationFailedError,
    WriteVerificationError,
)
from pageassist.models.api import LedgerKind
from pageassist.models.domain import AppliedLedgerEntry, PeriodStats, UsageStats, UsageSummary
from pageassist.observability.metrics import metrics

logger = get_logger(__name__)

ZERO = Decimal("0")


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_month(now: datetime) -> datetime:
    return _start_of_day(now).replace(day=1)


async def lock_user_row(session: AsyncSession, user_id: UUID) -> User | None:
    """
    Lock the user row for update (SELECT FOR UPDATE) and reload it.

    The row is refreshed over any instance already in the identity map, so
    the balance seen by the caller is the one committed by the last holder
    of the lock.
    """
    stmt = (
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


class LedgerService:
    """
    Ledger service with write verification.

    All write operations follow the pattern:
    1. Lock the user row
    2. Execute write
    3. Flush to database
    4. Read back and verify
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    async def apply_ledger_entry(
        self,
        user: User,
        kind: LedgerKind,
        amount: Decimal,
        description: str,
        idempotency_key: str | None = None,
        message_id: UUID | None = None,
    ) -> AppliedLedgerEntry:
        """
        Append a ledger entry and move the materialized balance by ``amount``.

        The caller must hold the user row lock.

        Raises:
            InsufficientBalanceError: The entry would make the balance negative
            WriteVerificationError: The entry is missing after flush
            DataIntegrityError: The stored balance differs from the expected one
        """
        if amount == ZERO:
            raise ValidationFailedError("Amount must be non-zero", field="amount")

        balance_before = user.balance
        balance_after = balance_before + amount
        if balance_after < ZERO:
            logger.info(
                "ledger_debit_rejected",
                user_id=str(user.id),
                required=str(-amount),
                available=str(balance_before),
            )
            raise InsufficientBalanceError(required=-amount, available=balance_before)

        entry = LedgerEntry(
            user_id=user.id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            description=description,
            idempotency_key=idempotency_key,
            message_id=message_id,
        )
        self.session.add(entry)
        user.balance = balance_after
        await self.session.flush()

        verified_entry = await self.session.get(LedgerEntry, entry.id)
        if verified_entry is None:
            metrics.record_write_verification(False)
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")

        verified_user = await self.session.get(User, user.id)
        if verified_user is None:
            metrics.record_write_verification(False)
            raise WriteVerificationError(f"User {user.id} disappeared after update")

        if verified_user.balance != balance_after:
            metrics.record_write_verification(False)
            raise DataIntegrityError(
                f"Balance mismatch: expected {balance_after}, got {verified_user.balance}"
            )

        metrics.record_write_verification(True)
        metrics.record_ledger_entry(kind.value, float(amount))
        logger.info(
            "ledger_entry_applied",
            user_id=str(user.id),
            kind=kind.value,
            amount=str(amount),
            balance_after=str(balance_after),
        )

        return AppliedLedgerEntry(
            entry_id=verified_entry.id,
            user_id=user.id,
            amount=amount,
            balance_after=balance_after,
        )

    async def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
    ) -> AppliedLedgerEntry:
        """
        Top up a balance. Always succeeds if the user exists.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        if amount <= ZERO:
            raise ValidationFailedError("Credit amount must be positive", field="amount")

        user = await self._lock_user_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        return await self.apply_ledger_entry(user, LedgerKind.TOPUP, amount, description)

    async def debit(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        idempotency_key: str | None = None,
        message_id: UUID | None = None,
    ) -> AppliedLedgerEntry:
        """
        Charge usage against a balance after re-reading it under the row lock.

        Raises:
            UserNotFoundError: User doesn't exist
            InsufficientBalanceError: ``amount`` exceeds the current balance;
                nothing is written
        """
        if amount <= ZERO:
            raise ValidationFailedError("Debit amount must be positive", field="amount")

        user = await self._lock_user_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        return await self.apply_ledger_entry(
            user,
            LedgerKind.USAGE,
            -amount,
            description,
            idempotency_key=idempotency_key,
            message_id=message_id,
        )

    async def find_usage_by_idempotency_key(
        self, user_id: UUID, idempotency_key: str, window: timedelta
    ) -> LedgerEntry | None:
        """Most recent usage entry for this key within the window."""
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.kind == LedgerKind.USAGE,
                LedgerEntry.idempotency_key == idempotency_key,
                LedgerEntry.created_at >= _utc_now() - window,
            )
            .order_by(LedgerEntry.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def usage_summary(self, user_id: UUID, limit: int, offset: int) -> UsageSummary:
        """Ledger entries newest first plus the current-month usage aggregate."""
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        entries = tuple(result.scalars().all())

        month = await self._usage_since(user_id, _start_of_month(_utc_now()))
        return UsageSummary(
            entries=entries,
            monthly_spent=month.spent,
            monthly_requests=month.requests,
        )

    async def usage_stats(self, user_id: UUID) -> UsageStats:
        """Spend and request counts for today, the last 7 days and this month."""
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        now = _utc_now()
        today = await self._usage_since(user_id, _start_of_day(now))
        week = await self._usage_since(user_id, now - timedelta(days=7))
        month = await self._usage_since(user_id, _start_of_month(now))

        count_stmt = (
            select(func.count(Message.id))
            .join(ChatSession, Message.session_id == ChatSession.id)
            .where(ChatSession.user_id == user_id)
        )
        total_messages = (await self.session.execute(count_stmt)).scalar_one()

        return UsageStats(
            balance=user.balance,
            today=today,
            week=week,
            month=month,
            total_messages=int(total_messages or 0),
        )

    async def _usage_since(self, user_id: UUID, since: datetime) -> PeriodStats:
        """Sum of usage debits (as a positive amount) and their count."""
        stmt = select(
            func.coalesce(func.sum(LedgerEntry.amount), 0),
            func.count(LedgerEntry.id),
        ).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.kind == LedgerKind.USAGE,
            LedgerEntry.created_at >= since,
        )
        total, count = (await self.session.execute(stmt)).one()
        return PeriodStats(spent=abs(Decimal(total or 0)), requests=int(count or 0))

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock the user row for update (SELECT FOR UPDATE)."""
        return await lock_user_row(self.session, user_id)
