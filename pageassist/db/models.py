"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pageassist.models.api import LedgerKind, MessageRole, OriginDomain

# Fixed-point money column: 18 digits, 8 after the point
Money = Numeric(18, 8)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


class User(Base):
    """
    ORM model for users table.

    A user is identified by email, Telegram id, or both. The balance is the
    materialized sum of the user's ledger entries. Users are never deleted.
    """

    __tablename__ = "users"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    telegram_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)

    # Telegram profile
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Wallet (non-negativity is enforced at debit time)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    # Status
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # API key (hash only; prefix is a non-secret lookup fingerprint)
    api_key_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_key_prefix: Mapped[str | None] = mapped_column(String(16), nullable=True, unique=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    sessions: Mapped[list["ChatSession"]] = relationship(back_populates="user")
    ledger_entries: Mapped[list["LedgerEntry"]] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint(
            "email IS NOT NULL OR telegram_id IS NOT NULL", name="ck_users_has_identity"
        ),
        Index("idx_users_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, email={self.email}, telegram_id={self.telegram_id}, "
            f"balance={self.balance})>"
        )


class ChatSession(Base):
    """
    ORM model for chat_sessions table.

    At most one active session exists per (user, domain).
    """

    __tablename__ = "chat_sessions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    domain: Mapped[OriginDomain] = mapped_column(
        SQLEnum(
            OriginDomain,
            name="origin_domain",
            create_type=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    user: Mapped[User] = relationship(back_populates="sessions")
    messages: Mapped[list["Message"]] = relationship(
        back_populates="session", order_by="Message.sequence"
    )

    __table_args__ = (
        Index(
            "uq_chat_sessions_one_active",
            "user_id",
            "domain",
            unique=True,
            postgresql_where=(is_active.is_(True)),
        ),
        Index("idx_chat_sessions_user_updated", "user_id", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ChatSession(id={self.id}, user_id={self.user_id}, "
            f"domain={self.domain}, is_active={self.is_active})>"
        )


class Message(Base):
    """
    ORM model for messages table.

    Ordered by ``sequence``, which increases monotonically with insertion.
    User turns carry the page snapshot; assistant turns carry token usage.
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    sequence: Mapped[int] = mapped_column(BigInteger, Identity(always=False), nullable=False)
    session_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(
        SQLEnum(
            MessageRole,
            name="message_role",
            create_type=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # User turn context
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    page_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    # Assistant turn usage
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    session: Mapped[ChatSession] = relationship(back_populates="messages")

    __table_args__ = (
        CheckConstraint("input_tokens IS NULL OR input_tokens >= 0", name="ck_input_tokens"),
        CheckConstraint("output_tokens IS NULL OR output_tokens >= 0", name="ck_output_tokens"),
        Index("idx_messages_session_sequence", "session_id", "sequence"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Message(id={self.id}, session_id={self.session_id}, role={self.role})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Immutable audit log of balance changes. Positive amounts are credits,
    negative amounts are usage debits.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[LedgerKind] = mapped_column(
        SQLEnum(
            LedgerKind,
            name="ledger_kind",
            create_type=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    # Idempotency (usage entries) and the assistant message the debit paid for
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    user: Mapped[User] = relationship(back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint("amount != 0", name="ck_ledger_amount_non_zero"),
        Index("idx_ledger_user_created", "user_id", "created_at"),
        Index(
            "idx_ledger_user_idempotency",
            "user_id",
            "idempotency_key",
            postgresql_where=(idempotency_key.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, kind={self.kind}, "
            f"amount={self.amount})>"
        )
