"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from pageassist.models.api import MessageRole, OriginDomain, PageSnapshot

if TYPE_CHECKING:
    from pageassist.db.models import LedgerEntry


@dataclass(frozen=True)
class HistoryTurn:
    """One prior message replayed to the LLM gateway."""

    role: MessageRole
    content: str


@dataclass(frozen=True)
class LLMReply:
    """Answer text and token usage returned by the LLM gateway."""

    text: str
    input_tokens: int
    output_tokens: int

    def __post_init__(self) -> None:
        """Validate token counts."""
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError(
                f"Token counts cannot be negative: {self.input_tokens}/{self.output_tokens}"
            )


@dataclass(frozen=True)
class PriceTable:
    """Per-million token prices and the resale multiplier."""

    input_per_million: Decimal
    output_per_million: Decimal
    multiplier: Decimal

    def __post_init__(self) -> None:
        """Validate pricing constraints."""
        if self.input_per_million < 0 or self.output_per_million < 0:
            raise ValueError("Token prices cannot be negative")
        if self.multiplier <= 0:
            raise ValueError(f"Multiplier must be positive: {self.multiplier}")


@dataclass(frozen=True)
class ChatTurnIntent:
    """Domain model for one chat turn before processing - immutable intent."""

    user_id: UUID
    domain: OriginDomain
    text: str
    snapshot: PageSnapshot
    requested_session_id: UUID | None = None
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        """Validate turn constraints."""
        if not self.text.strip():
            raise ValueError("Message text cannot be empty")
        if self.idempotency_key is not None and not self.idempotency_key.strip():
            raise ValueError("Idempotency key cannot be blank")


@dataclass(frozen=True)
class ChatTurnResult:
    """Result of a settled (or replayed) chat turn."""

    answer: str
    session_id: UUID
    input_tokens: int
    output_tokens: int
    cost: Decimal
    balance_remaining: Decimal
    replayed: bool = False


@dataclass(frozen=True)
class AppliedLedgerEntry:
    """Result of appending a ledger entry."""

    entry_id: UUID
    user_id: UUID
    amount: Decimal
    balance_after: Decimal

    def __post_init__(self) -> None:
        """Validate balance invariant."""
        if self.balance_after < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance_after}")


@dataclass(frozen=True)
class PeriodStats:
    """Usage spend and request count over one period."""

    spent: Decimal
    requests: int


@dataclass(frozen=True)
class UsageSummary:
    """Paginated ledger view plus current-month usage aggregate."""

    entries: tuple["LedgerEntry", ...]
    monthly_spent: Decimal
    monthly_requests: int


@dataclass(frozen=True)
class UsageStats:
    """Balance and spend per period."""

    balance: Decimal
    today: PeriodStats
    week: PeriodStats
    month: PeriodStats
    total_messages: int


@dataclass(frozen=True)
class TelegramProfile:
    """Telegram profile fields copied onto the user row."""

    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None


@dataclass(frozen=True)
class GeneratedApiKey:
    """Newly generated API key (plaintext shown once)."""

    plaintext_key: str
    key_prefix: str
    key_hash: str


@dataclass(frozen=True)
class AdminTotals:
    """Aggregate figures for the admin dashboard."""

    total_users: int
    total_balance: Decimal
    total_revenue: Decimal
    active_today: int
    generated_at: datetime
