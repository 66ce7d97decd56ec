"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire names are camelCase to match the browser extension; snake_case is
accepted on input as well.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class LedgerKind(str, Enum):
    """Ledger entry kind."""

    TOPUP = "topup"
    USAGE = "usage"


class MessageRole(str, Enum):
    """Chat message author."""

    USER = "user"
    ASSISTANT = "assistant"


class OriginDomain(str, Enum):
    """Origin of the page a session was opened on."""

    SELLER_CONSOLE = "seller-console"
    PUBLIC_SITE = "public-site"
    UNKNOWN = "unknown"


class CamelModel(BaseModel):
    """Base model using camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Page Snapshot (emitted by the extension)
# ============================================================================


class TableSnapshot(CamelModel):
    """One scraped table."""

    index: int | None = None
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)


class MetricSnapshot(CamelModel):
    """One scraped metric block."""

    content: str | None = None
    value: str | None = None
    context: str | None = None


class TextSnapshot(CamelModel):
    """One heading or text fragment."""

    type: str = "text"
    content: str = ""


class ChartSnapshot(CamelModel):
    """Descriptor of a chart found on the page."""

    index: int | None = None
    type: str | None = None
    aria_label: str | None = None
    title: str | None = None
    legend: str | None = None


class PageSnapshot(CamelModel):
    """Bounded structured extraction of visible page content."""

    url: str = ""
    page_title: str = ""
    timestamp: str = ""
    tables: list[TableSnapshot] = Field(default_factory=list)
    metrics: list[MetricSnapshot] = Field(default_factory=list)
    texts: list[TextSnapshot] = Field(default_factory=list)
    charts: list[ChartSnapshot] = Field(default_factory=list)


# ============================================================================
# Auth Models
# ============================================================================


class RegisterRequest(CamelModel):
    """POST /auth/register request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Minimal shape check; the address is normalized to lower case."""
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email format")
        return v


class LoginRequest(CamelModel):
    """POST /auth/login request body."""

    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class TelegramAuthRequest(CamelModel):
    """POST /auth/telegram request body."""

    telegram_id: str = Field(..., min_length=1, max_length=64)
    first_name: str | None = Field(None, max_length=255)
    last_name: str | None = Field(None, max_length=255)
    username: str | None = Field(None, max_length=255)
    init_data: str | None = None

    @field_validator("telegram_id", mode="before")
    @classmethod
    def coerce_telegram_id(cls, v: object) -> object:
        """Telegram sends numeric ids; store them as strings."""
        if isinstance(v, int):
            return str(v)
        return v


class UserResponse(CamelModel):
    """Public user profile."""

    id: UUID
    email: str | None = None
    telegram_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    balance: float
    has_api_key: bool = False
    is_admin: bool = False
    created_at: datetime | None = None


class AuthResponse(CamelModel):
    """Token plus profile."""

    token: str
    user: UserResponse


class ApiKeyResponse(CamelModel):
    """POST /auth/api-key response. The key is shown exactly once."""

    api_key: str
    message: str = "Save this key now - it will not be shown again"


class MeResponse(CamelModel):
    """GET /auth/me response."""

    user: UserResponse


# ============================================================================
# Billing Models
# ============================================================================


class BalanceResponse(CamelModel):
    """GET /billing/balance response."""

    balance: float
    currency: str
    email: str | None = None


class LedgerEntryResponse(CamelModel):
    """One ledger entry."""

    id: UUID
    kind: LedgerKind
    amount: float
    balance_after: float
    description: str
    created_at: datetime


class MonthlyUsage(CamelModel):
    """Current calendar month usage aggregate."""

    monthly_spent: float
    monthly_requests: int


class UsageResponse(CamelModel):
    """GET /billing/usage response."""

    transactions: list[LedgerEntryResponse]
    stats: MonthlyUsage
    limit: int
    offset: int


class PeriodUsage(CamelModel):
    """Spend and request count over one period."""

    spent: float
    requests: int


class UsageStatsResponse(CamelModel):
    """GET /billing/stats response."""

    balance: float
    today: PeriodUsage
    week: PeriodUsage
    month: PeriodUsage
    total_messages: int


class TopupInstructionsResponse(CamelModel):
    """POST /billing/topup response (payment integration is a stub)."""

    message: str
    current_balance: float


# ============================================================================
# Chat Models
# ============================================================================


class SendMessageRequest(CamelModel):
    """POST /chat/message request body."""

    message: str = Field(..., min_length=1, max_length=8000)
    page_snapshot: PageSnapshot = Field(
        default_factory=PageSnapshot,
        validation_alias=AliasChoices("pageData", "pageSnapshot", "page_snapshot"),
    )
    session_id: UUID | None = None

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        """Reject whitespace-only questions."""
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v


class TokenUsage(CamelModel):
    """Usage summary for one answered turn."""

    input_tokens: int
    output_tokens: int
    cost: float
    balance_remaining: float


class ChatResponse(CamelModel):
    """POST /chat/message response."""

    answer: str
    session_id: UUID
    usage: TokenUsage
    replayed: bool = False


class SessionResponse(CamelModel):
    """One chat session."""

    id: UUID
    domain: OriginDomain
    is_active: bool
    created_at: datetime
    updated_at: datetime
    message_count: int | None = None


class SessionListResponse(CamelModel):
    """GET /chat/sessions response."""

    sessions: list[SessionResponse]


class MessageResponse(CamelModel):
    """One persisted chat message."""

    id: UUID
    role: MessageRole
    content: str
    page_url: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost: float | None = None
    created_at: datetime


class HistoryResponse(CamelModel):
    """GET /chat/history/{session_id} response."""

    session: SessionResponse
    messages: list[MessageResponse]


class SuccessResponse(CamelModel):
    """Generic acknowledgement."""

    success: bool = True


# ============================================================================
# Admin Models
# ============================================================================


class AdminStatsResponse(CamelModel):
    """GET /admin/stats response."""

    total_users: int
    total_balance: float
    total_revenue: float
    active_today: int
    recent_users: list[UserResponse]


class AdminUserListResponse(CamelModel):
    """GET /admin/users response."""

    users: list[UserResponse]


class AdminLedgerEntryResponse(LedgerEntryResponse):
    """Ledger entry with owner identity for the admin view."""

    user_id: UUID
    user_email: str | None = None
    user_telegram_id: str | None = None


class AdminTransactionListResponse(CamelModel):
    """GET /admin/transactions response."""

    transactions: list[AdminLedgerEntryResponse]


class AdminTopupRequest(CamelModel):
    """POST /admin/topup request body."""

    user_id: UUID
    amount: float = Field(..., gt=0)


class AdminTopupByEmailRequest(CamelModel):
    """POST /admin/topup-by-email request body."""

    email: str = Field(..., min_length=3, max_length=255)
    amount: float = Field(..., gt=0)


class AdminTopupResponse(CamelModel):
    """Manual top-up result."""

    success: bool = True
    new_balance: float


class BlockUserRequest(CamelModel):
    """POST /admin/block-user request body."""

    user_id: UUID
    block: bool


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    timestamp: str
