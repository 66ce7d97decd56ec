"""
ORM to response model conversion.

Money amounts are rounded to 4 places here and nowhere else.
"""

from pageassist.db.models import ChatSession, LedgerEntry, Message, User
from pageassist.models.api import (
    AdminLedgerEntryResponse,
    LedgerEntryResponse,
    MessageResponse,
    SessionResponse,
    UserResponse,
)
from pageassist.services.pricing import present_amount


def user_response(user: User) -> UserResponse:
    """Public profile; never includes secrets."""
    return UserResponse(
        id=user.id,
        email=user.email,
        telegram_id=user.telegram_id,
        first_name=user.first_name,
        last_name=user.last_name,
        username=user.username,
        balance=present_amount(user.balance),
        has_api_key=user.api_key_hash is not None,
        is_admin=user.is_admin,
        created_at=user.created_at,
    )


def ledger_entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        kind=entry.kind,
        amount=present_amount(entry.amount),
        balance_after=present_amount(entry.balance_after),
        description=entry.description,
        created_at=entry.created_at,
    )


def admin_ledger_entry_response(entry: LedgerEntry, owner: User) -> AdminLedgerEntryResponse:
    return AdminLedgerEntryResponse(
        id=entry.id,
        kind=entry.kind,
        amount=present_amount(entry.amount),
        balance_after=present_amount(entry.balance_after),
        description=entry.description,
        created_at=entry.created_at,
        user_id=owner.id,
        user_email=owner.email,
        user_telegram_id=owner.telegram_id,
    )


def session_response(
    chat_session: ChatSession, message_count: int | None = None
) -> SessionResponse:
    return SessionResponse(
        id=chat_session.id,
        domain=chat_session.domain,
        is_active=chat_session.is_active,
        created_at=chat_session.created_at,
        updated_at=chat_session.updated_at,
        message_count=message_count,
    )


def message_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        role=message.role,
        content=message.content,
        page_url=message.page_url,
        input_tokens=message.input_tokens,
        output_tokens=message.output_tokens,
        cost=present_amount(message.cost) if message.cost is not None else None,
        created_at=message.created_at,
    )
