"""
Chat API routes - metered turns, sessions and history.

All routes authenticate with an API key.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from pageassist.api.dependencies import get_api_key_user, get_chat_orchestrator
from pageassist.api.serializers import message_response, session_response
from pageassist.config import Settings, get_settings
from pageassist.db.models import User
from pageassist.db.session import get_read_db, get_write_db
from pageassist.models.api import (
    ChatResponse,
    HistoryResponse,
    SendMessageRequest,
    SessionListResponse,
    SuccessResponse,
    TokenUsage,
)
from pageassist.models.domain import ChatTurnIntent
from pageassist.services.chat import ChatOrchestrator
from pageassist.services.pricing import present_amount
from pageassist.services.sessions import SessionStore, detect_domain

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/message", response_model=ChatResponse)
async def send_message(
    request: SendMessageRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key", max_length=255),
    user: User = Depends(get_api_key_user),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    settings: Settings = Depends(get_settings),
) -> ChatResponse:
    """
    Ask a question about the page snapshot and bill the answer.

    A repeated Idempotency-Key within the replay window returns the stored
    answer without calling the model or billing again.
    """
    intent = ChatTurnIntent(
        user_id=user.id,
        domain=detect_domain(request.page_snapshot.url, settings),
        text=request.message,
        snapshot=request.page_snapshot,
        requested_session_id=request.session_id,
        idempotency_key=(idempotency_key or "").strip() or None,
    )
    result = await orchestrator.handle_turn(intent)

    return ChatResponse(
        answer=result.answer,
        session_id=result.session_id,
        usage=TokenUsage(
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=present_amount(result.cost),
            balance_remaining=present_amount(result.balance_remaining),
        ),
        replayed=result.replayed,
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    user: User = Depends(get_api_key_user),
    db: AsyncSession = Depends(get_read_db),
) -> SessionListResponse:
    """The 20 most recently updated sessions with message counts."""
    rows = await SessionStore(db).list_sessions(user.id)
    return SessionListResponse(
        sessions=[session_response(chat_session, count) for chat_session, count in rows]
    )


@router.get("/history/{session_id}", response_model=HistoryResponse)
async def get_history(
    session_id: UUID,
    user: User = Depends(get_api_key_user),
    db: AsyncSession = Depends(get_read_db),
) -> HistoryResponse:
    """Session plus its messages in creation order. Foreign ids return 404."""
    chat_session, messages = await SessionStore(db).list_history(session_id, user.id)
    return HistoryResponse(
        session=session_response(chat_session, len(messages)),
        messages=[message_response(message) for message in messages],
    )


@router.delete("/session/{session_id}", response_model=SuccessResponse)
async def clear_session(
    session_id: UUID,
    user: User = Depends(get_api_key_user),
    db: AsyncSession = Depends(get_write_db),
) -> SuccessResponse:
    """Deactivate a session. Its history remains readable by id."""
    await SessionStore(db).clear_session(user.id, session_id)
    return SuccessResponse()
