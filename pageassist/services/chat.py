"""
Chat Orchestrator - one metered question/answer turn.

Workflow:
1. Resolve the (user, domain) session
2. Load the recent history
3. Format the page snapshot into the new user turn
4. Call the LLM gateway outside any open transaction
5. Price the reply
6. Re-check the balance under the user row lock
7. Persist both messages, the usage entry and the new balance atomically
"""

from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.config import Settings
from pageassist.db.models import ChatSession, LedgerEntry, Message, User, utc_now
from pageassist.exceptions import (
    InsufficientBalanceError,
    UpstreamError,
    UserNotFoundError,
)
from pageassist.models.api import LedgerKind, MessageRole
from pageassist.models.domain import ChatTurnIntent, ChatTurnResult, LLMReply
from pageassist.observability.metrics import metrics
from pageassist.observability.tracing import trace_operation
from pageassist.services.ledger import ZERO, LedgerService, lock_user_row
from pageassist.services.llm_gateway import ChatCompletionGateway
from pageassist.services.pricing import compute_cost, price_table_from_settings
from pageassist.services.prompt import SYSTEM_PROMPT, PromptFormatter
from pageassist.services.sessions import SessionStore

logger = get_logger(__name__)


class ChatOrchestrator:
    """Runs chat turns against the gateway and settles their cost."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        gateway: ChatCompletionGateway,
        formatter: PromptFormatter | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.formatter = formatter or PromptFormatter(
            max_table_rows=settings.prompt_max_table_rows,
            max_metrics=settings.prompt_max_metrics,
        )
        self.prices = price_table_from_settings(settings)
        self.sessions = SessionStore(db)
        self.ledger = LedgerService(db)

    async def handle_turn(self, intent: ChatTurnIntent) -> ChatTurnResult:
        """
        Answer one question and bill it.

        Raises:
            UpstreamError: Gateway failed or timed out; nothing is written
            InsufficientBalanceError: Cost exceeds the balance at settlement;
                nothing is written and the answer is discarded
        """
        domain = intent.domain.value

        if intent.idempotency_key:
            replay = await self._find_replay(intent.user_id, intent.idempotency_key)
            if replay is not None:
                await self.db.rollback()
                metrics.record_chat_turn("replayed", domain)
                logger.info(
                    "chat_turn_replayed",
                    user_id=str(intent.user_id),
                    session_id=str(replay.session_id),
                )
                return replay

        chat_session = await self.sessions.resolve_or_create_session(
            intent.user_id, intent.domain, intent.requested_session_id
        )
        session_id = chat_session.id
        history = await self.sessions.recent_history(
            session_id, self.settings.chat_history_limit
        )
        # Release the row lock before the slow gateway call
        await self.db.commit()

        user_turn = self.formatter.build_user_turn(intent.snapshot, intent.text)
        try:
            with trace_operation(
                "chat.llm_call", session_id=session_id, history_length=len(history)
            ):
                reply = await self.gateway.complete(SYSTEM_PROMPT, history, user_turn)
        except UpstreamError:
            metrics.record_chat_turn("upstream_error", domain)
            raise

        cost = compute_cost(reply.input_tokens, reply.output_tokens, self.prices)

        try:
            with trace_operation("chat.settle", user_id=intent.user_id, cost=cost):
                result = await self._settle(intent, chat_session, reply, cost)
        except InsufficientBalanceError:
            await self.db.rollback()
            metrics.record_chat_turn("insufficient_balance", domain)
            raise
        except Exception:
            await self.db.rollback()
            metrics.record_chat_turn("error", domain)
            raise

        metrics.record_chat_turn("replayed" if result.replayed else "answered", domain)
        if not result.replayed:
            logger.info(
                "chat_turn_completed",
                user_id=str(intent.user_id),
                session_id=str(session_id),
                domain=domain,
                input_tokens=reply.input_tokens,
                output_tokens=reply.output_tokens,
                cost=str(cost),
                balance_remaining=str(result.balance_remaining),
            )
        return result

    async def _settle(
        self,
        intent: ChatTurnIntent,
        chat_session: ChatSession,
        reply: LLMReply,
        cost: Decimal,
    ) -> ChatTurnResult:
        """Authoritative balance check and atomic persistence of the turn."""
        user = await self._lock_user_for_update(intent.user_id)
        if user is None:
            raise UserNotFoundError(intent.user_id)

        if intent.idempotency_key:
            # A concurrent retry may have settled while the gateway was running
            replay = await self._find_replay(intent.user_id, intent.idempotency_key)
            if replay is not None:
                await self.db.rollback()
                return replay

        available = user.balance
        if cost > available:
            logger.info(
                "chat_turn_rejected_insufficient_balance",
                user_id=str(user.id),
                required=str(cost),
                available=str(available),
            )
            raise InsufficientBalanceError(required=cost, available=available)

        user_message = Message(
            id=uuid4(),
            session_id=chat_session.id,
            role=MessageRole.USER,
            content=intent.text,
            page_url=intent.snapshot.url or None,
            page_snapshot=intent.snapshot.model_dump(mode="json", by_alias=True),
        )
        self.db.add(user_message)
        await self.db.flush()

        assistant_message = Message(
            id=uuid4(),
            session_id=chat_session.id,
            role=MessageRole.ASSISTANT,
            content=reply.text,
            input_tokens=reply.input_tokens,
            output_tokens=reply.output_tokens,
            cost=cost,
        )
        self.db.add(assistant_message)
        await self.db.flush()

        balance_after = available
        if cost > ZERO:
            applied = await self.ledger.apply_ledger_entry(
                user,
                LedgerKind.USAGE,
                -cost,
                f"Chat turn: {reply.input_tokens} in / {reply.output_tokens} out",
                idempotency_key=intent.idempotency_key,
                message_id=assistant_message.id,
            )
            balance_after = applied.balance_after

        chat_session.updated_at = utc_now()
        await self.db.commit()

        return ChatTurnResult(
            answer=reply.text,
            session_id=chat_session.id,
            input_tokens=reply.input_tokens,
            output_tokens=reply.output_tokens,
            cost=cost,
            balance_remaining=balance_after,
        )

    async def _find_replay(self, user_id: UUID, idempotency_key: str) -> ChatTurnResult | None:
        """Rebuild the result of an already-settled turn with the same key."""
        window = timedelta(hours=self.settings.idempotency_window_hours)
        entry: LedgerEntry | None = await self.ledger.find_usage_by_idempotency_key(
            user_id, idempotency_key, window
        )
        if entry is None or entry.message_id is None:
            return None

        message = await self.db.get(Message, entry.message_id)
        if message is None:
            return None

        user = await self.db.get(User, user_id)
        balance = user.balance if user is not None else entry.balance_after
        return ChatTurnResult(
            answer=message.content,
            session_id=message.session_id,
            input_tokens=message.input_tokens or 0,
            output_tokens=message.output_tokens or 0,
            cost=message.cost if message.cost is not None else -entry.amount,
            balance_remaining=balance,
            replayed=True,
        )

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock the user row for update (SELECT FOR UPDATE)."""
        return await lock_user_row(self.db, user_id)
