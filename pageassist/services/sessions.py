"""
Session Store - chat sessions scoped per (user, origin domain).

At most one session is active per (user, domain). Resolution runs under the
user row lock so concurrent resolves for the same user serialize.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.config import Settings
from pageassist.db.models import ChatSession, Message, User, utc_now
from pageassist.exceptions import NotFoundError, UserNotFoundError, WriteVerificationError
from pageassist.models.api import OriginDomain
from pageassist.models.domain import HistoryTurn
from pageassist.services.ledger import lock_user_row
from pageassist.services.origin import classify_origin

logger = get_logger(__name__)

RECENT_SESSIONS_LIMIT = 20


def detect_domain(url: str, settings: Settings) -> OriginDomain:
    """Origin domain of a page URL under the configured hosts."""
    return classify_origin(url, settings.seller_console_host, settings.public_site_host)


class SessionStore:
    """Resolves, clears and lists chat sessions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_or_create_session(
        self,
        user_id: UUID,
        domain: OriginDomain,
        requested_session_id: UUID | None = None,
    ) -> ChatSession:
        """
        Reuse the requested session when it is active, owned and in ``domain``.

        Otherwise deactivate every active session for (user, domain) and
        create a fresh one. Does not commit.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        user = await self._lock_user_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if requested_session_id is not None:
            stmt = select(ChatSession).where(
                ChatSession.id == requested_session_id,
                ChatSession.user_id == user_id,
                ChatSession.domain == domain,
                ChatSession.is_active.is_(True),
            )
            existing = (await self.db.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                return existing

        await self.db.execute(
            update(ChatSession)
            .where(
                ChatSession.user_id == user_id,
                ChatSession.domain == domain,
                ChatSession.is_active.is_(True),
            )
            .values(is_active=False, updated_at=utc_now())
        )

        chat_session = ChatSession(user_id=user_id, domain=domain, is_active=True)
        self.db.add(chat_session)
        await self.db.flush()

        verified = await self.db.get(ChatSession, chat_session.id)
        if verified is None:
            raise WriteVerificationError(f"Session {chat_session.id} not found after insert")

        logger.info(
            "chat_session_created",
            session_id=str(verified.id),
            user_id=str(user_id),
            domain=domain.value,
            requested_session_id=str(requested_session_id) if requested_session_id else None,
        )
        return verified

    async def clear_session(self, user_id: UUID, session_id: UUID) -> None:
        """
        Deactivate a session. Its history stays readable by id.

        Raises:
            NotFoundError: Unknown session or owned by someone else
        """
        chat_session = await self._get_owned_session(session_id, user_id)
        if chat_session.is_active:
            chat_session.is_active = False
            chat_session.updated_at = utc_now()
        await self.db.commit()
        logger.info("chat_session_cleared", session_id=str(session_id), user_id=str(user_id))

    async def list_history(
        self, session_id: UUID, owner_id: UUID
    ) -> tuple[ChatSession, list[Message]]:
        """
        All messages of an owned session in creation order.

        Raises:
            NotFoundError: Unknown session or owned by someone else
        """
        chat_session = await self._get_owned_session(session_id, owner_id)
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.sequence.asc())
        )
        messages = list((await self.db.execute(stmt)).scalars().all())
        return chat_session, messages

    async def recent_history(self, session_id: UUID, limit: int) -> list[HistoryTurn]:
        """The last ``limit`` messages in creation order, as role/content pairs."""
        if limit <= 0:
            return []
        stmt = (
            select(Message.role, Message.content)
            .where(Message.session_id == session_id)
            .order_by(Message.sequence.desc())
            .limit(limit)
        )
        rows = (await self.db.execute(stmt)).all()
        return [HistoryTurn(role=role, content=content) for role, content in reversed(rows)]

    async def list_sessions(
        self, user_id: UUID, limit: int = RECENT_SESSIONS_LIMIT
    ) -> list[tuple[ChatSession, int]]:
        """Most recently updated sessions with their message counts."""
        stmt = (
            select(ChatSession, func.count(Message.id))
            .outerjoin(Message, Message.session_id == ChatSession.id)
            .where(ChatSession.user_id == user_id)
            .group_by(ChatSession.id)
            .order_by(ChatSession.updated_at.desc())
            .limit(limit)
        )
        rows = (await self.db.execute(stmt)).all()
        return [(chat_session, int(count)) for chat_session, count in rows]

    async def _get_owned_session(self, session_id: UUID, owner_id: UUID) -> ChatSession:
        stmt = select(ChatSession).where(
            ChatSession.id == session_id, ChatSession.user_id == owner_id
        )
        chat_session = (await self.db.execute(stmt)).scalar_one_or_none()
        if chat_session is None:
            raise NotFoundError("Session")
        return chat_session

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock the user row for update (SELECT FOR UPDATE)."""
        return await lock_user_row(self.db, user_id)
