"""
Module: chat_service.py
Description: Advisor chat sessions and the quota-gated send-message operation.

Sending a message only records the user turn; the assistant reply is
produced by a separate streaming request (see chat_stream.py), which
expects the user turn to be persisted already.

Usage:
    chat_service = ChatService(db, limiter)
    message = await chat_service.send_message(user_id, session_id, "How am I doing?")
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session as DBSession

from models import ChatMessage, ChatSession
from .errors import NotFoundError, QuotaExceededError
from .observability import logger, metrics, log_chat_request, log_rate_limited
from .usage_limiter import RateLimitResult, UsageLimiter


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def find_owned_session(db: DBSession, session_id: str, user_id: str) -> ChatSession:
    """
    Load a chat session owned by ``user_id``.

    Raises:
        NotFoundError: The session does not exist or belongs to someone else.
    """
    session = (
        db.query(ChatSession)
        .filter(ChatSession.id == session_id)
        .filter(ChatSession.user_id == user_id)
        .first()
    )
    if not session:
        raise NotFoundError("Chat session not found")
    return session


class ChatService:
    """Chat session management and user-turn persistence."""

    def __init__(self, db: DBSession, limiter: UsageLimiter):
        self.db = db
        self.limiter = limiter

    def create_session(self, user_id: str, title: Optional[str] = None) -> ChatSession:
        now = utcnow()
        session = ChatSession(
            user_id=user_id,
            title=title or f"Chat {now.date().isoformat()}",
            created_at=now,
            updated_at=now,
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return session

    def list_sessions(self, user_id: str) -> list[ChatSession]:
        """The user's sessions, most recently active first."""
        return (
            self.db.query(ChatSession)
            .filter(ChatSession.user_id == user_id)
            .order_by(ChatSession.updated_at.desc())
            .all()
        )

    def get_session(self, user_id: str, session_id: str) -> ChatSession:
        return find_owned_session(self.db, session_id, user_id)

    async def rate_limit_status(self, user_id: str) -> RateLimitResult:
        return await self.limiter.check_limit(user_id)

    async def send_message(self, user_id: str, session_id: str, content: str) -> ChatMessage:
        """
        Record a user turn against today's quota.

        Raises:
            QuotaExceededError: The daily quota is used up.
            NotFoundError: The session is not the caller's.
            UsageStoreUnavailableError: The message could not be counted; nothing is stored.
        """
        status = await self.limiter.check_limit(user_id)
        if not status.allowed:
            log_rate_limited(user_id, status.reset_at)
            raise QuotaExceededError(status.reset_at)

        session = find_owned_session(self.db, session_id, user_id)
        log_chat_request(user_id, session_id, len(content))

        now = utcnow()
        message = ChatMessage(
            session_id=session.id,
            role="user",
            content=content,
            created_at=now,
        )
        session.updated_at = now
        self.db.add(message)
        self.db.flush()

        # Count before committing so a failed increment leaves nothing stored
        try:
            await self.limiter.increment_usage(user_id)
        except Exception:
            self.db.rollback()
            raise
        self.db.commit()
        self.db.refresh(message)

        logger.debug("User message stored", message_id=message.id)
        metrics.increment("chat.messages.user")
        return message
