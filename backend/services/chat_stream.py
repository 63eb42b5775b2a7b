"""
Module: chat_stream.py
Description: Streams one advisor reply and persists it with the disclaimer appended.

A chat turn moves through:
    CheckLimit -> ValidateOwnership -> BuildContext      (prepare, may raise)
    OpenStream -> RelayTokens -> AppendDisclaimer
        -> PersistAssistantMessage -> TouchSession       (relay, never raises)

Everything in ``prepare`` happens before the HTTP response starts, so its
failures are ordinary JSON errors. Once ``relay`` runs the response is
already open; model failures become a terminal ``error`` event and nothing
is persisted.

Usage:
    turn = await orchestrator.prepare(user_id, session_id, content)
    async for event in orchestrator.relay(turn, request.is_disconnected):
        yield encode_sse(event)
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from sqlalchemy.orm import sessionmaker

from models import ChatMessage
from .ai_service import AIService
from .chat_service import find_owned_session, utcnow
from .errors import QuotaExceededError
from .financial_summary import FinancialSummaryBuilder
from .observability import logger, metrics, log_rate_limited, log_stream_complete
from .usage_limiter import UsageLimiter


DISCLAIMER = (
    "\n\n_Not professional financial advice. "
    "Consult a licensed advisor for personalized guidance._"
)

STREAM_ERROR_MESSAGE = "Failed to generate response"


def encode_sse(event: dict) -> str:
    """Frame one event as a server-sent ``data:`` line."""
    return f"data: {json.dumps(event)}\n\n"


async def _next_event(stream: AsyncIterator[dict]) -> Optional[dict]:
    """Next event from ``stream``, or None once it is exhausted."""
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    await asyncio.wait({task})


@dataclass
class PreparedTurn:
    """Everything the relay needs, resolved before the response opens."""
    user_id: str
    session_id: str
    content: str
    system_prompt: str
    history: list[dict] = field(default_factory=list)


class ChatStreamOrchestrator:
    """Runs a streamed advisor turn end to end."""

    SYSTEM_PROMPT = """You are a friendly, knowledgeable personal financial advisor helping users understand their finances and reach their goals.

Tone & style:
- Be warm, conversational, and encouraging (not robotic or overly formal)
- Celebrate progress and provide constructive guidance
- Use everyday language, avoid excessive jargon

Guidelines:
- Reference specific data from the user's financial summary
- Provide actionable, concrete recommendations
- Include benchmark comparisons (user's trends + general financial norms)
- For spending anomalies: explain what happened, why it matters, what to do
- For investment observations: directional guidance only, never specific buy/sell actions
- Suggest relevant app pages with markdown links: [See your spending breakdown](/analytics), [View net worth trends](/net-worth), [Manage investments](/portfolio), [Review recurring charges](/recurring)
- A disclaimer is appended to every reply automatically; do not add your own.

Financial summary:
{financial_summary}"""

    def __init__(
        self,
        session_factory: sessionmaker,
        limiter: UsageLimiter,
        ai_service: AIService,
        summary_builder: FinancialSummaryBuilder,
        history_limit: int = 20,
        stream_timeout: float = 120,
        disconnect_poll_interval: float = 0.25,
    ):
        self.session_factory = session_factory
        self.limiter = limiter
        self.ai_service = ai_service
        self.summary_builder = summary_builder
        self.history_limit = history_limit
        self.stream_timeout = stream_timeout
        self.disconnect_poll_interval = disconnect_poll_interval

    # ==========================================================================
    # Pre-stream
    # ==========================================================================

    async def prepare(self, user_id: str, session_id: str, content: str) -> PreparedTurn:
        """
        Run the checks that must pass before any SSE frame is sent.

        Raises:
            QuotaExceededError: Daily quota exhausted.
            NotFoundError: Session missing or owned by another user.
        """
        status = await self.limiter.check_limit(user_id)
        if not status.allowed:
            log_rate_limited(user_id, status.reset_at)
            raise QuotaExceededError(status.reset_at)

        db = self.session_factory()
        try:
            find_owned_session(db, session_id, user_id)
            recent = (
                db.query(ChatMessage)
                .filter(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.created_at.desc())
                .limit(self.history_limit)
                .all()
            )
            # Oldest-first; the newest row is the turn being answered
            history = [
                {"role": m.role, "content": m.content}
                for m in reversed(recent[1:])
            ]
        finally:
            db.close()

        logger.set_context(user_id=user_id[:8], session_id=session_id[:8])
        logger.info("Stream requested", history=len(history))

        summary = await self.summary_builder.build(user_id)
        system_prompt = self.SYSTEM_PROMPT.format(
            financial_summary=summary.model_dump_json(indent=2)
        )

        return PreparedTurn(
            user_id=user_id,
            session_id=session_id,
            content=content,
            system_prompt=system_prompt,
            history=history,
        )

    # ==========================================================================
    # Streaming
    # ==========================================================================

    async def relay(
        self,
        turn: PreparedTurn,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[dict]:
        """
        Yield stream events for ``turn`` in model arrival order.

        On completion yields the disclaimer as a final delta, persists the full
        reply, bumps the session timestamp and yields ``message_stop``. A
        client disconnect stops consumption and closes the upstream call
        without persisting anything.
        """
        parts: list[str] = []
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stream_timeout

        model_stream = self.ai_service.stream_chat(turn.system_prompt, turn.history, turn.content)
        watcher = None
        if is_disconnected is not None:
            watcher = asyncio.create_task(self._watch_disconnect(is_disconnected))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()

                # Race the next chunk against the client going away and the deadline
                pending = asyncio.create_task(_next_event(model_stream))
                waiting = {pending} if watcher is None else {pending, watcher}
                done, _ = await asyncio.wait(waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

                if watcher is not None and watcher in done:
                    await _cancel(pending)
                    logger.info("Client disconnected, abandoning stream", session_id=turn.session_id[:8])
                    metrics.increment("chat.stream.cancelled")
                    return
                if pending not in done:
                    await _cancel(pending)
                    raise asyncio.TimeoutError()

                event = pending.result()
                if event is None:
                    break

                if event["type"] == "content_block_delta":
                    parts.append(event["content"])
                yield event
        except asyncio.TimeoutError:
            logger.error("Chat stream timed out", session_id=turn.session_id[:8], timeout_s=self.stream_timeout)
            metrics.increment("chat.stream.timeout")
            yield {"type": "error", "content": STREAM_ERROR_MESSAGE}
            return
        except Exception as e:
            logger.error("Chat stream failed", session_id=turn.session_id[:8], error=str(e))
            metrics.increment("chat.stream.error")
            yield {"type": "error", "content": STREAM_ERROR_MESSAGE}
            return
        finally:
            if watcher is not None:
                await _cancel(watcher)
            await model_stream.aclose()

        yield {"type": "content_block_delta", "content": DISCLAIMER}

        full_reply = "".join(parts) + DISCLAIMER
        try:
            self._persist_reply(turn, full_reply)
        except Exception as e:
            logger.error("Failed to persist assistant reply", session_id=turn.session_id[:8], error=str(e))
            metrics.increment("chat.stream.persist_error")
            yield {"type": "error", "content": "Failed to save response"}
            return

        log_stream_complete(len(parts), len(full_reply), (time.perf_counter() - started) * 1000)
        yield {"type": "message_stop"}

    async def _watch_disconnect(self, is_disconnected: Callable[[], Awaitable[bool]]) -> None:
        """Return once the client has gone away."""
        while not await is_disconnected():
            await asyncio.sleep(self.disconnect_poll_interval)

    def _persist_reply(self, turn: PreparedTurn, content: str) -> None:
        db = self.session_factory()
        try:
            session = find_owned_session(db, turn.session_id, turn.user_id)
            now = utcnow()
            db.add(ChatMessage(
                session_id=session.id,
                role="assistant",
                content=content,
                created_at=now,
            ))
            session.updated_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
