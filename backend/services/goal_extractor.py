"""
Module: goal_extractor.py
Description: Confidence-gated extraction of savings goals from free text.

Usage:
    extractor = GoalExtractor(db, ai_service)
    goal = await extractor.create_goal_from_text(user_id, "Save $5K for Japan by June")
"""

from typing import Optional

from sqlalchemy.orm import Session as DBSession

from models import ChatMessage, ChatSession, SavingsGoal
from schemas import ParsedGoal
from .ai_service import AIService
from .errors import UpstreamModelError
from .observability import logger, metrics


class GoalExtractor:
    """Turns freeform text (plus optional chat context) into a SavingsGoal."""

    CONFIDENCE_THRESHOLD = 0.5
    CONTEXT_MESSAGES = 5

    def __init__(self, db: DBSession, ai_service: AIService):
        self.db = db
        self.ai_service = ai_service

    def build_conversation_context(self, user_id: str, session_id: str) -> Optional[str]:
        """
        Render the session's last few messages oldest-first as ``role: content`` lines.

        Returns None when the session is missing, not owned by ``user_id``, or empty.
        """
        session = (
            self.db.query(ChatSession)
            .filter(ChatSession.id == session_id)
            .filter(ChatSession.user_id == user_id)
            .first()
        )
        if not session:
            return None

        recent = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.session_id == session.id)
            .order_by(ChatMessage.created_at.desc())
            .limit(self.CONTEXT_MESSAGES)
            .all()
        )
        if not recent:
            return None

        return "\n".join(f"{m.role}: {m.content}" for m in reversed(recent))

    async def extract(
        self,
        user_input: str,
        conversation_context: Optional[str] = None,
    ) -> Optional[ParsedGoal]:
        """
        Ask the model for a goal candidate.

        Returns None when confidence is below the threshold or the model call
        fails in any way; goal parsing is advisory and never raises.
        """
        try:
            candidate = await self.ai_service.parse_goal(user_input, conversation_context)
        except UpstreamModelError as e:
            logger.warning("Goal extraction failed", error=str(e))
            metrics.increment("goals.extraction_failed")
            return None

        if candidate.confidence < self.CONFIDENCE_THRESHOLD:
            logger.info("Goal candidate below confidence threshold", confidence=candidate.confidence)
            metrics.increment("goals.low_confidence")
            return None

        return candidate

    async def create_goal_from_text(
        self,
        user_id: str,
        user_input: str,
        session_id: Optional[str] = None,
    ) -> Optional[SavingsGoal]:
        """Extract a goal and persist it when both name and amount are present."""
        context = self.build_conversation_context(user_id, session_id) if session_id else None

        candidate = await self.extract(user_input, context)
        if candidate is None or not candidate.name or not candidate.target_amount:
            return None

        goal = SavingsGoal(
            user_id=user_id,
            name=candidate.name,
            target_amount=candidate.target_amount,
            current_amount=0.0,
            deadline=candidate.deadline,
        )
        self.db.add(goal)
        self.db.commit()
        self.db.refresh(goal)

        logger.info("Savings goal created from text", user_id=user_id[:8], goal_id=goal.id)
        metrics.increment("goals.created")
        return goal
