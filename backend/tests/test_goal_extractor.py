"""
Test Module: test_goal_extractor.py
Description: Unit tests for confidence-gated goal extraction.

Tests:
    - Confidence threshold
    - Conversation context rendering
    - Goal persistence rules
    - Model failures degrade to None
"""

import pytest
from datetime import date

from conftest import USER_ID, OTHER_USER_ID, seed_session
from models import SavingsGoal
from schemas import ParsedGoal
from services.errors import ModelOutputError, UpstreamModelError
from services.goal_extractor import GoalExtractor


class ScriptedGoals:
    """AIService stand-in returning a queued result from parse_goal."""

    def __init__(self, result):
        self.result = result
        self.contexts = []

    async def parse_goal(self, user_input, conversation_context=None):
        self.contexts.append(conversation_context)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def candidate(confidence, name="Japan trip", amount=5000.0, deadline=date(2026, 6, 1)):
    return ParsedGoal(name=name, target_amount=amount, deadline=deadline, confidence=confidence)


# =============================================================================
# Extraction
# =============================================================================

class TestExtract:
    """Tests for the confidence gate."""

    @pytest.mark.asyncio
    async def test_low_confidence_returns_none(self, db):
        extractor = GoalExtractor(db, ScriptedGoals(candidate(0.4)))

        assert await extractor.extract("maybe save something") is None

    @pytest.mark.asyncio
    async def test_high_confidence_returns_fields_verbatim(self, db):
        extractor = GoalExtractor(db, ScriptedGoals(candidate(0.9)))

        result = await extractor.extract("Save $5K for Japan by June")

        assert result is not None
        assert result.name == "Japan trip"
        assert result.target_amount == 5000.0
        assert result.deadline == date(2026, 6, 1)

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self, db):
        extractor = GoalExtractor(db, ScriptedGoals(candidate(0.5)))

        assert await extractor.extract("Save $5K for Japan") is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ModelOutputError("Model returned a malformed goal"),
        UpstreamModelError("Model call failed: parse_goal"),
    ])
    async def test_model_errors_degrade_to_none(self, db, error):
        extractor = GoalExtractor(db, ScriptedGoals(error))

        assert await extractor.extract("Save $5K for Japan") is None


# =============================================================================
# Conversation Context
# =============================================================================

class TestConversationContext:
    """Tests for chat history rendering."""

    def test_renders_last_five_oldest_first(self, db):
        session = seed_session(db, USER_ID, [
            ("user", f"message {i}") if i % 2 == 0 else ("assistant", f"message {i}")
            for i in range(7)
        ])

        context = GoalExtractor(db, None).build_conversation_context(USER_ID, session.id)

        assert context.splitlines() == [
            "user: message 2",
            "assistant: message 3",
            "user: message 4",
            "assistant: message 5",
            "user: message 6",
        ]

    def test_foreign_session_yields_no_context(self, db):
        session = seed_session(db, OTHER_USER_ID, [("user", "private")])

        assert GoalExtractor(db, None).build_conversation_context(USER_ID, session.id) is None

    def test_empty_session_yields_no_context(self, db):
        session = seed_session(db, USER_ID)

        assert GoalExtractor(db, None).build_conversation_context(USER_ID, session.id) is None


# =============================================================================
# Goal Creation
# =============================================================================

class TestCreateGoalFromText:
    """Tests for persisting extracted goals."""

    @pytest.mark.asyncio
    async def test_creates_goal_with_zero_progress(self, db):
        extractor = GoalExtractor(db, ScriptedGoals(candidate(0.9)))

        goal = await extractor.create_goal_from_text(USER_ID, "Save $5K for Japan by June")

        assert goal is not None
        assert goal.user_id == USER_ID
        assert goal.current_amount == 0.0
        assert goal.deadline == date(2026, 6, 1)
        assert db.query(SavingsGoal).count() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,amount", [(None, 5000.0), ("Japan trip", None)])
    async def test_missing_name_or_amount_is_not_parsed(self, db, name, amount):
        extractor = GoalExtractor(db, ScriptedGoals(candidate(0.95, name=name, amount=amount)))

        assert await extractor.create_goal_from_text(USER_ID, "Save for something") is None
        assert db.query(SavingsGoal).count() == 0

    @pytest.mark.asyncio
    async def test_session_context_is_passed_to_model(self, db):
        session = seed_session(db, USER_ID, [("user", "I want to visit Tokyo next spring")])
        ai = ScriptedGoals(candidate(0.8))

        await GoalExtractor(db, ai).create_goal_from_text(USER_ID, "save 5k for it", session.id)

        assert ai.contexts == ["user: I want to visit Tokyo next spring"]
