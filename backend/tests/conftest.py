"""
Pytest configuration and shared fixtures for the SpendWise advisor tests.

This file is automatically loaded by pytest and provides:
    - A file-backed SQLite database per test
    - A dict-backed Redis test double
    - A scripted OpenAI client double
    - Record-seeding helpers and a wired-up FastAPI test client
"""

import json
import pytest
import sys
from pathlib import Path
from datetime import date, datetime, timedelta
from types import SimpleNamespace

from redis.exceptions import ConnectionError as RedisConnectionError

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Settings
from database import create_session_factory, init_db
from models import Account, ChatMessage, ChatSession, Transaction


USER_ID = "user_alice_0001"
OTHER_USER_ID = "user_bob_0002"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database with all tables created."""
    factory = create_session_factory(f"sqlite:///{tmp_path / 'advisor.db'}")
    init_db(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Redis Test Double
# =============================================================================

class FakeRedis:
    """Just enough of redis.asyncio.Redis for the usage limiter."""

    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def incr(self, key):
        self._check()
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def ttl(self, key):
        self._check()
        if key not in self.store:
            return -2
        return self.expiry.get(key, -1)

    async def ping(self):
        self._check()
        return True

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.commands = []

    def set(self, *args, **kwargs):
        self.commands.append(("set", args, kwargs))
        return self

    def incr(self, *args, **kwargs):
        self.commands.append(("incr", args, kwargs))
        return self

    async def execute(self):
        self.redis._check()
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.commands = []
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


# =============================================================================
# OpenAI Client Double
# =============================================================================

def stream_chunk(content=None, finish_reason=None):
    """One chat.completion.chunk as the SDK exposes it."""
    return SimpleNamespace(
        choices=[SimpleNamespace(
            delta=SimpleNamespace(content=content),
            finish_reason=finish_reason,
        )]
    )


def tool_response(arguments, total_tokens=42):
    """A chat.completion whose single tool call carries ``arguments``."""
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    tool_call = SimpleNamespace(function=SimpleNamespace(name="tool", arguments=arguments))
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[tool_call], content=None))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


class FakeStream:
    """Async iterator over scripted chunks; may raise after the chunks run out."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.chunks:
            return self.chunks.pop(0)
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self):
        self.responses = []
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeOpenAI:
    """Scripted stand-in for openai.AsyncOpenAI; queue responses on ``completions``."""

    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)
        self.models = SimpleNamespace(list=self._list_models)

    async def _list_models(self):
        return []

    def queue(self, *responses):
        self.completions.responses.extend(responses)


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def sample_summary():
    """A small, fully populated FinancialSummary."""
    from schemas import (
        AccountBalances, BehavioralPatterns, CategoryAmount, CategoryShare,
        ExpenseSummary, FinancialSummary, IncomeSummary, InvestmentSummary,
        MerchantSpend, NetWorthTrend, RecurringSummary, Timeframe,
    )

    return FinancialSummary(
        timeframe=Timeframe(start="2025-12-30", end="2026-06-30"),
        income=IncomeSummary(
            total=24000.0,
            monthly_average=4000.0,
            top_sources=[CategoryAmount(category="Salary", amount=24000.0)],
        ),
        expenses=ExpenseSummary(
            total=12000.0,
            monthly_average=2000.0,
            by_category=[
                CategoryShare(category="Rent", amount=9000.0, percentage=75.0),
                CategoryShare(category="Dining", amount=3000.0, percentage=25.0),
            ],
            top_merchants=[MerchantSpend(merchant="Landlord", amount=9000.0, category="Rent")],
        ),
        accounts=AccountBalances(
            checking_balance=2500.0,
            savings_balance=8000.0,
            credit_debt=600.0,
            investment_value=0.0,
            net_worth=9900.0,
        ),
        recurring=RecurringSummary(active_subscriptions=0, monthly_recurring_cost=0.0, top_recurring=[]),
        net_worth_trend=NetWorthTrend(current=9900.0, six_months_ago=8000.0,
                                      change_amount=1900.0, change_percentage=23.75),
        investments=InvestmentSummary(total_value=0.0, holdings=[], asset_allocation=[]),
        savings_goals=[],
        behavioral_patterns=BehavioralPatterns(
            average_transaction_size=85.0,
            spending_variability="stable",
            top_spending_day_of_week="Friday",
        ),
    )


# =============================================================================
# Seeding Helpers
# =============================================================================

def seed_transactions(db, user_id, rows, account=None):
    """
    Insert transactions from ``(date, amount, type, category, merchant)`` tuples.

    Returns the account they were booked against.
    """
    if account is None:
        account = Account(user_id=user_id, name="Everyday Checking", type="CHECKING", balance=1000.0)
        db.add(account)
        db.flush()
    for day, amount, tx_type, category, merchant in rows:
        db.add(Transaction(
            user_id=user_id,
            account_id=account.id,
            date=day,
            amount=amount,
            type=tx_type,
            category=category,
            merchant=merchant,
        ))
    db.commit()
    return account


def recent_expenses(count, today=None, amount=20.0):
    """``count`` expense rows spread over the last few weeks."""
    today = today or date.today()
    return [
        (today - timedelta(days=i + 1), amount, "EXPENSE", "Dining", "Corner Cafe")
        for i in range(count)
    ]


def seed_session(db, user_id, messages=()):
    """Create a chat session with ``(role, content)`` messages one second apart."""
    start = datetime(2026, 1, 1, 12, 0, 0)
    session = ChatSession(user_id=user_id, title="Budget chat", created_at=start, updated_at=start)
    db.add(session)
    db.flush()
    for i, (role, content) in enumerate(messages):
        db.add(ChatMessage(
            session_id=session.id,
            role=role,
            content=content,
            created_at=start + timedelta(seconds=i + 1),
        ))
    db.commit()
    db.refresh(session)
    return session


# =============================================================================
# API Fixtures
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret-0123456789abcdef-0123456789",
        environment="test",
        daily_message_limit=3,
    )


@pytest.fixture
def app(settings, session_factory, fake_redis, fake_openai):
    """Application wired to the test doubles; the lifespan hook is not run."""
    from main import configure_services, create_app

    application = create_app(settings)
    configure_services(application, settings, session_factory, fake_redis, fake_openai)
    return application


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Bearer header for ``USER_ID`` signed with the test secret."""
    import jwt

    def make(user_id=USER_ID, secret="test-secret-0123456789abcdef-0123456789"):
        token = jwt.encode({"sub": user_id}, secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return make
