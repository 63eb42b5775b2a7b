"""Pydantic request/response schemas, the FinancialSummary value object and model-output contracts."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import date, datetime
from typing import Any, Optional, Literal

import pandas as pd


InsightType = Literal["spending_anomaly", "savings_opportunity", "investment_observation"]


# =============================================================================
# Financial Summary (context document)
# =============================================================================

class Timeframe(BaseModel):
    start: str
    end: str
    months: int = 6


class CategoryAmount(BaseModel):
    category: str
    amount: float


class CategoryShare(BaseModel):
    category: str
    amount: float
    percentage: float


class MerchantSpend(BaseModel):
    merchant: str
    amount: float
    category: str


class IncomeSummary(BaseModel):
    total: float
    monthly_average: float
    top_sources: list[CategoryAmount]


class ExpenseSummary(BaseModel):
    total: float
    monthly_average: float
    by_category: list[CategoryShare]
    top_merchants: list[MerchantSpend]


class AccountBalances(BaseModel):
    checking_balance: float
    savings_balance: float
    credit_debt: float
    investment_value: float
    net_worth: float


class RecurringItem(BaseModel):
    merchant: str
    frequency: str
    amount: float


class RecurringSummary(BaseModel):
    active_subscriptions: int
    monthly_recurring_cost: float
    top_recurring: list[RecurringItem]


class NetWorthTrend(BaseModel):
    current: float
    six_months_ago: float
    change_amount: float
    change_percentage: float


class HoldingShare(BaseModel):
    symbol: str
    value: float
    percentage: float


class AllocationShare(BaseModel):
    type: str
    value: float
    percentage: float


class InvestmentSummary(BaseModel):
    total_value: float
    holdings: list[HoldingShare]
    asset_allocation: list[AllocationShare]


class GoalProgress(BaseModel):
    name: str
    target: float
    current: float
    progress_percentage: float
    deadline: Optional[str] = None


class BehavioralPatterns(BaseModel):
    average_transaction_size: float
    spending_variability: Literal["stable", "moderate", "high"]
    top_spending_day_of_week: str


class FinancialSummary(BaseModel):
    """Trailing six-month projection of a user's records, used as model context."""
    timeframe: Timeframe
    income: IncomeSummary
    expenses: ExpenseSummary
    accounts: AccountBalances
    recurring: RecurringSummary
    net_worth_trend: NetWorthTrend
    investments: InvestmentSummary
    savings_goals: list[GoalProgress]
    behavioral_patterns: BehavioralPatterns


# =============================================================================
# Model Output Contracts
# =============================================================================

class GeneratedInsight(BaseModel):
    """One insight as returned by the model."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    insight_type: InsightType = Field(alias="insightType")
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    priority: int = Field(ge=1, le=5)


class GeneratedInsightBatch(BaseModel):
    insights: list[GeneratedInsight]


class ParsedGoal(BaseModel):
    """Goal-creation candidate extracted from free text."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    target_amount: Optional[float] = Field(default=None, alias="targetAmount")
    deadline: Optional[date] = None
    confidence: float = Field(ge=0, le=1)

    @field_validator("deadline", mode="before")
    @classmethod
    def lenient_deadline(cls, value: Any) -> Optional[date]:
        """Read loose phrasings like "June 2026"; anything unreadable becomes None."""
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str) or not value.strip():
            return None
        try:
            parsed = pd.Timestamp(value.strip())
        except (ValueError, TypeError, OverflowError):
            return None
        if pd.isna(parsed):
            return None
        return parsed.date()


# =============================================================================
# Chat Schemas
# =============================================================================

class CreateChatSessionRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class SendMessageRequest(BaseModel):
    """Request schema for the send-message operation."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1)
    content: str = Field(..., min_length=1, max_length=4000)


class ChatStreamRequest(BaseModel):
    """Body of the stream endpoint; missing fields are reported as 400 by the handler."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId")
    content: Optional[str] = None


class SendMessageResult(BaseModel):
    success: bool
    sessionId: str
    messageId: str


class ChatMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    role: str
    content: str
    metadata: Optional[dict] = Field(None, validation_alias="metadata_")
    created_at: datetime


class ChatSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: list[ChatMessageOut] = []


class RateLimitStatus(BaseModel):
    allowed: bool
    remaining: int
    resetAt: str


# =============================================================================
# Insight & Goal Schemas
# =============================================================================

class InsightCardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    insight_type: str
    title: str
    content: str
    priority: int
    generated_at: datetime


class GoalParseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input: str = Field(..., min_length=1, max_length=2000)
    session_id: Optional[str] = Field(None, alias="sessionId")


class SavingsGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    target_amount: float
    current_amount: float
    deadline: Optional[date] = None
    created_at: datetime


class GoalParseResult(BaseModel):
    parsed: bool
    goal: Optional[SavingsGoalOut] = None
    confidence: int


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    openai: str
