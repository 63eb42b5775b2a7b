"""
SQLAlchemy ORM models for the SpendWise advisor.

Includes:
    - Financial records read by the summary builder: Account, Transaction,
      RecurringTransaction, NetWorthSnapshot, SavingsGoal, Security,
      InvestmentHolding
    - Chat state: ChatSession, ChatMessage
    - InsightCache (invalidate-and-replace insight batches)

All user-owned rows are scoped by ``user_id`` (the identity layer's subject).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, DateTime,
    ForeignKey, Text, JSON, Index
)
from sqlalchemy.orm import relationship
from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """A financial account. ``type`` is CHECKING|SAVINGS|CREDIT|INVESTMENT."""
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    balance = Column(Float, nullable=False, default=0.0)
    include_in_net_worth = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    transactions = relationship("Transaction", back_populates="account")
    snapshots = relationship("NetWorthSnapshot", back_populates="account")
    holdings = relationship("InvestmentHolding", back_populates="account")


class Transaction(Base):
    """Core transaction data. ``type`` is INCOME|EXPENSE|TRANSFER; amounts are positive."""
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    account_id = Column(String, ForeignKey("accounts.id"))
    date = Column(Date, nullable=False)
    amount = Column(Float, nullable=False)
    type = Column(String, nullable=False)
    category = Column(String, nullable=False, default="Other")
    merchant = Column(String)
    description = Column(String)

    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
    )


class RecurringTransaction(Base):
    """Detected or user-flagged recurring charge."""
    __tablename__ = "recurring_transactions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    merchant_name = Column(String)
    frequency = Column(String, nullable=False)  # WEEKLY|BIWEEKLY|MONTHLY|QUARTERLY|ANNUALLY
    average_amount = Column(Float, nullable=False)
    is_active = Column(Boolean, default=True)


class NetWorthSnapshot(Base):
    """Point-in-time balance of one account."""
    __tablename__ = "net_worth_snapshots"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    date = Column(Date, nullable=False)
    balance = Column(Float, nullable=False)

    account = relationship("Account", back_populates="snapshots")

    __table_args__ = (
        Index("ix_net_worth_snapshots_user_date", "user_id", "date"),
    )


class SavingsGoal(Base):
    """User savings goal."""
    __tablename__ = "savings_goals"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    target_amount = Column(Float, nullable=False)
    current_amount = Column(Float, nullable=False, default=0.0)
    deadline = Column(Date)
    created_at = Column(DateTime, default=datetime.utcnow)


class Security(Base):
    """Tradable instrument referenced by holdings."""
    __tablename__ = "securities"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    ticker_symbol = Column(String)
    type = Column(String, nullable=False)  # equity|etf|mutual fund|fixed income|cash|...

    holdings = relationship("InvestmentHolding", back_populates="security")


class InvestmentHolding(Base):
    """Position in a security held in an investment account."""
    __tablename__ = "investment_holdings"

    id = Column(String, primary_key=True, default=_uuid)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    security_id = Column(String, ForeignKey("securities.id"), nullable=False)
    quantity = Column(Float, default=0.0)
    institution_value = Column(Float, nullable=False, default=0.0)

    account = relationship("Account", back_populates="holdings")
    security = relationship("Security", back_populates="holdings")


class ChatSession(Base):
    """Advisor chat conversation owned by one user."""
    __tablename__ = "chat_sessions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    messages = relationship(
        "ChatMessage",
        back_populates="session",
        order_by="ChatMessage.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_chat_sessions_user_updated", "user_id", "updated_at"),
    )


class ChatMessage(Base):
    """Individual chat message. ``role`` is user|assistant."""
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=_uuid)
    session_id = Column(String, ForeignKey("chat_sessions.id"), nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("ChatSession", back_populates="messages")

    __table_args__ = (
        Index("ix_chat_messages_session_created", "session_id", "created_at"),
    )


class InsightCache(Base):
    """
    One generated insight.

    Active insights have ``invalidated_at`` NULL. ``data_snapshot`` keeps the
    FinancialSummary the batch was generated from, verbatim.
    """
    __tablename__ = "insight_cache"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    insight_type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    priority = Column(Integer, nullable=False)
    data_snapshot = Column(JSON, nullable=False)
    generated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    invalidated_at = Column(DateTime)

    __table_args__ = (
        Index("ix_insight_cache_user_active", "user_id", "invalidated_at"),
    )
