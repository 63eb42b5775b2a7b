"""
Module: financial_summary.py
Description: Compresses six months of a user's records into a bounded context document.

The summary is recomputed on every call; nothing is cached. The window ends
at the user's most recent transaction date (today when there are none) and
starts six calendar months earlier.

The six record fetches are independent reads, so they run concurrently in
worker threads, each with its own database session, and are joined before
any aggregation starts.

Usage:
    builder = FinancialSummaryBuilder(SessionLocal)
    summary = await builder.build(user_id)
    context = summary.model_dump(mode="json")
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Callable, Optional

import numpy as np
import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession, sessionmaker

from models import (
    Account, Transaction, RecurringTransaction, NetWorthSnapshot,
    SavingsGoal, InvestmentHolding, Security
)
from schemas import (
    FinancialSummary, Timeframe, IncomeSummary, ExpenseSummary, AccountBalances,
    RecurringSummary, NetWorthTrend, InvestmentSummary, BehavioralPatterns,
    CategoryAmount, CategoryShare, MerchantSpend, RecurringItem, HoldingShare,
    AllocationShare, GoalProgress
)
from .observability import logger, timed


WINDOW_MONTHS = 6
TOP_INCOME_SOURCES = 3
TOP_MERCHANTS = 10
TOP_RECURRING = 5

# Coefficient-of-variation cut-offs for monthly spend
STABLE_CV = 0.15
MODERATE_CV = 0.30

# Sunday-first, matching calendar display order
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

TRANSACTION_COLUMNS = ["date", "amount", "type", "category", "merchant"]
SNAPSHOT_COLUMNS = ["account_id", "date", "balance"]
HOLDING_COLUMNS = ["symbol", "security_type", "value"]


def _ratio(numerator: float, denominator: float) -> float:
    """Division that yields 0 instead of raising on a zero denominator."""
    if denominator == 0:
        return 0.0
    return float(numerator) / float(denominator)


def shift_months(day: date, months: int) -> date:
    """Move ``day`` by whole calendar months, clamping to the month's last day."""
    return (pd.Timestamp(day) + pd.DateOffset(months=months)).date()


def classify_variability(monthly_totals: list[float]) -> str:
    """Bucket monthly spend into stable / moderate / high by coefficient of variation."""
    values = np.asarray(monthly_totals, dtype=float)
    mean = values.mean() if values.size else 0.0
    cv = float(values.std() / mean) if mean != 0 else 0.0

    if cv < STABLE_CV:
        return "stable"
    if cv < MODERATE_CV:
        return "moderate"
    return "high"


class FinancialSummaryBuilder:
    """Builds a FinancialSummary from the record store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            session_factory: Factory for read sessions; one session per fetch.
            clock: Source of "now" (UTC), used when a user has no transactions.
        """
        self.session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @timed("financial_summary.build")
    async def build(self, user_id: str) -> FinancialSummary:
        """Project the user's records onto a FinancialSummary."""
        end_date = await self._read(self._fetch_latest_transaction_date, user_id)
        if end_date is None:
            end_date = self._clock().date()
        start_date = shift_months(end_date, -WINDOW_MONTHS)

        (
            accounts,
            transactions,
            recurring,
            snapshots,
            goals,
            holdings,
        ) = await asyncio.gather(
            self._read(self._fetch_accounts, user_id),
            self._read(self._fetch_transactions, user_id, start_date, end_date),
            self._read(self._fetch_recurring, user_id),
            self._read(self._fetch_snapshots, user_id, start_date, end_date),
            self._read(self._fetch_goals, user_id),
            self._read(self._fetch_holdings, user_id),
        )

        logger.debug(
            "Summary inputs loaded",
            transactions=len(transactions),
            accounts=len(accounts),
            holdings=len(holdings),
        )

        tx = pd.DataFrame(transactions, columns=TRANSACTION_COLUMNS)
        tx["date"] = pd.to_datetime(tx["date"])
        tx["amount"] = tx["amount"].astype(float)
        income = tx[tx["type"] == "INCOME"]
        expenses = tx[tx["type"] == "EXPENSE"].sort_values("date", ascending=False, kind="mergesort")

        return FinancialSummary(
            timeframe=Timeframe(
                start=start_date.isoformat(),
                end=end_date.isoformat(),
                months=WINDOW_MONTHS,
            ),
            income=self._summarize_income(income),
            expenses=self._summarize_expenses(expenses),
            accounts=self._summarize_accounts(accounts),
            recurring=self._summarize_recurring(recurring),
            net_worth_trend=self._summarize_net_worth_trend(snapshots),
            investments=self._summarize_investments(holdings),
            savings_goals=self._summarize_goals(goals),
            behavioral_patterns=self._summarize_behavior(expenses, end_date),
        )

    # ==========================================================================
    # Record Fetches (each runs in a worker thread with its own session)
    # ==========================================================================

    async def _read(self, fetch: Callable, *args):
        return await asyncio.to_thread(self._run_in_session, fetch, *args)

    def _run_in_session(self, fetch: Callable, *args):
        db = self.session_factory()
        try:
            return fetch(db, *args)
        finally:
            db.close()

    @staticmethod
    def _fetch_latest_transaction_date(db: DBSession, user_id: str) -> Optional[date]:
        return (
            db.query(func.max(Transaction.date))
            .filter(Transaction.user_id == user_id)
            .scalar()
        )

    @staticmethod
    def _fetch_accounts(db: DBSession, user_id: str) -> list[tuple]:
        return [
            (a.type, a.balance)
            for a in db.query(Account)
            .filter(Account.user_id == user_id)
            .filter(Account.include_in_net_worth.is_(True))
            .all()
        ]

    @staticmethod
    def _fetch_transactions(db: DBSession, user_id: str, start: date, end: date) -> list[tuple]:
        return [
            (t.date, t.amount, t.type, t.category, t.merchant)
            for t in db.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .filter(Transaction.date >= start, Transaction.date <= end)
            .order_by(Transaction.date.desc())
            .all()
        ]

    @staticmethod
    def _fetch_recurring(db: DBSession, user_id: str) -> list[tuple]:
        return [
            (r.merchant_name, r.frequency, r.average_amount)
            for r in db.query(RecurringTransaction)
            .filter(RecurringTransaction.user_id == user_id)
            .filter(RecurringTransaction.is_active.is_(True))
            .all()
        ]

    @staticmethod
    def _fetch_snapshots(db: DBSession, user_id: str, start: date, end: date) -> list[tuple]:
        return [
            (s.account_id, s.date, s.balance)
            for s in db.query(NetWorthSnapshot)
            .filter(NetWorthSnapshot.user_id == user_id)
            .filter(NetWorthSnapshot.date >= start, NetWorthSnapshot.date <= end)
            .order_by(NetWorthSnapshot.date.asc())
            .all()
        ]

    @staticmethod
    def _fetch_goals(db: DBSession, user_id: str) -> list[tuple]:
        return [
            (g.name, g.target_amount, g.current_amount, g.deadline)
            for g in db.query(SavingsGoal)
            .filter(SavingsGoal.user_id == user_id)
            .order_by(SavingsGoal.created_at.asc())
            .all()
        ]

    @staticmethod
    def _fetch_holdings(db: DBSession, user_id: str) -> list[tuple]:
        rows = (
            db.query(InvestmentHolding, Security)
            .join(Security, InvestmentHolding.security_id == Security.id)
            .join(Account, InvestmentHolding.account_id == Account.id)
            .filter(Account.user_id == user_id)
            .all()
        )
        return [
            (security.ticker_symbol or security.name, security.type, holding.institution_value)
            for holding, security in rows
        ]

    # ==========================================================================
    # Aggregations
    # ==========================================================================

    def _summarize_income(self, income: pd.DataFrame) -> IncomeSummary:
        total = float(income["amount"].sum())
        by_category = (
            income.groupby("category")["amount"].sum()
            .sort_values(ascending=False, kind="mergesort")
        )
        return IncomeSummary(
            total=total,
            monthly_average=total / WINDOW_MONTHS,
            top_sources=[
                CategoryAmount(category=category, amount=float(amount))
                for category, amount in by_category.head(TOP_INCOME_SOURCES).items()
            ],
        )

    def _summarize_expenses(self, expenses: pd.DataFrame) -> ExpenseSummary:
        total = float(expenses["amount"].sum())

        by_category = (
            expenses.groupby("category")["amount"].sum()
            .sort_values(ascending=False, kind="mergesort")
        )

        merchants = expenses.assign(
            merchant=expenses["merchant"].where(
                expenses["merchant"].notna() & (expenses["merchant"] != ""), "Unknown"
            )
        )
        # Rows are newest-first, so "first" picks the latest category seen per merchant
        by_merchant = (
            merchants.groupby("merchant", sort=False)
            .agg(amount=("amount", "sum"), category=("category", "first"))
            .sort_values("amount", ascending=False, kind="mergesort")
            .head(TOP_MERCHANTS)
        )

        return ExpenseSummary(
            total=total,
            monthly_average=total / WINDOW_MONTHS,
            by_category=[
                CategoryShare(
                    category=category,
                    amount=float(amount),
                    percentage=_ratio(amount, total) * 100,
                )
                for category, amount in by_category.items()
            ],
            top_merchants=[
                MerchantSpend(merchant=merchant, amount=float(row.amount), category=row.category)
                for merchant, row in by_merchant.iterrows()
            ],
        )

    def _summarize_accounts(self, accounts: list[tuple]) -> AccountBalances:
        totals = {"CHECKING": 0.0, "SAVINGS": 0.0, "CREDIT": 0.0, "INVESTMENT": 0.0}
        for account_type, balance in accounts:
            if account_type in totals:
                totals[account_type] += float(balance or 0)

        return AccountBalances(
            checking_balance=totals["CHECKING"],
            savings_balance=totals["SAVINGS"],
            credit_debt=totals["CREDIT"],
            investment_value=totals["INVESTMENT"],
            net_worth=(
                totals["CHECKING"] + totals["SAVINGS"] + totals["INVESTMENT"] - totals["CREDIT"]
            ),
        )

    def _summarize_recurring(self, recurring: list[tuple]) -> RecurringSummary:
        monthly_cost = sum(float(amount) for _, frequency, amount in recurring if frequency == "MONTHLY")
        top = sorted(recurring, key=lambda r: float(r[2]), reverse=True)[:TOP_RECURRING]

        return RecurringSummary(
            active_subscriptions=len(recurring),
            monthly_recurring_cost=monthly_cost,
            top_recurring=[
                RecurringItem(merchant=merchant or "Unknown", frequency=frequency, amount=float(amount))
                for merchant, frequency, amount in top
            ],
        )

    def _summarize_net_worth_trend(self, snapshots: list[tuple]) -> NetWorthTrend:
        df = pd.DataFrame(snapshots, columns=SNAPSHOT_COLUMNS)
        if df.empty:
            return NetWorthTrend(current=0.0, six_months_ago=0.0, change_amount=0.0, change_percentage=0.0)

        df = df.sort_values("date", kind="mergesort")
        per_account = df.groupby("account_id")["balance"]
        before = float(per_account.first().sum())
        current = float(per_account.last().sum())
        change = current - before

        return NetWorthTrend(
            current=current,
            six_months_ago=before,
            change_amount=change,
            change_percentage=_ratio(change, before) * 100,
        )

    def _summarize_investments(self, holdings: list[tuple]) -> InvestmentSummary:
        df = pd.DataFrame(holdings, columns=HOLDING_COLUMNS)
        df["value"] = df["value"].astype(float)
        total = float(df["value"].sum())

        allocation = df.groupby("security_type", sort=False)["value"].sum()

        return InvestmentSummary(
            total_value=total,
            holdings=[
                HoldingShare(symbol=row.symbol, value=float(row.value), percentage=_ratio(row.value, total) * 100)
                for row in df.itertuples(index=False)
            ],
            asset_allocation=[
                AllocationShare(type=security_type, value=float(value), percentage=_ratio(value, total) * 100)
                for security_type, value in allocation.items()
            ],
        )

    def _summarize_goals(self, goals: list[tuple]) -> list[GoalProgress]:
        return [
            GoalProgress(
                name=name,
                target=float(target),
                current=float(current or 0),
                progress_percentage=_ratio(current or 0, target) * 100,
                deadline=deadline.isoformat() if deadline else None,
            )
            for name, target, current, deadline in goals
        ]

    def _summarize_behavior(self, expenses: pd.DataFrame, end_date: date) -> BehavioralPatterns:
        total = float(expenses["amount"].sum())
        average_size = _ratio(total, len(expenses))

        # Trailing monthly buckets [end - (i+1) months, end - i months)
        monthly_totals = []
        for i in range(WINDOW_MONTHS):
            month_start = pd.Timestamp(shift_months(end_date, -(i + 1)))
            month_end = pd.Timestamp(shift_months(end_date, -i))
            in_month = (expenses["date"] >= month_start) & (expenses["date"] < month_end)
            monthly_totals.append(float(expenses.loc[in_month, "amount"].sum()))

        # pandas dayofweek is Monday=0; DAY_NAMES is Sunday-first
        day_totals = {name: 0.0 for name in DAY_NAMES}
        for weekday, amount in expenses.groupby(expenses["date"].dt.dayofweek)["amount"].sum().items():
            day_totals[DAY_NAMES[(int(weekday) + 1) % 7]] += float(amount)
        top_day = max(day_totals, key=day_totals.get)

        return BehavioralPatterns(
            average_transaction_size=average_size,
            spending_variability=classify_variability(monthly_totals),
            top_spending_day_of_week=top_day,
        )
