"""AI-generated insight cache with invalidate-and-replace semantics."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from models import InsightCache, Transaction
from .ai_service import AIService
from .errors import AdvisorError, ModelOutputError
from .financial_summary import FinancialSummaryBuilder
from .observability import logger, metrics, timed


class InsightCacheManager:
    """
    Keeps one active generation of insights per user.

    A regeneration marks every active row invalidated and inserts the new
    batch in the same transaction, invalidation first. Readers therefore see
    either the old generation or the new one, never both.
    """

    MIN_RECENT_TRANSACTIONS = 10
    SUFFICIENCY_WINDOW_DAYS = 60

    def __init__(
        self,
        db: DBSession,
        ai_service: AIService,
        summary_builder: FinancialSummaryBuilder,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.ai_service = ai_service
        self.summary_builder = summary_builder
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get_active(self, user_id: str) -> list[InsightCache]:
        """Active insights, most important (lowest priority number) first."""
        return (
            self.db.query(InsightCache)
            .filter(InsightCache.user_id == user_id)
            .filter(InsightCache.invalidated_at.is_(None))
            .order_by(InsightCache.priority.asc(), InsightCache.generated_at.asc())
            .all()
        )

    def has_sufficient_data(self, user_id: str) -> bool:
        cutoff = self._clock().date() - timedelta(days=self.SUFFICIENCY_WINDOW_DAYS)
        recent = (
            self.db.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .filter(Transaction.date >= cutoff)
            .count()
        )
        return recent >= self.MIN_RECENT_TRANSACTIONS

    @timed("insights.regenerate")
    async def regenerate(self, user_id: str) -> list[InsightCache]:
        """
        Replace the user's active insights with a freshly generated batch.

        Returns an empty list, without writing anything, when the user lacks
        recent transactions or the model's answer fails validation.

        Raises:
            UpstreamModelError: The model call itself failed.
            AdvisorError: The new batch could not be stored; the current one stays active.
        """
        if not self.has_sufficient_data(user_id):
            logger.info("Insight regeneration skipped, not enough recent data", user_id=user_id[:8])
            metrics.increment("insights.skipped")
            return []

        summary = await self.summary_builder.build(user_id)

        try:
            generated = await self.ai_service.generate_insights(summary)
        except ModelOutputError as e:
            logger.warning("Discarding unusable insight output", user_id=user_id[:8], error=str(e))
            metrics.increment("insights.degraded")
            return []

        if not generated:
            logger.info("Model produced no insights", user_id=user_id[:8])
            return []

        snapshot = summary.model_dump(mode="json")
        now = self._clock().replace(tzinfo=None)

        try:
            (
                self.db.query(InsightCache)
                .filter(InsightCache.user_id == user_id)
                .filter(InsightCache.invalidated_at.is_(None))
                .update({InsightCache.invalidated_at: now}, synchronize_session=False)
            )

            batch = [
                InsightCache(
                    user_id=user_id,
                    insight_type=insight.insight_type,
                    title=insight.title,
                    content=insight.content,
                    priority=insight.priority,
                    data_snapshot=snapshot,
                    # Offset so each row in a batch has a distinct timestamp
                    generated_at=now + timedelta(microseconds=index),
                )
                for index, insight in enumerate(generated)
            ]
            self.db.add_all(batch)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Failed to store regenerated insights", user_id=user_id[:8])
            metrics.increment("insights.store_error")
            raise AdvisorError("Failed to regenerate insights") from e

        for insight in batch:
            self.db.refresh(insight)

        logger.info("Insights regenerated", user_id=user_id[:8], count=len(batch))
        metrics.increment("insights.created", len(batch))
        return batch
