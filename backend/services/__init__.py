"""Backend services for the AI financial advisor."""

from .ai_service import AIService
from .usage_limiter import UsageLimiter, RateLimitResult
from .financial_summary import FinancialSummaryBuilder
from .insight_cache import InsightCacheManager
from .goal_extractor import GoalExtractor
from .chat_service import ChatService
from .chat_stream import ChatStreamOrchestrator, PreparedTurn, encode_sse
from .errors import (
    AdvisorError,
    BadRequestError,
    NotFoundError,
    QuotaExceededError,
    UsageStoreUnavailableError,
    UpstreamModelError,
    ModelOutputError,
    ModelUnavailableError,
)

__all__ = [
    "AIService",
    "UsageLimiter",
    "RateLimitResult",
    "FinancialSummaryBuilder",
    "InsightCacheManager",
    "GoalExtractor",
    "ChatService",
    "ChatStreamOrchestrator",
    "PreparedTurn",
    "encode_sse",
    "AdvisorError",
    "BadRequestError",
    "NotFoundError",
    "QuotaExceededError",
    "UsageStoreUnavailableError",
    "UpstreamModelError",
    "ModelOutputError",
    "ModelUnavailableError",
]
