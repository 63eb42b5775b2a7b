"""
Module: observability.py
Description: Logging and metrics tracking for the SpendWise advisor.

Features:
    - Structured logging with task-local context (user_id, session_id)
    - Timing decorators for performance monitoring
    - In-memory metrics collection and reporting

Usage:
    from services.observability import logger, metrics, timed

    @timed("financial_summary.build")
    async def build(user_id):
        logger.info("Building summary", user_id=user_id)
        ...
"""

import time
import asyncio
import logging
import functools
from contextvars import ContextVar
from datetime import datetime
from typing import Dict, Any, Optional, Callable
from collections import defaultdict


# =============================================================================
# Structured Logger
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


class StructuredLogger:
    """
    Structured logger producing ``message | key=value`` lines.

    Context fields live in a ContextVar, so each request task sees only the
    fields it set itself.
    """

    def __init__(self, name: str = "spendwise-advisor"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(logging.INFO)
            formatter = logging.Formatter(
                '%(asctime)s | %(levelname)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def set_context(self, **kwargs) -> None:
        """Set context fields included in all logs of the current task."""
        _log_context.set({**_log_context.get(), **kwargs})

    def clear_context(self) -> None:
        _log_context.set({})

    def _format_message(self, message: str, **kwargs) -> str:
        fields = {**_log_context.get(), **kwargs}
        if fields:
            field_str = " | ".join(f"{k}={v}" for k, v in fields.items())
            return f"{message} | {field_str}"
        return message

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs) -> None:
        self.logger.error(self._format_message(message, **kwargs))

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(self._format_message(message, **kwargs))

    def exception(self, message: str, **kwargs) -> None:
        """Log exception with traceback."""
        self.logger.exception(self._format_message(message, **kwargs))


# =============================================================================
# Metrics Collector
# =============================================================================

class MetricsCollector:
    """
    In-memory counters and timing histograms.

    Note: swap for a Prometheus/StatsD client when running more than one worker.
    """

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.timings: Dict[str, list] = defaultdict(list)
        self._start_time = datetime.utcnow()

    def increment(self, name: str, value: int = 1, tags: Dict[str, str] = None) -> None:
        key = self._make_key(name, tags)
        self.counters[key] += value

    def timing(self, name: str, duration_ms: float, tags: Dict[str, str] = None) -> None:
        key = self._make_key(name, tags)
        self.timings[key].append(duration_ms)
        # Keep only last 1000 measurements
        if len(self.timings[key]) > 1000:
            self.timings[key] = self.timings[key][-1000:]

    def _make_key(self, name: str, tags: Optional[Dict[str, str]] = None) -> str:
        if tags:
            tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
            return f"{name}:{tag_str}"
        return name

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics."""
        summary = {
            "uptime_seconds": (datetime.utcnow() - self._start_time).total_seconds(),
            "counters": dict(self.counters),
            "timings": {},
        }

        for name, values in self.timings.items():
            if values:
                ordered = sorted(values)
                summary["timings"][name] = {
                    "count": len(values),
                    "avg_ms": sum(values) / len(values),
                    "min_ms": ordered[0],
                    "max_ms": ordered[-1],
                    "p50_ms": ordered[len(values) // 2],
                    "p95_ms": ordered[int(len(values) * 0.95)] if len(values) >= 20 else None,
                }

        return summary


# =============================================================================
# Timing Decorator
# =============================================================================

def timed(name: str = None):
    """
    Decorator to time function execution and record metrics.

    Example:
        @timed("insights.regenerate")
        async def regenerate(user_id):
            ...
    """
    def decorator(func: Callable) -> Callable:
        metric_name = name or func.__name__

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                metrics.increment(f"{metric_name}.success")
                return result
            except Exception:
                metrics.increment(f"{metric_name}.error")
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.timing(metric_name, duration_ms)
                logger.debug(f"{metric_name} completed", duration_ms=f"{duration_ms:.2f}")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                metrics.increment(f"{metric_name}.success")
                return result
            except Exception:
                metrics.increment(f"{metric_name}.error")
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.timing(metric_name, duration_ms)
                logger.debug(f"{metric_name} completed", duration_ms=f"{duration_ms:.2f}")

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# =============================================================================
# Global Instances
# =============================================================================

logger = StructuredLogger()
metrics = MetricsCollector()


# =============================================================================
# Convenience Functions
# =============================================================================

def log_chat_request(user_id: str, session_id: str, message_length: int) -> None:
    logger.set_context(user_id=user_id[:8], session_id=session_id[:8])
    logger.info("Chat request", msg_length=message_length)
    metrics.increment("chat.requests")


def log_rate_limited(user_id: str, reset_at: datetime) -> None:
    logger.warning("Daily chat quota exhausted", user_id=user_id[:8], reset_at=reset_at.isoformat())
    metrics.increment("chat.rate_limited")


def log_stream_complete(chunks: int, characters: int, duration_ms: float) -> None:
    logger.info("Stream completed", chunks=chunks, chars=characters, duration_ms=f"{duration_ms:.2f}")
    metrics.increment("chat.stream.completed")
    metrics.timing("chat.stream", duration_ms)


def log_model_call(operation: str, tokens: int, duration_ms: float) -> None:
    logger.debug("Model call", operation=operation, tokens=tokens, duration_ms=f"{duration_ms:.2f}")
    metrics.increment("openai.calls", tags={"operation": operation})
    metrics.increment("openai.tokens", tokens)
    metrics.timing("openai.latency", duration_ms)
