"""
OpenAI wrapper for the advisor: streamed chat, insight batches and goal extraction.

Features:
    - Token streaming mapped onto content_block_* events
    - Structured output through forced function calling
    - Strict pydantic validation of every structured answer
    - Token usage tracking

Model calls are never retried here; a failed call surfaces as
UpstreamModelError and the caller decides whether to degrade.
"""

import json
import time
from typing import AsyncIterator, Optional

from pydantic import ValidationError

from schemas import FinancialSummary, GeneratedInsight, GeneratedInsightBatch, ParsedGoal
from .errors import ModelOutputError, ModelUnavailableError, UpstreamModelError
from .observability import logger, log_model_call


DEFAULT_MODEL = "gpt-4o"
MAX_INSIGHTS = 5

INSIGHT_GENERATOR_SYSTEM_PROMPT = """You are a financial analyst generating pre-loaded insights from user financial data. Your goal is to identify the 3-5 most impactful observations that will help the user improve their financial situation.

Insight categories:
1. spending_anomaly - unusual patterns, spikes, or concerning trends
2. savings_opportunity - areas where the user could cut back or optimize
3. investment_observation - portfolio balance, allocation, diversification (directional only)

For each insight:
- title: clear, attention-grabbing (8-12 words)
- content: a mini-report covering what happened (specific data), why it matters, and 1-3 concrete action steps
- priority: 1 (highest impact) to 5 (lowest impact)
- Include both warnings and positive reinforcement
- Compare against the user's own history ("20% more than your 6-month average")
- Reference general norms ("financial advisors recommend <30% on housing")

If there is not enough data for meaningful insights, return an empty list.

Financial summary:
{financial_summary}"""

GOAL_PARSER_SYSTEM_PROMPT = """You are a goal extraction assistant. Parse freeform user input to extract savings goal details.

Input examples:
- "I want to save $5K for a vacation by June"
- "Need to build an emergency fund of 10000 dollars"
- "Save 15000 for a car down payment in 12 months"

Extract:
- name: goal description (vacation, emergency fund, car, wedding, ...)
- targetAmount: numeric dollar amount
- deadline: ISO date (YYYY-MM-DD) if mentioned, else null
- confidence: 0.0-1.0, how confident you are in the extraction

If no meaningful goal can be extracted, return nulls with confidence 0.0.

Conversation context:
{conversation_context}"""

INSIGHTS_TOOL = {
    "type": "function",
    "function": {
        "name": "record_insights",
        "description": "Record 3-5 financial insights, most impactful first",
        "parameters": {
            "type": "object",
            "properties": {
                "insights": {
                    "type": "array",
                    "maxItems": MAX_INSIGHTS,
                    "items": {
                        "type": "object",
                        "properties": {
                            "insightType": {
                                "type": "string",
                                "enum": [
                                    "spending_anomaly",
                                    "savings_opportunity",
                                    "investment_observation",
                                ],
                            },
                            "title": {"type": "string"},
                            "content": {"type": "string"},
                            "priority": {"type": "integer", "minimum": 1, "maximum": 5},
                        },
                        "required": ["insightType", "title", "content", "priority"],
                    },
                }
            },
            "required": ["insights"],
        },
    },
}

GOAL_TOOL = {
    "type": "function",
    "function": {
        "name": "record_goal",
        "description": "Record the savings goal found in the user's text",
        "parameters": {
            "type": "object",
            "properties": {
                "name": {"type": ["string", "null"]},
                "targetAmount": {"type": ["number", "null"]},
                "deadline": {"type": ["string", "null"], "description": "YYYY-MM-DD"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": ["name", "targetAmount", "deadline", "confidence"],
        },
    },
}


class AIService:
    """
    Thin layer over an injected ``openai.AsyncOpenAI`` client.

    The client is created once at startup (see main.lifespan); ``client=None``
    means no credential is configured and every call raises ModelUnavailableError.
    """

    def __init__(
        self,
        client=None,
        model: str = DEFAULT_MODEL,
        request_timeout: float = 30,
        max_tokens: int = 2048,
    ):
        self.client = client
        self.model = model
        self.request_timeout = request_timeout
        self.max_tokens = max_tokens

        self.total_tokens_used = 0
        self.request_count = 0

    @property
    def available(self) -> bool:
        return self.client is not None

    def _require_client(self):
        if self.client is None:
            raise ModelUnavailableError("The AI advisor is not configured.")
        return self.client

    def _track_usage(self, operation: str, response, started: float) -> None:
        tokens = 0
        if getattr(response, "usage", None):
            tokens = response.usage.total_tokens
            self.total_tokens_used += tokens
        self.request_count += 1
        log_model_call(operation, tokens, (time.perf_counter() - started) * 1000)

    def get_usage_stats(self) -> dict:
        return {
            "total_tokens": self.total_tokens_used,
            "request_count": self.request_count,
            "avg_tokens_per_request": (
                self.total_tokens_used / self.request_count
                if self.request_count > 0 else 0
            )
        }

    # ==========================================================================
    # Chat Streaming
    # ==========================================================================

    async def stream_chat(
        self,
        system_prompt: str,
        history: list[dict],
        user_message: str,
    ) -> AsyncIterator[dict]:
        """
        Stream one assistant turn.

        Yields ``{"type": "content_block_start"}``, then one
        ``{"type": "content_block_delta", "content": ...}`` per text delta in
        arrival order, then ``{"type": "content_block_stop"}``. Closing the
        generator early closes the upstream HTTP stream.

        Raises:
            UpstreamModelError: The call failed before or during streaming.
        """
        client = self._require_client()
        messages = [{"role": "system", "content": system_prompt}, *history]
        messages.append({"role": "user", "content": user_message})

        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                stream=True,
            )
        except Exception as e:
            logger.error("Chat stream could not be opened", error=str(e))
            raise UpstreamModelError("Failed to generate chat response") from e

        started = False
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if not started:
                    started = True
                    yield {"type": "content_block_start"}
                if choice.delta and choice.delta.content:
                    yield {"type": "content_block_delta", "content": choice.delta.content}
                if choice.finish_reason:
                    yield {"type": "content_block_stop"}
        except Exception as e:
            logger.error("Chat stream failed mid-response", error=str(e))
            raise UpstreamModelError("Failed to generate chat response") from e
        finally:
            await stream.close()
        self.request_count += 1

    # ==========================================================================
    # Structured Generation
    # ==========================================================================

    async def _call_tool(self, operation: str, tool: dict, messages: list[dict], max_tokens: int) -> str:
        """Force a single function call and return its raw JSON arguments."""
        client = self._require_client()
        started = time.perf_counter()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=[tool],
                tool_choice={"type": "function", "function": {"name": tool["function"]["name"]}},
                max_tokens=max_tokens,
                timeout=self.request_timeout,
            )
        except Exception as e:
            logger.error("Model call failed", operation=operation, error=str(e))
            raise UpstreamModelError(f"Model call failed: {operation}") from e

        self._track_usage(operation, response, started)

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError) as e:
            raise ModelOutputError(f"Empty model response: {operation}") from e

        if message.tool_calls:
            return message.tool_calls[0].function.arguments
        if message.content:
            return message.content
        raise ModelOutputError(f"Empty model response: {operation}")

    async def generate_insights(self, summary: FinancialSummary) -> list[GeneratedInsight]:
        """
        Ask the model for up to five insights about ``summary``.

        Raises:
            UpstreamModelError: The call itself failed.
            ModelOutputError: The answer did not match the insight schema.
        """
        system_prompt = INSIGHT_GENERATOR_SYSTEM_PROMPT.format(
            financial_summary=summary.model_dump_json(indent=2)
        )
        raw = await self._call_tool(
            "generate_insights",
            INSIGHTS_TOOL,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": "Analyze this financial data and generate 3-5 high-impact insights."},
            ],
            max_tokens=4096,
        )
        return parse_insights(raw)[:MAX_INSIGHTS]

    async def parse_goal(self, user_input: str, conversation_context: Optional[str] = None) -> ParsedGoal:
        """
        Extract a goal candidate from free text.

        Raises:
            UpstreamModelError: The call itself failed.
            ModelOutputError: The answer did not match the goal schema.
        """
        system_prompt = GOAL_PARSER_SYSTEM_PROMPT.format(
            conversation_context=conversation_context or "No prior conversation context."
        )
        raw = await self._call_tool(
            "parse_goal",
            GOAL_TOOL,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_input},
            ],
            max_tokens=512,
        )
        return parse_goal_payload(raw)

    async def check_connection(self) -> bool:
        """Check if the OpenAI API is accessible."""
        if not self.client:
            return False
        try:
            await self.client.models.list()
            return True
        except Exception:
            return False


# =============================================================================
# Output Decoding
# =============================================================================

def parse_insights(raw: str) -> list[GeneratedInsight]:
    """Decode an insight batch; accepts ``{"insights": [...]}`` or a bare array."""
    try:
        payload = json.loads(raw)
        if isinstance(payload, list):
            payload = {"insights": payload}
        return GeneratedInsightBatch.model_validate(payload).insights
    except (json.JSONDecodeError, TypeError, ValidationError) as e:
        raise ModelOutputError("Model returned malformed insights") from e


def parse_goal_payload(raw: str) -> ParsedGoal:
    try:
        return ParsedGoal.model_validate_json(raw)
    except ValidationError as e:
        raise ModelOutputError("Model returned a malformed goal") from e
