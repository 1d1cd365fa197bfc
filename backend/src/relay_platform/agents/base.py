"""Base agent class for Relay LLM collaborators.

Provides:

- Gemini model access via the infra.gemini_client wrapper
- A standard AgentResult return type (Result pattern)
- Latency measurement and token tracking in the logs
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class AgentResult:
    """Standard result type for all agent operations.

    Every agent call returns an AgentResult instead of raising. Callers
    check ``result.ok`` to determine success or failure.

    Attributes:
        ok: True if the operation succeeded.
        data: The response payload.
        error: Human-readable error description when ``ok`` is False.
        tokens_used: Total tokens consumed (prompt + completion).
        latency_ms: Wall-clock time for the operation in milliseconds.
    """

    ok: bool
    data: Any = None
    error: Optional[str] = None
    tokens_used: int = 0
    latency_ms: int = 0

    @classmethod
    def success(cls, data: Any, tokens_used: int = 0, latency_ms: int = 0) -> "AgentResult":
        """Create a successful result."""
        return cls(ok=True, data=data, tokens_used=tokens_used, latency_ms=latency_ms)

    @classmethod
    def failure(cls, error: str, latency_ms: int = 0) -> "AgentResult":
        """Create a failure result."""
        return cls(ok=False, error=error, latency_ms=latency_ms)


# ---------------------------------------------------------------------------
# Base agent
# ---------------------------------------------------------------------------

class BaseAgent:
    """Base class for Gemini-backed agents.

    Example::

        class SummaryAgent(BaseAgent):
            def __init__(self):
                super().__init__(agent_name="summary_agent")

            async def summarize(self, text: str) -> AgentResult:
                return await self.generate(prompt=f"Summarize: {text}")
    """

    timeout_seconds = 60

    def __init__(
        self,
        agent_name: str,
        model_name: str = "gemini-3-flash-preview",
        temperature: float = 0.7,
    ):
        """Initialise the agent.

        Args:
            agent_name: A short, unique name for this agent (used in logs).
            model_name: The Gemini model identifier.
            temperature: Generation temperature (0.0-1.0).
        """
        self.agent_name = agent_name
        self.model_name = model_name
        self.temperature = temperature

    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        max_output_tokens: int | None = None,
        json_mode: bool = False,
    ) -> AgentResult:
        """Generate a single-turn response from Gemini.

        Args:
            prompt: The user prompt to send.
            system_instruction: Optional system instruction that shapes
                the model's behaviour.
            json_mode: If True the model is instructed to return valid JSON.
            max_output_tokens: Optional cap on response length.

        Returns:
            An ``AgentResult`` with the response text in ``data``.
        """
        start_time = time.time()
        try:
            from relay_platform.infra.gemini_client import get_model

            model = get_model(
                model_name=self.model_name,
                temperature=self.temperature,
                json_mode=json_mode,
                max_output_tokens=max_output_tokens,
                system_instruction=system_instruction,
            )

            response = await asyncio.wait_for(
                model.generate_content_async(prompt),
                timeout=self.timeout_seconds,
            )
            latency_ms = int((time.time() - start_time) * 1000)

            tokens_used = 0
            if hasattr(response, "usage_metadata") and response.usage_metadata:
                prompt_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
                completion_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0
                tokens_used = prompt_tokens + completion_tokens

            logger.info(
                "[%s] Generation succeeded: tokens=%d, latency=%dms",
                self.agent_name,
                tokens_used,
                latency_ms,
            )
            return AgentResult.success(
                data=response.text,
                tokens_used=tokens_used,
                latency_ms=latency_ms,
            )

        except Exception as exc:
            latency_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "[%s] Generation failed after %dms: %s",
                self.agent_name,
                latency_ms,
                exc,
            )
            return AgentResult.failure(str(exc), latency_ms=latency_ms)

    async def generate_json(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
    ) -> AgentResult:
        """Generate a response and parse it as JSON.

        Calls ``generate`` with ``json_mode=True``. If parsing fails the
        result is a failure carrying the parse error.
        """
        result = await self.generate(
            prompt=prompt,
            system_instruction=system_instruction,
            json_mode=True,
        )
        if not result.ok:
            return result

        try:
            parsed = json.loads(result.data)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning(
                "[%s] JSON parse failed: %s; raw text: %.200s",
                self.agent_name,
                exc,
                result.data,
            )
            return AgentResult.failure(
                error=f"JSON parse error: {exc}",
                latency_ms=result.latency_ms,
            )
        return AgentResult.success(
            data=parsed,
            tokens_used=result.tokens_used,
            latency_ms=result.latency_ms,
        )
