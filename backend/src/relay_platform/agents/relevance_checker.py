"""Relevance Checker: decides whether a delayed message still fits the conversation.

Messages queued with ``requires_fresh_context`` are checked just before
delivery against whatever the user has said since they were queued. The
check fails open: any model or parsing problem lets the message through.
"""

import json
import logging
from datetime import datetime

from relay_platform.agents.base import BaseAgent
from relay_platform.app.config import get_settings
from relay_platform.domain.contracts import RelevanceResult
from relay_platform.domain.enums import RelevanceClassification

logger = logging.getLogger(__name__)


class RelevanceChecker(BaseAgent):
    def __init__(self):
        settings = get_settings()
        super().__init__(
            agent_name="relevance_checker",
            model_name=settings.relevance_model_name,
            temperature=0.2,
        )

    async def check_relevance(
        self,
        payload: dict,
        queued_at: datetime,
        recent_messages: list[dict],
    ) -> RelevanceResult:
        """Classify a queued payload against the user's messages since ``queued_at``."""
        if not recent_messages:
            return RelevanceResult(relevant=True, reason="no_new_context")

        conversation = "\n".join(
            f"{m.get('role') or 'user'}: {m.get('content', '')}" for m in recent_messages
        )
        prompt = (
            f"Classify queued message relevance given recent conversation context.\n\n"
            f"QUEUED MESSAGE (waiting to send):\n"
            f"Created at: {queued_at.isoformat()}\n"
            f"Message data: {json.dumps(payload, default=str)}\n\n"
            f"USER'S MESSAGES SINCE THIS WAS QUEUED:\n{conversation}\n\n"
            f"CLASSIFICATION RULES:\n"
            f"- RELEVANT: the message still makes sense to send as is\n"
            f"- STALE: the user's messages made it obsolete or wrong; do not send\n"
            f"- CONTEXTUAL: still useful, but should acknowledge what the user said\n\n"
            f"REFORMULATION: set shouldReformulate only if CONTEXTUAL and the message "
            f"needs updating.\n\n"
            f'Return ONLY valid JSON: {{"classification": "RELEVANT|STALE|CONTEXTUAL", '
            f'"shouldReformulate": true|false, "reason": "brief explanation"}}'
        )

        result = await self.generate_json(prompt=prompt)
        if not result.ok:
            logger.warning("Relevance check failed, sending anyway: %s", result.error)
            return RelevanceResult(relevant=True, reason="error_in_llm_call")

        data = result.data if isinstance(result.data, dict) else {}
        try:
            classification = RelevanceClassification(str(data.get("classification", "")).upper())
        except ValueError:
            logger.warning("Unrecognised relevance verdict %r, sending anyway", data)
            return RelevanceResult(relevant=True, reason="error_defaulting_to_relevant")

        return RelevanceResult(
            relevant=classification != RelevanceClassification.STALE,
            reason=str(data.get("reason") or classification.value.lower()),
            classification=classification,
            should_reformulate=bool(data.get("shouldReformulate", False)),
        )
