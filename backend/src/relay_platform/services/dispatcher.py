"""Dispatcher: renders and sends every part of one delivery unit, in order."""

import logging
from datetime import datetime
from typing import Protocol

from relay_platform.domain.contracts import DeliveryUnit, DispatchResult, RelevanceResult
from relay_platform.domain.errors import DispatchError, RenderError, SendError

logger = logging.getLogger(__name__)


class TextRenderer(Protocol):
    async def render_text(self, payload: dict, user=None) -> str: ...


class MessageSender(Protocol):
    async def send_sms(self, to_number: str, message: str) -> dict: ...


class RelevanceGate(Protocol):
    async def check_relevance(
        self, payload: dict, queued_at: datetime, recent_messages: list[dict]
    ) -> RelevanceResult: ...


class Dispatcher:
    """Delivers a unit all-or-nothing from the scheduler's point of view.

    All parts are rendered before the first send, so a render failure never
    leaves the user holding the first half of a sequence. A send failure part
    way through fails the unit; the caller keeps every row queued and the
    whole unit is retried on a later tick.
    """

    def __init__(self, renderer: TextRenderer, sender: MessageSender):
        self.renderer = renderer
        self.sender = sender

    async def dispatch(self, unit: DeliveryUnit, user) -> DispatchResult:
        result = DispatchResult(ok=False)

        try:
            for part in unit.parts:
                text = part.final_message
                if not text:
                    logger.info("Rendering part %s (%s)", part.id, unit.label)
                    try:
                        text = await self.renderer.render_text(part.message_data, user)
                    except Exception as exc:
                        raise RenderError(str(exc), part_id=part.id) from exc
                    if not text or not text.strip():
                        raise RenderError("Renderer returned empty text", part_id=part.id)
                result.rendered[part.id] = text

            for part in unit.parts:
                try:
                    response = await self.sender.send_sms(user.phone_number, result.rendered[part.id])
                except Exception as exc:
                    raise SendError(str(exc), part_id=part.id) from exc
                if not response or not response.get("ok"):
                    error = (response or {}).get("error", "unknown_error")
                    raise SendError(f"Send failed: {error}", part_id=part.id)
                result.sent_part_ids.append(part.id)
                result.provider_responses[part.id] = response

        except DispatchError as exc:
            result.error = str(exc)
            result.failed_part_id = exc.part_id
            if result.sent_part_ids:
                logger.error(
                    "Dispatch of %s failed after %d of %d parts were sent: %s",
                    unit.label, len(result.sent_part_ids), len(unit.parts), exc,
                )
            else:
                logger.error("Dispatch of %s failed: %s", unit.label, exc)
            return result

        result.ok = True
        return result
