"""Message Renderer: turns an agent's structured update into SMS prose.

Tone: warm but professional, brief, no emojis unless the message type calls for it.
"""

import json
import logging

from relay_platform.agents.base import BaseAgent
from relay_platform.app.config import get_settings
from relay_platform.domain.errors import RenderError

logger = logging.getLogger(__name__)

MAX_SMS_CHARS = 640


class MessageRenderer(BaseAgent):
    def __init__(self):
        settings = get_settings()
        super().__init__(agent_name="message_renderer", model_name=settings.render_model_name, temperature=0.7)

    async def render_text(self, payload: dict, user=None) -> str:
        """Render ``payload`` for ``user``. Raises RenderError on any failure."""
        name = getattr(user, "first_name", None) or "there"
        prompt = (
            f"Convert this structured update into a conversational SMS message.\n\n"
            f"Recipient first name: {name}\n\n"
            f"Structured data from agent:\n{json.dumps(payload, indent=2, default=str)}\n\n"
            f"Requirements:\n"
            f"- Keep it brief and conversational (SMS style)\n"
            f"- Be warm but professional\n"
            f"- Get to the point quickly\n"
            f"- If there are action items, make them clear\n"
            f"- Don't use emojis unless the message type calls for it\n"
            f"- Under {MAX_SMS_CHARS} characters\n\n"
            f"Return ONLY the message text, no JSON, no quotes, no markdown."
        )

        result = await self.generate(prompt=prompt, max_output_tokens=500)
        if not result.ok:
            raise RenderError(f"Render failed: {result.error}")

        text = (result.data or "").strip().strip('"').strip("'")
        if not text:
            raise RenderError("Render produced empty text")
        if len(text) > MAX_SMS_CHARS:
            logger.warning("Rendered text is %d chars, truncating to %d", len(text), MAX_SMS_CHARS)
            text = text[:MAX_SMS_CHARS].rstrip()
        return text
