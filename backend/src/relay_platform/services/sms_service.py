"""SMS service via the Twilio REST API.

Endpoints used:
- POST /2010-04-01/Accounts/{sid}/Messages.json: send outbound SMS
"""

import asyncio
import logging

import httpx

from relay_platform.app.config import get_settings

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class SMSService:
    """Send SMS messages via Twilio. Every call returns a dict with an ``ok`` flag."""

    def __init__(self, max_attempts: int = 3, retry_wait_seconds: float = 2.0):
        self.settings = get_settings()
        self.base_url = "https://api.twilio.com/2010-04-01"
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds

    @property
    def _configured(self) -> bool:
        """Check if Twilio credentials and sender number are configured."""
        return bool(
            self.settings.twilio_account_sid
            and self.settings.twilio_auth_token
            and self.settings.twilio_phone_number
        )

    async def send_sms(self, to_number: str, message: str) -> dict:
        """Send one outbound SMS."""
        if not self._configured:
            logger.warning("Twilio SMS not configured, message not sent to %s", to_number)
            return {"ok": False, "error": "twilio_not_configured"}

        url = f"{self.base_url}/Accounts/{self.settings.twilio_account_sid}/Messages.json"
        payload = {"To": to_number, "From": self.settings.twilio_phone_number, "Body": message}
        auth = (self.settings.twilio_account_sid, self.settings.twilio_auth_token)

        logger.info("Twilio send: to=%s msg_len=%d", to_number, len(message))

        for attempt in range(self.max_attempts):
            try:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    resp = await client.post(url, data=payload, auth=auth)

                if 200 <= resp.status_code < 300:
                    data = resp.json()
                    logger.info("SMS sent to %s via Twilio (sid=%s)", to_number, data.get("sid"))
                    return {"ok": True, "sid": data.get("sid"), "status": data.get("status")}

                if resp.status_code in _RETRYABLE_STATUSES and attempt < self.max_attempts - 1:
                    wait = self.retry_wait_seconds * (attempt + 1)
                    logger.warning(
                        "Twilio %d, retrying in %.1fs (attempt %d/%d): %s",
                        resp.status_code, wait, attempt + 1, self.max_attempts, resp.text[:300],
                    )
                    await asyncio.sleep(wait)
                    continue

                logger.error("Twilio SMS failed (%d): %s", resp.status_code, resp.text[:300])
                return {"ok": False, "error": f"http_{resp.status_code}", "status": resp.status_code}

            except httpx.TimeoutException:
                logger.error("Twilio request timed out for %s", to_number)
                return {"ok": False, "error": "timeout"}
            except httpx.HTTPError as e:
                logger.error("Twilio httpx error: %s", e)
                return {"ok": False, "error": str(e)}

        return {"ok": False, "error": "max_retries"}
