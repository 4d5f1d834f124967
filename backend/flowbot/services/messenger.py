# /flowbot/services/messenger.py

import httpx
import logging
import re
import tenacity
from abc import ABC, abstractmethod
from typing import List, Optional

from flowbot.config.settings import Settings
from flowbot.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from flowbot.utils.metrics import outbound_messages_counter
from flowbot.workflows.exceptions import MessageDeliveryError

logger = logging.getLogger(__name__)

# A button row is a list of {"text", "callback_data"?, "url"?, "request_contact"?}
ButtonRows = List[List[dict]]


class Messenger(ABC):
    """Outbound side of the chat platform."""

    @abstractmethod
    async def send_message(self, chat_id: str, text: str, buttons: Optional[ButtonRows] = None) -> Optional[str]:
        """Sends a message and returns the platform message id. Raises MessageDeliveryError."""

    async def close(self) -> None:
        return None


class LogMessenger(Messenger):
    """Records messages instead of sending them. Used when no platform is configured."""

    def __init__(self):
        self.sent: List[dict] = []

    async def send_message(self, chat_id: str, text: str, buttons: Optional[ButtonRows] = None) -> Optional[str]:
        message_id = f"local-{len(self.sent) + 1}"
        self.sent.append({"chat_id": chat_id, "text": text, "buttons": buttons or [], "message_id": message_id})
        logger.info(f"Outbound message to {chat_id} (not delivered): {text[:80]}")
        outbound_messages_counter.labels(status="logged").inc()
        return message_id


class WhatsAppMessenger(Messenger):
    def __init__(self, access_token: str, phone_id: str, base_url: str = "https://graph.facebook.com/v18.0",
                 http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.phone_id = phone_id
        self.base_url = base_url
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppMessenger":
        return cls(settings.whatsapp_access_token, settings.whatsapp_phone_id, settings.whatsapp_api_base_url)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @staticmethod
    def build_payload(chat_id: str, text: str, buttons: Optional[ButtonRows] = None) -> dict:
        clean_phone = re.sub(r"[^\d+]", "", chat_id)
        if not clean_phone.startswith("+"):
            clean_phone = "+" + clean_phone
        payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": clean_phone}

        # Reply buttons carry callback data; WhatsApp allows at most 3 and has no URL/contact buttons
        replies = [b for row in (buttons or []) for b in row if b.get("callback_data")][:3]
        if replies:
            payload["type"] = "interactive"
            payload["interactive"] = {
                "type": "button",
                "body": {"text": text[:1024]},
                "action": {"buttons": [
                    {"type": "reply", "reply": {"id": b["callback_data"], "title": b["text"][:20]}} for b in replies
                ]},
            }
        else:
            payload["type"] = "text"
            payload["text"] = {"body": text[:4096]}
        return payload

    async def send_message(self, chat_id: str, text: str, buttons: Optional[ButtonRows] = None) -> Optional[str]:
        payload = self.build_payload(chat_id, text, buttons)
        url = f"{self.base_url}/{self.phone_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)
        except (httpx.HTTPError, CircuitOpenError) as e:
            outbound_messages_counter.labels(status="failed").inc()
            logger.error(f"whatsapp_send_error to {payload['to']}: {e}")
            raise MessageDeliveryError(f"Could not reach messaging API: {e}") from e

        if response.status_code != 200:
            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            outbound_messages_counter.labels(status="failed").inc()
            logger.error(f"whatsapp_send_failed to {payload['to']}: {response.status_code} - {error_message}")
            raise MessageDeliveryError(f"Messaging API rejected message ({response.status_code}): {error_message}")

        message_id = response.json().get("messages", [{}])[0].get("id")
        outbound_messages_counter.labels(status="sent").inc()
        logger.info(f"WhatsApp message sent to {payload['to']}, wamid: {message_id}")
        return message_id

    async def close(self) -> None:
        await self.http_client.aclose()


def build_messenger(settings: Settings) -> Messenger:
    if settings.whatsapp_enabled:
        return WhatsAppMessenger.from_settings(settings)
    logger.warning("WhatsApp credentials not configured; outbound messages will only be logged.")
    return LogMessenger()
