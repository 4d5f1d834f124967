# /flowbot/services/webhooks.py

import httpx
import logging
import tenacity
from typing import Any, Dict, Mapping, Optional

from flowbot.utils.metrics import outbound_webhooks_counter
from flowbot.workflows.exceptions import WebhookError

logger = logging.getLogger(__name__)

BODYLESS_METHODS = {"GET", "DELETE"}


def _is_server_error(response: httpx.Response) -> bool:
    return response.status_code >= 500


class WebhookClient:
    """Outbound HTTP calls made by ``integration.webhook`` nodes."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, wait: Optional[Any] = None):
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.wait = wait or tenacity.wait_exponential(multiplier=2, min=1, max=10)

    @staticmethod
    def build_request(method: str, headers: Optional[Mapping[str, Any]], body: Any) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "headers": {key: str(value) for key, value in (headers or {}).items() if value is not None},
        }
        if method not in BODYLESS_METHODS and body is not None:
            if isinstance(body, str):
                request["content"] = body
            else:
                request["json"] = body
        return request

    @staticmethod
    def decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def call(self, method: str, url: str, *, headers: Optional[Mapping[str, Any]] = None, body: Any = None,
                   timeout: float = 15.0, retries: int = 0) -> Any:
        """
        Sends one webhook request and returns the decoded response body.
        Transport errors and 5xx answers are retried ``retries`` times.
        Raises WebhookError when the call ultimately fails.
        """
        request = self.build_request(method, headers, body)
        retrying = tenacity.AsyncRetrying(
            retry=(tenacity.retry_if_exception_type(httpx.TransportError)
                   | tenacity.retry_if_result(_is_server_error)),
            stop=tenacity.stop_after_attempt(retries + 1),
            wait=self.wait,
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        try:
            response = await retrying(self.http_client.request, method, url, timeout=timeout, **request)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            outbound_webhooks_counter.labels(status="failed").inc()
            logger.error(f"webhook_error {method} {url}: {e}")
            raise WebhookError(f"Webhook {method} {url} failed: {e}") from e

        if not response.is_success:
            outbound_webhooks_counter.labels(status="failed").inc()
            logger.error(f"webhook_rejected {method} {url}: {response.status_code}")
            raise WebhookError(f"Webhook responded with status {response.status_code}",
                               status_code=response.status_code)

        outbound_webhooks_counter.labels(status="sent").inc()
        logger.info(f"Webhook {method} {url} answered {response.status_code}")
        return self.decode(response)

    async def close(self) -> None:
        await self.http_client.aclose()
