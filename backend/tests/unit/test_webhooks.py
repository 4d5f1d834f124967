# backend/tests/unit/test_webhooks.py
import httpx
import pytest
import tenacity
from unittest.mock import AsyncMock, MagicMock

from flowbot.services.webhooks import WebhookClient
from flowbot.workflows.exceptions import WebhookError


@pytest.fixture
def client():
    return WebhookClient(http_client=MagicMock(), wait=tenacity.wait_none())


def test_build_request_drops_body_for_get():
    request = WebhookClient.build_request("GET", {"X-Id": 7, "X-Skip": None}, {"ignored": True})
    assert request == {"headers": {"X-Id": "7"}}


def test_build_request_sends_strings_verbatim_and_objects_as_json():
    assert WebhookClient.build_request("POST", None, "a=1")["content"] == "a=1"
    assert WebhookClient.build_request("PUT", None, {"a": 1})["json"] == {"a": 1}


def test_decode_falls_back_to_text():
    assert WebhookClient.decode(httpx.Response(200, json={"ok": True})) == {"ok": True}
    assert WebhookClient.decode(httpx.Response(200, text="accepted")) == "accepted"
    assert WebhookClient.decode(httpx.Response(204)) is None


@pytest.mark.asyncio
async def test_server_errors_are_retried(client):
    client.http_client.request = AsyncMock(side_effect=[httpx.Response(502), httpx.Response(200, json={"id": 1})])

    result = await client.call("POST", "https://example.com/hook", body={"a": 1}, retries=1)

    assert result == {"id": 1}
    assert client.http_client.request.await_count == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(client):
    client.http_client.request = AsyncMock(return_value=httpx.Response(404))

    with pytest.raises(WebhookError) as exc_info:
        await client.call("GET", "https://example.com/hook", retries=3)

    assert exc_info.value.status_code == 404
    client.http_client.request.assert_awaited_once()


@pytest.mark.asyncio
async def test_exhausted_transport_errors_raise_webhook_error(client):
    client.http_client.request = AsyncMock(side_effect=httpx.ReadTimeout("slow"))

    with pytest.raises(WebhookError) as exc_info:
        await client.call("POST", "https://example.com/hook", retries=1)

    assert "slow" in exc_info.value.message
    assert client.http_client.request.await_count == 2
