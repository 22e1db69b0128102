import asyncio

import httpx
import pytest

from scriptflow.forwarder import WebhookForwarder, WebhookNotConfigured, WebhookUpstreamError
from scriptflow.settings import Settings
from scriptflow.workflow.steps import get_step

PAYLOAD = {
    "youtube-url": "https://youtu.be/abc",
    "client-info": "Acme",
    "context": "demo",
    "project-id": "p1",
    "user-id": "u1",
}


def _settings(**overrides):
    overrides.setdefault("transcript_analysis_webhook_url", "https://hooks.example.com/transcript")
    return Settings(**overrides)


def test_missing_url_makes_no_call(upstream):
    forwarder = WebhookForwarder(_settings(transcript_analysis_webhook_url=None), transport=upstream.transport)

    with pytest.raises(WebhookNotConfigured, match="Webhook URL not configured"):
        asyncio.run(forwarder.forward(get_step(1), PAYLOAD))
    assert upstream.calls == []


def test_relays_json_including_cost_fields(upstream):
    upstream.body = {"success": True, "cost": 0.02, "price": "0.02"}
    forwarder = WebhookForwarder(_settings(), transport=upstream.transport)

    result = asyncio.run(forwarder.forward(get_step(1), PAYLOAD))

    assert result == {"success": True, "cost": 0.02, "price": "0.02"}
    (request,) = upstream.calls
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/transcript"
    assert request.headers["content-type"] == "application/json"
    assert httpx.Response(200, content=request.content).json() == PAYLOAD


def test_non_2xx_embeds_status(upstream):
    upstream.status_code = 524
    upstream.body = {"error": "origin timeout"}
    forwarder = WebhookForwarder(_settings(), transport=upstream.transport)

    with pytest.raises(WebhookUpstreamError) as excinfo:
        asyncio.run(forwarder.forward(get_step(1), PAYLOAD))

    assert excinfo.value.status_code == 524
    assert excinfo.value.message == "Transcript Analysis webhook request failed: 524"


def test_malformed_json_is_an_upstream_error(upstream):
    upstream.raw = b"<html>oops</html>"
    forwarder = WebhookForwarder(_settings(), transport=upstream.transport)

    with pytest.raises(WebhookUpstreamError, match="Invalid JSON"):
        asyncio.run(forwarder.forward(get_step(1), PAYLOAD))


def test_network_error_is_an_upstream_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    forwarder = WebhookForwarder(_settings(), transport=httpx.MockTransport(refuse))
    with pytest.raises(WebhookUpstreamError, match="connection refused"):
        asyncio.run(forwarder.forward(get_step(1), PAYLOAD))


def test_slow_upstream_is_cancelled_at_the_ceiling():
    async def hang(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"success": True})

    forwarder = WebhookForwarder(
        _settings(webhook_timeout_seconds=0.05),
        transport=httpx.MockTransport(hang),
    )
    with pytest.raises(WebhookUpstreamError, match="timed out"):
        asyncio.run(forwarder.forward(get_step(1), PAYLOAD))
