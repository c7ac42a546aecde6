"""
Tests for the delivery channel
"""

import json

import httpx
import pytest

from captcha_gate.app import STORE, app
from captcha_gate.services.delivery import DeliveryChannel, SYNTHESIZED_BODY
from conftest import TEST_ENDPOINT, make_channel


class TestSubmit:
    """Test the POST and its response handling"""

    async def test_posts_json_body(self, settings, payload):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "success", "id": "abc"})

        channel, client = make_channel(settings, handler)
        async with client:
            result = await channel.submit(payload)

        assert seen["url"] == f"{TEST_ENDPOINT}/api/captcha"
        assert seen["content_type"] == "application/json"
        assert set(seen["body"]) == {"user_data", "verification_type", "source"}
        assert seen["body"]["verification_type"] == "github_pages_captcha"
        assert seen["body"]["source"] == "telegram_webapp"
        assert seen["body"]["user_data"]["tgid"] == 12345
        assert seen["body"]["user_data"]["sessionId"] == payload.identity.session_id
        assert result.ok
        assert result.synthesized is False
        assert result.body == {"status": "success", "id": "abc"}

    @pytest.mark.parametrize("status", [400, 404, 500, 503])
    async def test_server_error_is_synthesized_success(self, settings, payload, status):
        channel, client = make_channel(settings, lambda request: httpx.Response(status, json={"error": "nope"}))
        async with client:
            result = await channel.submit(payload)
        assert result.ok
        assert result.synthesized is True
        assert result.status_code == status
        assert result.body == SYNTHESIZED_BODY

    async def test_transport_error_is_synthesized_success(self, settings, payload):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        channel, client = make_channel(settings, handler)
        async with client:
            result = await channel.submit(payload)
        assert result.ok
        assert result.synthesized is True
        assert "transport error" in result.error

    async def test_timeout_is_synthesized_success(self, settings, payload):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        channel, client = make_channel(settings, handler)
        async with client:
            result = await channel.submit(payload)
        assert result.synthesized is True
        assert result.error.startswith("timeout")

    async def test_unreadable_body_is_synthesized_success(self, settings, payload):
        channel, client = make_channel(settings, lambda request: httpx.Response(200, text="<html>ok</html>"))
        async with client:
            result = await channel.submit(payload)
        assert result.ok
        assert result.synthesized is True
        assert result.status_code == 200

    async def test_own_client_is_closed(self, settings):
        channel = DeliveryChannel(settings)
        client = channel._get_client()
        await channel.aclose()
        assert client.is_closed

    async def test_injected_client_left_open(self, settings):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        channel = DeliveryChannel(settings, client=client)
        await channel.aclose()
        assert not client.is_closed
        await client.aclose()


class TestEndToEnd:
    """Test delivery against the development sink"""

    async def test_submission_reaches_sink(self, settings, payload):
        await STORE.clear()
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
        channel = DeliveryChannel(settings, client=client)
        async with client:
            result = await channel.submit(payload)

        assert result.synthesized is False
        assert result.body["status"] == "success"
        stored = await STORE.get(result.body["id"])
        assert stored["user_data"]["tgid"] == 12345
        assert stored["source"] == "telegram_webapp"
