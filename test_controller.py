"""
Tests for the verification state machine
"""

import asyncio
import dataclasses
import json
import random
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from captcha_gate.core.errors import InitializationError, InvalidTransition
from captcha_gate.core.headless import build_headless_host
from captcha_gate.core.host import Event
from captcha_gate.models.models import ClickRecord, DeliveryResult, VerificationState
from captcha_gate.services.controller import (
    BTN_TEXT, CAPTCHA_BOX, FALLBACK_MESSAGE, LOADING_DOTS, REQUIRED_ANCHORS, RETRY_TEXT,
    SUCCESS_MESSAGE, VERIFY_BTN, VerificationController,
)
from captcha_gate.utils.helpers import parse_int_param
from conftest import FakeBridge, make_channel

S = VerificationState


def ok_result():
    return DeliveryResult(status="success", body={"status": "success"})


@pytest.fixture
def delivery():
    channel = MagicMock()
    channel.submit = AsyncMock(return_value=ok_result())
    channel.aclose = AsyncMock()
    return channel


@pytest.fixture
async def controller(host, settings, delivery):
    ctl = VerificationController(host, settings, delivery=delivery)
    yield ctl
    await ctl.aclose()


class TestInitialization:
    """Test controller start-up"""

    @pytest.mark.parametrize("anchor", REQUIRED_ANCHORS)
    def test_missing_anchor_is_startup_error(self, settings, delivery, anchor):
        host = build_headless_host()
        host.document.remove_element(anchor)
        with pytest.raises(InitializationError) as exc:
            VerificationController(host, settings, delivery=delivery)
        assert exc.value.missing == [anchor]

    async def test_starts_idle_with_snapshot(self, controller):
        assert controller.state is S.IDLE
        assert controller.environment.session_id == controller.identity.session_id
        assert controller.environment.screen["width"] == 1920
        assert controller.identity.pseudo_user_id >= 0

    async def test_reads_numeric_tgid(self, controller):
        assert controller.tgid == 12345

    async def test_ignores_non_numeric_tgid(self, settings, delivery):
        host = build_headless_host(url="https://gate.test/?tgid=abc")
        ctl = VerificationController(host, settings, delivery=delivery)
        assert ctl.tgid is None
        await ctl.aclose()

    @pytest.mark.parametrize("raw", ["1_000", "+5", "٣", "12a", "-", "1.5"])
    def test_tgid_must_be_plain_decimal(self, raw):
        assert parse_int_param(raw, "tgid") is None

    @pytest.mark.parametrize("raw,expected", [("12345", 12345), (" 42 ", 42), ("-7", -7)])
    def test_tgid_decimal_forms(self, raw, expected):
        assert parse_int_param(raw, "tgid") == expected

    async def test_prepares_present_bridge(self, settings, delivery, fake_bridge):
        host = build_headless_host(bridge=fake_bridge)
        ctl = VerificationController(host, settings, delivery=delivery)
        assert fake_bridge.names() == ["expand", "setBackgroundColor", "enableClosingConfirmation"]
        assert ctl.bridge.present
        await ctl.aclose()

    async def test_bridge_without_send_data_is_absent(self, settings, delivery):
        host = build_headless_host(bridge=object())
        ctl = VerificationController(host, settings, delivery=delivery)
        assert not ctl.bridge.present
        await ctl.aclose()


class TestToggle:
    """Test consent toggling"""

    async def test_toggle_on_starts_windows(self, controller, host):
        assert controller.toggle() is S.CHECKED
        assert host.document.get_element_by_id(CAPTCHA_BOX).has_class("checked")
        assert host.document.get_element_by_id(VERIFY_BTN).disabled is False
        assert host.document.listener_count("mousemove") == 1
        assert host.window.listener_count("scroll") == 1

    async def test_toggle_off_cancels_windows(self, controller, host):
        controller.toggle()
        controller.toggle()
        assert controller.state is S.IDLE
        assert not host.document.get_element_by_id(CAPTCHA_BOX).has_class("checked")
        assert host.document.get_element_by_id(VERIFY_BTN).disabled is True
        assert host.document.listener_count("mousemove") == 0
        assert host.document.listener_count("click") == 0
        assert host.window.listener_count("scroll") == 0

    def test_consent_without_event_loop_changes_nothing(self, host, settings, delivery):
        ctl = VerificationController(host, settings, delivery=delivery)
        box = host.document.get_element_by_id(CAPTCHA_BOX)
        box.click()
        assert ctl.state is S.IDLE
        assert not box.has_class("checked")
        assert host.document.get_element_by_id(VERIFY_BTN).disabled is True
        assert host.document.listener_count("mousemove") == 0
        assert host.window.listener_count("scroll") == 0
        with pytest.raises(RuntimeError):
            ctl.toggle()
        assert ctl.history == [S.IDLE]

    async def test_box_click_toggles(self, controller, host):
        host.document.get_element_by_id(CAPTCHA_BOX).click()
        assert controller.state is S.CHECKED

    @pytest.mark.parametrize("code", ["Space", "Enter"])
    async def test_keyboard_toggle_on_body(self, controller, host, code):
        event = host.document.dispatch_event(Event("keydown", code=code))
        assert controller.state is S.CHECKED
        assert event.default_prevented

    async def test_keyboard_toggle_on_focused_box(self, controller, host):
        host.document.focus(CAPTCHA_BOX)
        host.document.dispatch_event(Event("keydown", code="Space"))
        assert controller.state is S.CHECKED

    async def test_keyboard_ignored_elsewhere(self, controller, host):
        host.document.focus(VERIFY_BTN)
        host.document.dispatch_event(Event("keydown", code="Space"))
        host.document.focus(None)
        host.document.dispatch_event(Event("keydown", code="KeyA"))
        assert controller.state is S.IDLE

    async def test_rendering_signature_computed_once(self, controller):
        controller.toggle()
        first = controller.aggregator.rendering()
        controller.toggle()
        controller.toggle()
        assert controller.aggregator.rendering() is first


class TestVerify:
    """Test submission gating and the verified outcome"""

    async def test_verify_from_idle_is_rejected(self, controller, delivery):
        assert await controller.verify() is None
        assert controller.state is S.IDLE
        assert controller.payload is None
        delivery.submit.assert_not_awaited()

    async def test_toggle_on_off_then_verify_is_rejected(self, controller, delivery):
        controller.toggle()
        controller.toggle()
        assert await controller.verify() is None
        assert controller.history == [S.IDLE, S.CHECKED, S.IDLE]
        assert controller.payload is None
        delivery.submit.assert_not_awaited()

    @pytest.mark.parametrize("seed", range(8))
    async def test_submit_reachable_only_when_last_toggle_checked(self, settings, seed):
        rng = random.Random(seed)
        toggles = rng.randint(0, 9)
        channel = MagicMock(submit=AsyncMock(return_value=ok_result()), aclose=AsyncMock())
        ctl = VerificationController(build_headless_host(), settings, delivery=channel)
        for _ in range(toggles):
            ctl.toggle()
        outcome = await ctl.verify()
        if toggles % 2:
            assert outcome.state is S.VERIFIED
            channel.submit.assert_awaited_once()
        else:
            assert outcome is None
            channel.submit.assert_not_awaited()
        await ctl.aclose()

    async def test_verified_outcome(self, controller, host, delivery):
        controller.toggle()
        outcome = await controller.verify()
        assert outcome.state is S.VERIFIED
        assert controller.history == [S.IDLE, S.CHECKED, S.SUBMITTING, S.VERIFIED]
        delivery.submit.assert_awaited_once_with(outcome.payload)
        assert host.document.get_element_by_id(SUCCESS_MESSAGE).visible
        assert not host.document.get_element_by_id(LOADING_DOTS).visible
        assert not host.document.get_element_by_id(VERIFY_BTN).visible

    async def test_payload_contents(self, controller, host):
        controller.toggle()
        for i in range(3):
            host.document.dispatch_event(Event("mousemove", x=i, y=i))
        host.document.dispatch_event(Event("click", x=11, y=22))
        host.window.dispatch_event(Event("scroll"))
        outcome = await controller.verify()
        data = outcome.payload.to_dict()
        assert data["tgid"] == 12345
        assert isinstance(data["tgid"], int)
        assert data["sessionId"] == controller.identity.session_id
        assert data["interaction"]["mouseMovement"] == 3
        assert data["interaction"]["clicks"][0]["x"] == 11
        assert data["interaction"]["scrollBehavior"] == 1
        assert data["detailedFingerprint"]["canvasFingerprint"].startswith("iVBOR")
        assert data["finalVerification"]["userBehavior"]["mouseMovements"] == 3
        assert data["finalVerification"]["timeToComplete"] >= 0
        json.dumps(data)

    async def test_payload_cannot_change_after_assembly(self, controller):
        controller.toggle()
        outcome = await controller.verify()
        payload = outcome.payload
        before = payload.to_dict()
        with pytest.raises(AttributeError):
            payload.interaction.clicks.append(ClickRecord(1, 2, 3))
        with pytest.raises(TypeError):
            payload.environment.screen["width"] = 1
        with pytest.raises(TypeError):
            payload.final_verification["userBehavior"]["clicks"] = 99
        with pytest.raises(AttributeError):
            payload.rendering.installed_fonts.append("Impact")
        after = payload.to_dict()
        after["screen"]["width"] = 1
        assert payload.to_dict() == before

    async def test_submission_freezes_windows(self, controller, host):
        controller.toggle()
        await controller.verify()
        assert host.document.listener_count("mousemove") == 0
        assert host.window.listener_count("scroll") == 0

    async def test_reentrant_verify_is_noop(self, controller, delivery):
        release = asyncio.Event()

        async def slow_submit(payload):
            await release.wait()
            return ok_result()

        delivery.submit.side_effect = slow_submit
        controller.toggle()
        first = asyncio.create_task(controller.verify())
        await asyncio.sleep(0)
        assert controller.state is S.SUBMITTING
        assert await controller.verify() is None
        release.set()
        outcome = await first
        assert outcome.state is S.VERIFIED
        assert delivery.submit.await_count == 1

    async def test_double_click_delivers_once(self, controller, host, delivery):
        controller.toggle()
        btn = host.document.get_element_by_id(VERIFY_BTN)
        btn.click()
        btn.click()
        await asyncio.gather(*controller._tasks)
        assert controller.state is S.VERIFIED
        assert delivery.submit.await_count == 1

    async def test_toggle_ignored_while_submitting_and_after(self, controller, delivery):
        release = asyncio.Event()

        async def slow_submit(payload):
            await release.wait()
            return ok_result()

        delivery.submit.side_effect = slow_submit
        controller.toggle()
        task = asyncio.create_task(controller.verify())
        await asyncio.sleep(0)
        assert controller.toggle() is S.SUBMITTING
        release.set()
        await task
        assert controller.toggle() is S.VERIFIED
        assert await controller.verify() is None

    async def test_ux_delay_is_applied(self, host, settings, delivery):
        slow = dataclasses.replace(settings, submit_delay_ms=30)
        ctl = VerificationController(host, slow, delivery=delivery)
        ctl.toggle()
        loop = asyncio.get_running_loop()
        started = loop.time()
        await ctl.verify()
        assert loop.time() - started >= 0.03 - 1e-3
        await ctl.aclose()

    async def test_illegal_transition_raises(self, controller):
        with pytest.raises(InvalidTransition):
            controller._transition(S.VERIFIED)


class TestNotification:
    """Test the bridge-or-fallback contract"""

    async def test_network_failure_still_verifies_with_fallback(self, host, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        channel, client = make_channel(settings, handler)
        ctl = VerificationController(host, settings, delivery=channel)
        ctl.toggle()
        outcome = await ctl.verify()
        assert outcome.state is S.VERIFIED
        assert outcome.delivery.synthesized
        assert outcome.notification == "fallback"
        success = host.document.get_element_by_id(SUCCESS_MESSAGE)
        assert success.text == FALLBACK_MESSAGE
        assert success.has_class("fallback")
        await ctl.aclose()
        await client.aclose()

    async def test_network_failure_with_bridge_notifies_bridge_only(self, settings, fake_bridge):
        host = build_headless_host(bridge=fake_bridge)

        def handler(request):
            return httpx.Response(502)

        channel, client = make_channel(settings, handler)
        ctl = VerificationController(host, settings, delivery=channel)
        ctl.toggle()
        outcome = await ctl.verify()
        assert outcome.state is S.VERIFIED
        assert outcome.notification == "bridge"
        assert fake_bridge.names().count("sendData") == 1
        message = json.loads(fake_bridge.calls[fake_bridge.names().index("sendData")][1][0])
        assert message["status"] == "verified"
        assert message["sessionId"] == ctl.identity.session_id
        success = host.document.get_element_by_id(SUCCESS_MESSAGE)
        assert not success.has_class("fallback")
        assert success.text != FALLBACK_MESSAGE
        await asyncio.sleep(0.01)
        assert "close" in fake_bridge.names()
        await ctl.aclose()
        await client.aclose()

    async def test_teardown_before_close_delay_still_closes(self, settings, delivery, fake_bridge):
        settings = dataclasses.replace(settings, bridge_close_delay_ms=60_000)
        ctl = VerificationController(build_headless_host(bridge=fake_bridge), settings, delivery=delivery)
        ctl.toggle()
        outcome = await ctl.verify()
        assert outcome.notification == "bridge"
        assert "close" not in fake_bridge.names()
        await ctl.aclose()
        assert fake_bridge.names().count("close") == 1

    async def test_close_happens_once(self, settings, delivery, fake_bridge):
        ctl = VerificationController(build_headless_host(bridge=fake_bridge), settings, delivery=delivery)
        ctl.toggle()
        await ctl.verify()
        await asyncio.sleep(0.01)
        await ctl.aclose()
        assert fake_bridge.names().count("close") == 1

    async def test_throwing_bridge_falls_back(self, settings, delivery):
        bridge = FakeBridge(fail_on=("sendData",))
        host = build_headless_host(bridge=bridge)
        ctl = VerificationController(host, settings, delivery=delivery)
        ctl.toggle()
        outcome = await ctl.verify()
        assert outcome.notification == "fallback"
        assert bridge.names().count("sendData") == 1
        assert "close" not in bridge.names()
        assert host.document.get_element_by_id(SUCCESS_MESSAGE).has_class("fallback")
        await ctl.aclose()

    async def test_raising_delivery_channel_is_absorbed(self, controller, delivery):
        delivery.submit.side_effect = RuntimeError("channel exploded")
        controller.toggle()
        outcome = await controller.verify()
        assert outcome.state is S.VERIFIED
        assert outcome.delivery.synthesized


class TestFailure:
    """Test the local failure path and retry"""

    async def test_assembly_error_fails_and_reenters_checked(self, controller, host, delivery, monkeypatch):
        controller.toggle()
        monkeypatch.setattr(controller.aggregator, "rendering", MagicMock(side_effect=RuntimeError("boom")))
        outcome = await controller.verify()

        assert outcome.state is S.FAILED
        assert outcome.error == "boom"
        assert controller.state is S.CHECKED
        assert controller.history[-2:] == [S.FAILED, S.CHECKED]
        delivery.submit.assert_not_awaited()
        assert host.document.get_element_by_id(BTN_TEXT).text == RETRY_TEXT
        assert host.document.get_element_by_id(BTN_TEXT).visible
        assert not host.document.get_element_by_id(LOADING_DOTS).visible
        assert host.document.get_element_by_id(VERIFY_BTN).disabled is False

    async def test_retry_after_failure(self, controller, delivery, monkeypatch):
        controller.toggle()
        monkeypatch.setattr(controller.aggregator, "rendering", MagicMock(side_effect=RuntimeError("boom")))
        await controller.verify()
        monkeypatch.undo()
        outcome = await controller.verify()
        assert outcome.state is S.VERIFIED
        delivery.submit.assert_awaited_once()

    async def test_missing_anchor_during_verify_fails(self, controller, host, delivery):
        controller.toggle()
        host.document.remove_element(LOADING_DOTS)
        outcome = await controller.verify()
        assert outcome.state is S.FAILED
        assert LOADING_DOTS in outcome.error
        assert controller.state is S.CHECKED
        delivery.submit.assert_not_awaited()
