"""
Shared fixtures for the verification gate tests
"""

import dataclasses
from typing import List, Tuple

import httpx
import pytest

from captcha_gate.core.config import load_settings
from captcha_gate.core.headless import build_headless_host
from captcha_gate.services.delivery import DeliveryChannel
from captcha_gate.services.fingerprint import FingerprintAggregator
from captcha_gate.services.identity import derive_identity
from captcha_gate.models.models import InteractionSample, VerificationPayload

TEST_ENDPOINT = "http://sink.test"
TEST_URL = "https://gate.test/captcha/?tgid=12345"


class FakeBridge:
    """Records every call made by the gate"""

    def __init__(self, fail_on: Tuple[str, ...] = ()):
        self.calls: List[Tuple[str, tuple]] = []
        self.fail_on = fail_on

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    def sendData(self, data):
        self._record("sendData", data)

    def expand(self):
        self._record("expand")

    def setBackgroundColor(self, color):
        self._record("setBackgroundColor", color)

    def enableClosingConfirmation(self):
        self._record("enableClosingConfirmation")

    def close(self):
        self._record("close")

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def settings(monkeypatch):
    """Default settings pointed at a fake endpoint with no UX delay"""
    monkeypatch.delenv("CAPTCHA_GATE_CONFIG", raising=False)
    monkeypatch.delenv("CAPTCHA_GATE_ENDPOINT", raising=False)
    return dataclasses.replace(
        load_settings(),
        endpoint=TEST_ENDPOINT,
        submit_delay_ms=0,
        bridge_close_delay_ms=0,
    )


@pytest.fixture
def host():
    return build_headless_host(url=TEST_URL)


@pytest.fixture
def fake_bridge():
    return FakeBridge()


@pytest.fixture
def payload(host):
    """A fully assembled payload built straight from the headless host"""
    identity = derive_identity("test-agent", 1920, 1080)
    aggregator = FingerprintAggregator(host.signals)
    return VerificationPayload(
        environment=aggregator.snapshot(identity.session_id),
        identity=identity,
        rendering=aggregator.rendering(),
        interaction=InteractionSample(mouse_movements=3, scrolls=1),
        final_verification={"verificationTime": "2026-01-01T00:00:00.000Z"},
        tgid=12345,
    )


def make_channel(settings, handler) -> Tuple[DeliveryChannel, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeliveryChannel(settings, client=client), client
