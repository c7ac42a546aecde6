"""
Host bridge - optional notification sink provided by the embedding app

The bridge is chosen once when the controller starts: either a HostBridge
around the injected object, or AbsentBridge. Every call is best effort.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from captcha_gate.utils.helpers import iso_timestamp

log = logging.getLogger(__name__)


class AbsentBridge:
    present = False

    def prepare(self, background_color: str):
        pass

    def send_verified(self, session_id: str) -> bool:
        return False

    def schedule_close(self, delay_ms: int) -> Optional[asyncio.TimerHandle]:
        return None

    def close(self):
        pass


class HostBridge:
    present = True

    def __init__(self, raw: Any):
        self._raw = raw
        self.closed = False

    def _call(self, method: str, *args) -> bool:
        fn = getattr(self._raw, method, None)
        if not callable(fn):
            log.debug("Host bridge has no %s()", method)
            return False
        try:
            fn(*args)
            return True
        except Exception as e:
            log.warning("Host bridge %s() failed: %s", method, e)
            return False

    def prepare(self, background_color: str):
        self._call("expand")
        self._call("setBackgroundColor", background_color)
        self._call("enableClosingConfirmation")

    def send_verified(self, session_id: str) -> bool:
        message: Dict[str, Any] = {
            "status": "verified",
            "sessionId": session_id,
            "timestamp": iso_timestamp(),
        }
        return self._call("sendData", json.dumps(message))

    def close(self):
        """Close the embedding app once; later calls do nothing."""
        if self.closed:
            return
        self.closed = True
        self._call("close")

    def schedule_close(self, delay_ms: int) -> Optional[asyncio.TimerHandle]:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay_ms / 1000, self.close)


def select_bridge(raw: Any):
    """Wrap the injected bridge object, or return AbsentBridge when there is none usable."""
    if raw is None:
        log.info("No host bridge present")
        return AbsentBridge()
    if not callable(getattr(raw, "sendData", None)):
        log.info("Host bridge object lacks sendData(); treating as absent")
        return AbsentBridge()
    log.info("Host bridge detected")
    return HostBridge(raw)
