"""
Fingerprint Aggregator - environment snapshot plus rendering signatures
"""
import logging
from typing import Any, Dict, Optional, Union

from captcha_gate.core.host import SignalSource
from captcha_gate.models.models import EnvironmentSnapshot, RenderingSignature
from captcha_gate.services import probes
from captcha_gate.utils.helpers import iso_timestamp

log = logging.getLogger(__name__)

CANVAS_WIDTH = 200
CANVAS_HEIGHT = 50
CANVAS_TEXT = "Canvas Fingerprint"
DATA_URL_HEADER_LEN = len("data:image/png;base64,")

WEBGL_DEBUG_EXTENSION = "WEBGL_debug_renderer_info"


def canvas_signature(signals: SignalSource) -> str:
    """
    Render a fixed drawing onto an off-screen 200x50 surface and return the
    encoded image minus its data URL header. Any failure yields "error".
    """
    try:
        canvas = signals.create_canvas()
        if canvas is None:
            return "error"
        ctx = canvas.get_context("2d")
        if ctx is None:
            return "error"
        canvas.width = CANVAS_WIDTH
        canvas.height = CANVAS_HEIGHT

        ctx.text_baseline = "top"
        ctx.font = "14px Arial"
        ctx.fill_style = "#f60"
        ctx.fill_rect(125, 1, 62, 20)
        ctx.fill_style = "#069"
        ctx.fill_text(CANVAS_TEXT, 2, 15)
        ctx.fill_style = "rgba(102, 204, 0, 0.7)"
        ctx.fill_text(CANVAS_TEXT, 4, 17)

        return canvas.to_data_url()[DATA_URL_HEADER_LEN:]
    except Exception as e:
        log.debug("Canvas signature failed: %s", e)
        return "error"


def webgl_signature(signals: SignalSource) -> Union[Dict[str, Any], str]:
    """Vendor/renderer/version through the debug renderer extension."""
    try:
        gl = signals.webgl_context()
        if gl is None:
            return "unsupported"
        debug_info = gl.get_extension(WEBGL_DEBUG_EXTENSION)
        if debug_info is None:
            log.debug("WebGL context has no %s extension", WEBGL_DEBUG_EXTENSION)
            return "error"
        return {
            "vendor": gl.get_parameter(debug_info.UNMASKED_VENDOR_WEBGL),
            "renderer": gl.get_parameter(debug_info.UNMASKED_RENDERER_WEBGL),
            "version": gl.get_parameter(gl.VERSION),
        }
    except Exception as e:
        log.debug("WebGL signature failed: %s", e)
        return "error"


class FingerprintAggregator:
    """Builds the environment snapshot once and the rendering signature on demand"""

    def __init__(self, signals: SignalSource):
        self.signals = signals
        self._rendering: Optional[RenderingSignature] = None

    def snapshot(self, session_id: str, timestamp: Optional[str] = None) -> EnvironmentSnapshot:
        s = self.signals
        storage = probes.storage_apis(s).value
        features = {
            "touchSupport": probes.feature_flag(s, "ontouchstart").value,
            "serviceWorker": probes.feature_flag(s, "serviceWorker").value,
            "webGL": probes.webgl_support(s).value,
            "canvas": probes.canvas_support(s).value,
            "fonts": probes.installed_fonts(s).value,
            "plugins": probes.plugin_names(s).value,
            "localStorage": storage["localStorage"],
            "sessionStorage": storage["sessionStorage"],
            "indexedDB": storage["indexedDB"],
        }
        system = probes.system_locale(s)
        snap = EnvironmentSnapshot(
            screen=_section(probes.screen_metrics(s)),
            browser=_section(probes.browser_identity(s)),
            hardware=_section(probes.hardware_hints(s)),
            network={"connection": probes.connection_hints(s).value},
            system=_section(system),
            features=features,
            timestamp=timestamp or iso_timestamp(),
            session_id=session_id,
        )
        log.info("Initial environment snapshot collected for %s", session_id)
        log.debug("Snapshot: %s", snap)
        return snap

    def rendering(self) -> RenderingSignature:
        """Computed on first call, cached for the rest of the session."""
        if self._rendering is None:
            s = self.signals
            self._rendering = RenderingSignature(
                canvas=canvas_signature(s),
                webgl=webgl_signature(s),
                audio=probes.audio_context(s).value,
                installed_fonts=probes.installed_fonts(s).value,
                navigator=_section(probes.navigator_details(s)),
            )
            log.info("Rendering signature computed (canvas %d chars)", len(self._rendering.canvas))
        return self._rendering


def _section(result) -> Dict[str, Any]:
    """Probe value as a dict section; sentinels become {"status": sentinel}."""
    if result.ok and isinstance(result.value, dict):
        return result.value
    return {"status": result.value}
