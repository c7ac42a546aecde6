"""
Headless host: an in-memory runtime for the gate.

Signals come from a profile dict. The canvas is rasterized with OpenCV into a
BGRA numpy buffer and exported as a real PNG data URL, so the canvas
signature follows the rendering settings (font face, line type) the same way
a browser's follows its graphics stack.
"""
import base64
import logging
import re
import time
from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np

from captcha_gate.core.host import (
    Canvas, DebugRendererInfo, Document, Element, Host, RenderingContext2D,
    SignalSource, WebGLContext, Window,
)

log = logging.getLogger(__name__)

# Hershey fonts are ~22px tall at scale 1.0
_HERSHEY_BASE_PX = 22.0

DEFAULT_PROFILE: Dict[str, Any] = {
    "screen": {
        "width": 1920, "height": 1080, "colorDepth": 24, "pixelDepth": 24,
        "availWidth": 1920, "availHeight": 1040,
    },
    "navigator": {
        "userAgent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
        "language": "en-US",
        "languages": ["en-US", "en"],
        "platform": "Linux x86_64",
        "cookieEnabled": True,
        "pdfViewerEnabled": True,
        "hardwareConcurrency": 8,
        "deviceMemory": 8,
        "maxTouchPoints": 0,
        "vendor": "Google Inc.",
        "product": "Gecko",
        "productSub": "20030107",
        "vendorSub": "",
    },
    "connection": {"effectiveType": "4g", "downlink": 10, "rtt": 50},
    "features": {
        "localStorage": True, "sessionStorage": True, "indexedDB": True,
        "serviceWorker": True, "ontouchstart": False, "AudioContext": True,
        "WebGLRenderingContext": True,
    },
    "fonts": ["Arial", "Helvetica", "Courier New", "Verdana", "Georgia"],
    "plugins": ["PDF Viewer", "Chrome PDF Viewer"],
    "timezone": "UTC",
    "timezone_offset": 0,
    "locale": "en-US",
    "webgl": {
        "vendor": "Google Inc. (Intel)",
        "renderer": "ANGLE (Intel, Mesa Intel(R) UHD Graphics 620, OpenGL 4.6)",
        "version": "WebGL 1.0 (OpenGL ES 2.0 Chromium)",
        "debug_info": True,
    },
    "canvas": {"line_type": cv2.LINE_AA, "font_face": cv2.FONT_HERSHEY_SIMPLEX},
}


def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


_RGBA_RE = re.compile(r"rgba?\(\s*([\d.]+)\s*,\s*([\d.]+)\s*,\s*([\d.]+)\s*(?:,\s*([\d.]+)\s*)?\)")

def parse_color(spec: str) -> Tuple[Tuple[int, int, int, int], float]:
    """CSS colour -> (BGRA tuple, alpha). Supports #rgb, #rrggbb, rgb() and rgba()."""
    spec = spec.strip().lower()
    if spec.startswith("#"):
        hexpart = spec[1:]
        if len(hexpart) == 3:
            hexpart = "".join(c * 2 for c in hexpart)
        if len(hexpart) != 6:
            raise ValueError(f"Unsupported colour: {spec}")
        r, g, b = (int(hexpart[i:i + 2], 16) for i in (0, 2, 4))
        return (b, g, r, 255), 1.0
    m = _RGBA_RE.fullmatch(spec)
    if not m:
        raise ValueError(f"Unsupported colour: {spec}")
    r, g, b = (int(float(m.group(i))) for i in (1, 2, 3))
    alpha = float(m.group(4)) if m.group(4) is not None else 1.0
    return (b, g, r, 255), max(0.0, min(1.0, alpha))


def _font_px(font: str) -> float:
    m = re.search(r"(\d+(?:\.\d+)?)px", font)
    return float(m.group(1)) if m else 10.0


class HeadlessContext2D(RenderingContext2D):
    def __init__(self, canvas: "HeadlessCanvas"):
        self.canvas = canvas
        self.text_baseline = "alphabetic"
        self.font = "10px sans-serif"
        self.fill_style = "#000000"

    def _paint(self, draw):
        color, alpha = parse_color(self.fill_style)
        img = self.canvas.pixels
        if alpha >= 1.0:
            draw(img, color)
            return
        overlay = img.copy()
        draw(overlay, color)
        cv2.addWeighted(overlay, alpha, img, 1.0 - alpha, 0, dst=img)

    def fill_rect(self, x, y, w, h):
        x0, y0 = int(round(x)), int(round(y))
        x1, y1 = int(round(x + w)) - 1, int(round(y + h)) - 1
        self._paint(lambda img, c: cv2.rectangle(img, (x0, y0), (x1, y1), c, thickness=-1))

    def fill_text(self, text, x, y):
        face = self.canvas.font_face
        scale = _font_px(self.font) / _HERSHEY_BASE_PX
        (_, text_h), baseline = cv2.getTextSize(text, face, scale, 1)
        if self.text_baseline == "top":
            origin_y = y + text_h
        elif self.text_baseline == "bottom":
            origin_y = y - baseline
        else:
            origin_y = y
        origin = (int(round(x)), int(round(origin_y)))
        line_type = self.canvas.line_type
        self._paint(lambda img, c: cv2.putText(img, text, origin, face, scale, c, 1, line_type))


class HeadlessCanvas(Canvas):
    """Browser-style canvas; resizing clears the surface"""

    def __init__(self, width: int = 300, height: int = 150,
                 line_type: int = cv2.LINE_AA, font_face: int = cv2.FONT_HERSHEY_SIMPLEX):
        self.line_type = line_type
        self.font_face = font_face
        self._width = width
        self._height = height
        self.pixels = np.zeros((height, width, 4), dtype=np.uint8)
        self._ctx: Optional[HeadlessContext2D] = None

    def _reset(self):
        self.pixels = np.zeros((self._height, self._width, 4), dtype=np.uint8)

    @property
    def width(self) -> int:
        return self._width

    @width.setter
    def width(self, value: int):
        self._width = int(value)
        self._reset()

    @property
    def height(self) -> int:
        return self._height

    @height.setter
    def height(self, value: int):
        self._height = int(value)
        self._reset()

    def get_context(self, kind: str) -> Optional[HeadlessContext2D]:
        if kind != "2d":
            return None
        if self._ctx is None:
            self._ctx = HeadlessContext2D(self)
        return self._ctx

    def to_data_url(self) -> str:
        ok, buf = cv2.imencode(".png", self.pixels)
        if not ok:
            raise RuntimeError("PNG encoding failed")
        return "data:image/png;base64," + base64.b64encode(buf.tobytes()).decode()


class HeadlessWebGL(WebGLContext):
    def __init__(self, vendor: str, renderer: str, version: str, debug_info: bool = True):
        self._params = {
            DebugRendererInfo.UNMASKED_VENDOR_WEBGL: vendor,
            DebugRendererInfo.UNMASKED_RENDERER_WEBGL: renderer,
            self.VERSION: version,
        }
        self._debug_info = debug_info

    def get_extension(self, name: str) -> Optional[DebugRendererInfo]:
        if name == "WEBGL_debug_renderer_info" and self._debug_info:
            return DebugRendererInfo()
        return None

    def get_parameter(self, pname: int) -> Any:
        return self._params.get(pname)


class HeadlessSignals(SignalSource):
    def __init__(self, profile: Optional[Dict[str, Any]] = None):
        self.profile = _merge(DEFAULT_PROFILE, profile or {})
        self._started = time.monotonic()
        self._started_epoch_ms = int(time.time() * 1000)

    def screen(self) -> Dict[str, Any]:
        return deepcopy(self.profile["screen"])

    def navigator(self) -> Dict[str, Any]:
        return deepcopy(self.profile["navigator"])

    def connection(self) -> Optional[Dict[str, Any]]:
        return deepcopy(self.profile.get("connection"))

    def has_feature(self, name: str) -> bool:
        return bool(self.profile["features"].get(name, False))

    def create_canvas(self) -> Optional[HeadlessCanvas]:
        opts = self.profile.get("canvas")
        if not opts:
            return None
        return HeadlessCanvas(line_type=opts["line_type"], font_face=opts["font_face"])

    def webgl_context(self) -> Optional[HeadlessWebGL]:
        gl = self.profile.get("webgl")
        if not gl:
            return None
        return HeadlessWebGL(gl["vendor"], gl["renderer"], gl["version"], gl.get("debug_info", True))

    def font_available(self, font_spec: str) -> bool:
        m = re.search(r'"([^"]+)"', font_spec)
        name = m.group(1) if m else font_spec
        return name in self.profile["fonts"]

    def plugins(self) -> List[str]:
        return list(self.profile["plugins"])

    def timezone(self) -> str:
        return self.profile["timezone"]

    def timezone_offset(self) -> int:
        return int(self.profile["timezone_offset"])

    def locale(self) -> str:
        return self.profile["locale"]

    def navigation_timing(self) -> Optional[Dict[str, float]]:
        if "navigation_timing" in self.profile:
            return deepcopy(self.profile["navigation_timing"])
        start = self._started_epoch_ms
        return {
            "navigationStart": start,
            "fetchStart": start,
            "domContentLoadedEventEnd": start,
            "loadEventEnd": start,
        }

    def performance_now(self) -> float:
        return (time.monotonic() - self._started) * 1000


def build_page(url: str = "about:blank") -> Document:
    """Document holding the anchors the controller expects."""
    from captcha_gate.services.controller import (
        BTN_TEXT, CAPTCHA_BOX, LOADING_DOTS, SUCCESS_MESSAGE, VERIFY_BTN,
    )
    return Document(
        [
            Element(CAPTCHA_BOX),
            Element(VERIFY_BTN, disabled=True),
            Element(BTN_TEXT, text="Verify"),
            Element(LOADING_DOTS, visible=False),
            Element(SUCCESS_MESSAGE, text="Verified", visible=False),
        ],
        url=url,
    )


def build_headless_host(url: str = "about:blank", profile: Optional[Dict[str, Any]] = None,
                        bridge: Any = None) -> Host:
    host = Host(document=build_page(url), window=Window(), signals=HeadlessSignals(profile), bridge=bridge)
    log.debug("Headless host built for %s", url)
    return host
