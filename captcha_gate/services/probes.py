"""
Capability probes - one environment signal each, never raising
"""
import logging
from functools import wraps
from typing import Any, Dict, List

from captcha_gate.core.host import SignalSource
from captcha_gate.models.models import ProbeResult

log = logging.getLogger(__name__)

UNKNOWN = "unknown"

REFERENCE_FONTS = [
    'Arial', 'Helvetica', 'Times New Roman', 'Courier New',
    'Verdana', 'Georgia', 'Palatino', 'Garamond', 'Comic Sans MS',
    'Arial Black', 'Impact', 'Tahoma', 'Trebuchet MS'
]


def probe(sentinel: Any):
    """Wrap a raw read so any failure becomes a sentinel ProbeResult."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs) -> ProbeResult:
            try:
                return ProbeResult(fn(*args, **kwargs))
            except Exception as e:
                log.debug("Probe %s failed: %s", fn.__name__, e)
                return ProbeResult.sentinel(sentinel, error=f"{type(e).__name__}: {e}")
        return wrapper
    return decorator


def _or_unknown(value):
    # falsy values (0, None, "") read as unknown, matching `value || 'unknown'`
    return value if value else UNKNOWN


@probe(sentinel=UNKNOWN)
def screen_metrics(signals: SignalSource) -> Dict[str, Any]:
    s = signals.screen()
    return {
        "width": s["width"],
        "height": s["height"],
        "colorDepth": s.get("colorDepth"),
        "pixelDepth": s.get("pixelDepth"),
        "availWidth": s.get("availWidth"),
        "availHeight": s.get("availHeight"),
    }


@probe(sentinel=UNKNOWN)
def browser_identity(signals: SignalSource) -> Dict[str, Any]:
    nav = signals.navigator()
    return {
        "userAgent": nav["userAgent"],
        "language": nav.get("language"),
        "languages": list(nav.get("languages") or []),
        "platform": nav.get("platform"),
        "cookieEnabled": bool(nav.get("cookieEnabled")),
        "pdfViewerEnabled": _or_unknown(nav.get("pdfViewerEnabled")),
    }


@probe(sentinel=UNKNOWN)
def hardware_hints(signals: SignalSource) -> Dict[str, Any]:
    nav = signals.navigator()
    return {
        "hardwareConcurrency": _or_unknown(nav.get("hardwareConcurrency")),
        "deviceMemory": _or_unknown(nav.get("deviceMemory")),
        "maxTouchPoints": nav.get("maxTouchPoints") or 0,
    }


@probe(sentinel=UNKNOWN)
def navigator_details(signals: SignalSource) -> Dict[str, Any]:
    nav = signals.navigator()
    return {key: nav.get(key) for key in ("platform", "vendor", "product", "productSub", "vendorSub")}


@probe(sentinel=UNKNOWN)
def connection_hints(signals: SignalSource):
    conn = signals.connection()
    if not conn:
        return UNKNOWN
    return {
        "effectiveType": conn.get("effectiveType"),
        "downlink": conn.get("downlink"),
        "rtt": conn.get("rtt"),
    }


@probe(sentinel={"localStorage": False, "sessionStorage": False, "indexedDB": False})
def storage_apis(signals: SignalSource) -> Dict[str, bool]:
    return {name: bool(signals.has_feature(name)) for name in ("localStorage", "sessionStorage", "indexedDB")}


@probe(sentinel=False)
def feature_flag(signals: SignalSource, name: str) -> bool:
    return bool(signals.has_feature(name))


@probe(sentinel=False)
def canvas_support(signals: SignalSource) -> bool:
    canvas = signals.create_canvas()
    return bool(canvas is not None and canvas.get_context("2d") is not None)


@probe(sentinel=False)
def webgl_support(signals: SignalSource) -> bool:
    return bool(signals.has_feature("WebGLRenderingContext") and signals.webgl_context() is not None)


@probe(sentinel=False)
def audio_context(signals: SignalSource) -> bool:
    return bool(signals.has_feature("AudioContext") or signals.has_feature("webkitAudioContext"))


def installed_fonts(signals: SignalSource, reference: List[str] = REFERENCE_FONTS) -> ProbeResult:
    """Subset of the reference list the host reports as available."""
    found = []
    failures = 0
    for font in reference:
        try:
            if signals.font_available(f'12px "{font}"'):
                found.append(font)
        except Exception as e:
            failures += 1
            log.debug("Font check for %s failed: %s", font, e)
    if failures == len(reference):
        return ProbeResult.sentinel([], error="font checks unavailable")
    return ProbeResult(found)


@probe(sentinel=[])
def plugin_names(signals: SignalSource) -> List[str]:
    return [str(name) for name in (signals.plugins() or [])]


@probe(sentinel=UNKNOWN)
def system_locale(signals: SignalSource) -> Dict[str, Any]:
    return {
        "timezone": signals.timezone(),
        "timezoneOffset": signals.timezone_offset(),
        "locale": signals.locale(),
    }


@probe(sentinel="unavailable")
def navigation_timing(signals: SignalSource):
    timing = signals.navigation_timing()
    if not timing:
        return "unavailable"
    start = timing["navigationStart"]
    return {
        "loadTime": timing["loadEventEnd"] - start,
        "domReadyTime": timing["domContentLoadedEventEnd"] - start,
        "readyStart": timing["fetchStart"] - start,
    }


@probe(sentinel=0.0)
def time_on_page(signals: SignalSource) -> float:
    return float(signals.performance_now())
