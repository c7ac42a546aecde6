# captcha_gate/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any
import yaml

from captcha_gate.core.errors import ConfigError

log = logging.getLogger(__name__)


@dataclass
class Settings:
    # Delivery
    endpoint: str
    timeout_sec: float
    verification_type: str
    source: str
    # Interaction windows (milliseconds)
    mousemove_window_ms: int
    click_window_ms: int
    scroll_window_ms: int
    # UX
    submit_delay_ms: int
    # Host bridge
    bridge_close_delay_ms: int
    bridge_background_color: str
    # Dev sink server
    server_host: str
    server_port: int
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None

    @property
    def submit_url(self) -> str:
        return self.endpoint.rstrip("/") + "/api/captcha"

_DEFAULTS: Dict[str, Any] = {
    "delivery": {
        "endpoint": "https://your-flask-app.herokuapp.com",
        "timeout_sec": 10,
        "verification_type": "github_pages_captcha",
        "source": "telegram_webapp",
    },
    "observer": {"mousemove_ms": 5000, "click_ms": 5000, "scroll_ms": 5000},
    "ux": {"submit_delay_ms": 2000},
    "bridge": {"close_delay_ms": 2000, "background_color": "#ffffff"},
    "server": {"host": "127.0.0.1", "port": 8000},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "captcha-gate.yaml",
    "captcha-gate.yml",
    "captcha-gate.dev.yaml",
)

def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out

def _resolve_path(s: str, base_dir: Path) -> Optional[Path]:
    """
    Resolve a config path, trying in turn:
    - the working directory
    - the project root
    None when nothing exists.
    """
    p = Path(s)
    if p.is_absolute():
        return p if p.exists() else None
    for c in (Path.cwd() / p, base_dir / p, p):
        if c.exists():
            return c
    return None

def _substitute_env_vars(obj):
    """Replace "${VAR_NAME}" strings with the environment value when it is set."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        env_value = os.getenv(var_name)
        if env_value:
            log.debug("Substituted ${%s} with env value", var_name)
            return env_value
        log.debug("Environment variable %s not found, keeping placeholder", var_name)
    return obj

def _as_int(section: Dict[str, Any], key: str, default: int, name: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value

def load_settings(path: Optional[str] = None) -> Settings:
    """
    Build Settings from defaults merged with an optional YAML file.

    File lookup:
      1) `path` argument
      2) CAPTCHA_GATE_CONFIG
      3) first of _SEARCH_ORDER found in the project root

    CAPTCHA_GATE_ENDPOINT overrides delivery.endpoint after the file is merged.
    """
    base_dir = Path(__file__).resolve().parent.parent.parent  # project root
    cfg_file_used: Optional[Path] = None

    if path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = _resolve_path(path, base_dir) or candidate
        if not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        cfg_file_used = candidate
    else:
        env_cfg = os.getenv("CAPTCHA_GATE_CONFIG")
        if env_cfg:
            candidate = _resolve_path(env_cfg, base_dir)
            if not candidate:
                tried = [str(Path(env_cfg)), str(base_dir / env_cfg), str(Path.cwd() / env_cfg)]
                raise FileNotFoundError(
                    "CAPTCHA_GATE_CONFIG not found. Tried: " + ", ".join(tried)
                )
            cfg_file_used = candidate
        else:
            for name in _SEARCH_ORDER:
                p = base_dir / name
                if p.exists():
                    cfg_file_used = p
                    break

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {cfg_file_used} must contain a mapping")
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)

    delivery = cfg.get("delivery") or {}
    observer = cfg.get("observer") or {}
    ux = cfg.get("ux") or {}
    bridge = cfg.get("bridge") or {}
    server = cfg.get("server") or {}

    endpoint = os.getenv("CAPTCHA_GATE_ENDPOINT") or delivery.get("endpoint")
    if not endpoint:
        raise ConfigError("delivery.endpoint must be set")

    try:
        timeout_sec = float(delivery.get("timeout_sec", 10))
    except (TypeError, ValueError):
        raise ConfigError(f"delivery.timeout_sec must be a number, got {delivery.get('timeout_sec')!r}")

    s = Settings(
        endpoint=str(endpoint),
        timeout_sec=timeout_sec,
        verification_type=str(delivery.get("verification_type") or "github_pages_captcha"),
        source=str(delivery.get("source") or "telegram_webapp"),
        mousemove_window_ms=_as_int(observer, "mousemove_ms", 5000, "observer.mousemove_ms"),
        click_window_ms=_as_int(observer, "click_ms", 5000, "observer.click_ms"),
        scroll_window_ms=_as_int(observer, "scroll_ms", 5000, "observer.scroll_ms"),
        submit_delay_ms=_as_int(ux, "submit_delay_ms", 2000, "ux.submit_delay_ms"),
        bridge_close_delay_ms=_as_int(bridge, "close_delay_ms", 2000, "bridge.close_delay_ms"),
        bridge_background_color=str(bridge.get("background_color") or "#ffffff"),
        server_host=str(server.get("host") or "127.0.0.1"),
        server_port=_as_int(server, "port", 8000, "server.port"),
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
    return s
