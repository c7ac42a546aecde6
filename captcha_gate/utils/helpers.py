# captcha_gate/utils/helpers.py
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

log = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# -------- Time utilities --------
def now_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)

def iso_timestamp(epoch_ms: Optional[int] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    ms = now_ms() if epoch_ms is None else epoch_ms
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"

# -------- Encoding utilities --------
def random_base36(length: int) -> str:
    """Random lowercase base36 string of the given length."""
    return "".join(secrets.choice(_BASE36) for _ in range(length))

def parse_int_param(raw: Optional[str], name: str) -> Optional[int]:
    """Parse a decimal integer query parameter (ASCII digits, optional leading minus)."""
    if raw is None or raw.strip() == "":
        return None
    text = raw.strip()
    digits = text[1:] if text.startswith("-") else text
    if not (digits.isascii() and digits.isdigit()):
        log.warning("Ignoring non-numeric %s parameter: %r", name, raw)
        return None
    return int(text)
