"""
Identifier derivation: session id and pseudo user id.

Neither value is a credential. The pseudo user id folds the current epoch
milliseconds into its input, so it changes from one load to the next.
"""
from typing import Callable, Optional

from captcha_gate.models.models import SessionIdentity
from captcha_gate.utils.helpers import now_ms, random_base36


def string_hash32(value: str) -> int:
    """Rolling 31x multiply hash wrapped to a signed 32-bit integer."""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h

def pseudo_user_id(user_agent: str, width, height, epoch_ms: int) -> int:
    return abs(string_hash32(f"{user_agent}{width}{height}{epoch_ms}"))

def generate_session_id(epoch_ms: Optional[int] = None) -> str:
    ms = now_ms() if epoch_ms is None else epoch_ms
    return f"session_{random_base36(9)}_{ms}"

def derive_identity(user_agent: str, width, height,
                    clock: Callable[[], int] = now_ms) -> SessionIdentity:
    ms = clock()
    return SessionIdentity(
        session_id=generate_session_id(ms),
        pseudo_user_id=pseudo_user_id(user_agent, width, height, ms),
    )
