"""
Error taxonomy for the verification gate.

Probe, delivery and bridge failures never surface as exceptions; they are
converted to sentinels, synthesized results or the fallback indicator.
Only the cases below propagate.
"""
from typing import List


class GateError(Exception):
    """Base class for verification gate errors"""


class ConfigError(GateError):
    """Settings could not be loaded or hold invalid values"""


class InitializationError(GateError):
    """Controller cannot start because required page anchors are missing"""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required page anchors: {', '.join(self.missing)}")


class VerificationError(GateError):
    """Local failure while assembling a verification payload"""


class AnchorMissingError(VerificationError):
    def __init__(self, anchor_id: str):
        self.anchor_id = anchor_id
        super().__init__(f"Page anchor disappeared: {anchor_id}")


class InvalidTransition(GateError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal state transition {current.name} -> {target.name}")
