"""
Domain Models and Data Structures
"""
from types import MappingProxyType
from typing import Dict, Any, Mapping, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
from enum import Enum


def freeze(value: Any) -> Any:
    """Read-only deep view: mappings become MappingProxyType, lists become tuples."""
    if isinstance(value, (dict, MappingProxyType)):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Plain JSON-ready copy of a frozen value."""
    if isinstance(value, (dict, MappingProxyType)):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def _freeze_fields(obj, *names: str):
    for name in names:
        object.__setattr__(obj, name, freeze(getattr(obj, name)))


class VerificationState(Enum):
    IDLE = "idle"
    CHECKED = "checked"
    SUBMITTING = "submitting"
    VERIFIED = "verified"
    FAILED = "failed"


# Legal moves of the verification state machine
TRANSITIONS = {
    VerificationState.IDLE: {VerificationState.CHECKED},
    VerificationState.CHECKED: {VerificationState.IDLE, VerificationState.SUBMITTING},
    VerificationState.SUBMITTING: {VerificationState.VERIFIED, VerificationState.FAILED},
    VerificationState.VERIFIED: set(),
    VerificationState.FAILED: {VerificationState.CHECKED},
}


@dataclass(frozen=True)
class ProbeResult:
    """Tagged outcome of a capability probe: a real value or a sentinel"""
    value: Any
    ok: bool = True
    error: Optional[str] = None

    @classmethod
    def sentinel(cls, value: Any, error: Optional[str] = None) -> "ProbeResult":
        return cls(value=value, ok=False, error=error)


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """Signals available without any user interaction. Sections are read-only."""
    screen: Mapping[str, Any]
    browser: Mapping[str, Any]
    hardware: Mapping[str, Any]
    network: Mapping[str, Any]
    system: Mapping[str, Any]
    features: Mapping[str, Any]
    timestamp: str
    session_id: str

    def __post_init__(self):
        _freeze_fields(self, "screen", "browser", "hardware", "network", "system", "features")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "screen": thaw(self.screen),
            "browser": thaw(self.browser),
            "hardware": thaw(self.hardware),
            "network": thaw(self.network),
            "system": thaw(self.system),
            "features": thaw(self.features),
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
        }


@dataclass(frozen=True)
class RenderingSignature:
    canvas: str
    webgl: Union[Mapping[str, Any], str]
    audio: bool
    installed_fonts: Sequence[str]
    navigator: Mapping[str, Any]

    def __post_init__(self):
        _freeze_fields(self, "webgl", "installed_fonts", "navigator")

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "canvasFingerprint": self.canvas,
            "webglFingerprint": thaw(self.webgl),
            "audioFingerprint": self.audio,
            "installedFonts": thaw(self.installed_fonts),
        }
        out.update(thaw(self.navigator))
        return out


@dataclass(frozen=True)
class ClickRecord:
    x: float
    y: float
    time: int


@dataclass(frozen=True)
class InteractionSample:
    """Frozen view of what the observer windows accumulated"""
    mouse_movements: int = 0
    clicks: Tuple[ClickRecord, ...] = ()
    scrolls: int = 0
    interaction_time: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "clicks", tuple(self.clicks))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mouseMovement": self.mouse_movements,
            "clickPattern": len(self.clicks),
            "clicks": [{"x": c.x, "y": c.y, "time": c.time} for c in self.clicks],
            "scrollBehavior": self.scrolls,
            "interactionTime": self.interaction_time,
        }


@dataclass(frozen=True)
class SessionIdentity:
    session_id: str
    pseudo_user_id: int


@dataclass(frozen=True)
class VerificationPayload:
    """Everything submitted for one attempt; nothing in it changes after assembly"""
    environment: EnvironmentSnapshot
    identity: SessionIdentity
    rendering: RenderingSignature
    interaction: InteractionSample
    final_verification: Mapping[str, Any]
    tgid: Optional[int] = None

    def __post_init__(self):
        _freeze_fields(self, "final_verification")

    def to_dict(self) -> Dict[str, Any]:
        data = self.environment.to_dict()
        data["pseudoUserId"] = self.identity.pseudo_user_id
        data["interaction"] = self.interaction.to_dict()
        data["detailedFingerprint"] = self.rendering.to_dict()
        data["finalVerification"] = thaw(self.final_verification)
        if self.tgid is not None:
            data["tgid"] = self.tgid
        return data


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a submission; synthesized results stand in for failed deliveries"""
    status: str
    body: Dict[str, Any]
    synthesized: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class VerificationOutcome:
    state: VerificationState
    payload: Optional[VerificationPayload] = None
    delivery: Optional[DeliveryResult] = None
    notification: Optional[str] = None  # "bridge" or "fallback"
    error: Optional[str] = None
