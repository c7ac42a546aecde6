"""
Interaction Observer - time-boxed input listeners

Each window listens for one event kind on one target. After its duration the
listener is removed by a loop timer and the window's future resolves to a
frozen WindowSample. Starting a window of a kind that is already open cancels
the running one and discards what it had collected.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from captcha_gate.core.host import Event, EventTarget
from captcha_gate.models.models import ClickRecord, InteractionSample
from captcha_gate.utils.helpers import now_ms, iso_timestamp

log = logging.getLogger(__name__)

MOUSEMOVE = "mousemove"
CLICK = "click"
SCROLL = "scroll"
KINDS = (MOUSEMOVE, CLICK, SCROLL)


@dataclass(frozen=True)
class WindowSample:
    kind: str
    count: int
    clicks: Tuple[ClickRecord, ...] = ()
    opened_at: int = 0
    closed_at: int = 0
    completed: bool = True  # False when finished before its timer fired


@dataclass
class _Accumulator:
    count: int = 0
    clicks: List[ClickRecord] = field(default_factory=list)


class ObservationWindow:
    """
    Handle for one open window. close()/cancel() remove the listener on every
    path; usable as an async context manager.
    """

    def __init__(self, kind: str, target: EventTarget, duration_ms: int,
                 clock: Callable[[], int] = now_ms,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        if kind not in KINDS:
            raise ValueError(f"Unknown interaction kind: {kind}")
        if duration_ms < 0:
            raise ValueError("duration_ms must not be negative")
        self.kind = kind
        self.duration_ms = duration_ms
        self._target = target
        self._clock = clock
        self._loop = loop or asyncio.get_running_loop()
        self._acc = _Accumulator()
        self._future: asyncio.Future = self._loop.create_future()
        self._listening = False
        self.opened_at = clock()
        self.closed_at: Optional[int] = None

        self._target.add_event_listener(kind, self._on_event)
        self._listening = True
        self._deadline = self._loop.time() + duration_ms / 1000
        self._timer = self._loop.call_later(duration_ms / 1000, self._expire)
        log.debug("Opened %s window for %d ms", kind, duration_ms)

    @property
    def is_open(self) -> bool:
        return self._listening

    @property
    def count(self) -> int:
        return self._acc.count

    def _on_event(self, event: Event):
        if not self._listening:
            return
        self._acc.count += 1
        if self.kind == CLICK:
            self._acc.clicks.append(ClickRecord(x=event.x, y=event.y, time=self._clock()))

    def _detach(self):
        self._timer.cancel()
        if self._listening:
            self._target.remove_event_listener(self.kind, self._on_event)
            self._listening = False
            self.closed_at = self._clock()

    def _freeze(self, completed: bool) -> WindowSample:
        return WindowSample(
            kind=self.kind,
            count=self._acc.count,
            clicks=tuple(self._acc.clicks),
            opened_at=self.opened_at,
            closed_at=self.closed_at or self._clock(),
            completed=completed,
        )

    def _expire(self):
        if not self._listening:
            return
        remaining = self._deadline - self._loop.time()
        if remaining > 0:
            # the loop may run timers up to one clock tick early
            self._timer = self._loop.call_later(remaining, self._expire)
            return
        self._detach()
        log.debug("%s window expired with %d events", self.kind, self._acc.count)
        if not self._future.done():
            self._future.set_result(self._freeze(completed=True))

    def peek(self) -> WindowSample:
        """Frozen copy of what has been collected so far; the window stays open."""
        return self._freeze(completed=not self._listening)

    def finish(self) -> WindowSample:
        """Close now, keeping the data collected so far."""
        if self._future.done() and not self._future.cancelled():
            return self._future.result()
        was_open = self._listening
        self._detach()
        sample = self._freeze(completed=not was_open)
        if not self._future.done():
            self._future.set_result(sample)
        return sample

    def cancel(self):
        """Close now and discard the collected data."""
        self._detach()
        self._acc = _Accumulator()
        if not self._future.done():
            self._future.cancel()

    close = cancel

    async def result(self) -> WindowSample:
        """Wait for the window to close. Raises CancelledError if it was cancelled."""
        return await asyncio.shield(self._future)

    async def __aenter__(self) -> "ObservationWindow":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.cancel()


class InteractionObserver:
    """Owns at most one open window per interaction kind"""

    def __init__(self, document: EventTarget, window: EventTarget, clock: Callable[[], int] = now_ms):
        self._targets = {MOUSEMOVE: document, CLICK: document, SCROLL: window}
        self._clock = clock
        self._windows: Dict[str, ObservationWindow] = {}
        self.started_at: Optional[int] = None

    def start_window(self, kind: str, duration_ms: int) -> ObservationWindow:
        previous = self._windows.get(kind)
        if previous is not None and previous.is_open:
            log.debug("Restarting %s window; discarding %d events", kind, previous.count)
            previous.cancel()
        win = ObservationWindow(kind, self._targets[kind], duration_ms, clock=self._clock)
        self._windows[kind] = win
        return win

    def start_all(self, durations: Dict[str, int]) -> Dict[str, ObservationWindow]:
        self.started_at = self._clock()
        return {kind: self.start_window(kind, durations[kind]) for kind in KINDS}

    def window(self, kind: str) -> Optional[ObservationWindow]:
        return self._windows.get(kind)

    def cancel_all(self):
        for win in self._windows.values():
            win.cancel()
        self._windows.clear()
        self.started_at = None

    def freeze(self) -> InteractionSample:
        """
        Finish every window that is still open and combine the samples. Kinds
        that were never started contribute zero.
        """
        samples: Dict[str, WindowSample] = {kind: win.finish() for kind, win in self._windows.items()}
        click_sample = samples.get(CLICK)
        return InteractionSample(
            mouse_movements=samples[MOUSEMOVE].count if MOUSEMOVE in samples else 0,
            clicks=list(click_sample.clicks) if click_sample else [],
            scrolls=samples[SCROLL].count if SCROLL in samples else 0,
            interaction_time=iso_timestamp(self.started_at) if self.started_at else None,
        )
