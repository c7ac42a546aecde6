"""
Verification Controller - consent/verify state machine

IDLE -> CHECKED       consent toggled on; rendering signature + interaction windows
CHECKED -> IDLE       consent toggled off; windows cancelled, nothing submitted
CHECKED -> SUBMITTING verify; a second verify while submitting does nothing
SUBMITTING -> VERIFIED delivery finished (remote failures are absorbed)
SUBMITTING -> FAILED  local error while assembling; retry affordance, back to CHECKED
"""
import asyncio
import logging
from typing import Callable, List, Optional, Set

from captcha_gate.core.config import Settings
from captcha_gate.core.errors import AnchorMissingError, InitializationError, InvalidTransition
from captcha_gate.core.host import Element, Event, Host
from captcha_gate.models.models import (
    TRANSITIONS, DeliveryResult, VerificationOutcome, VerificationPayload, VerificationState,
)
from captcha_gate.services import probes
from captcha_gate.services.bridge import select_bridge
from captcha_gate.services.delivery import DeliveryChannel
from captcha_gate.services.fingerprint import FingerprintAggregator
from captcha_gate.services.identity import derive_identity
from captcha_gate.services.observer import CLICK, MOUSEMOVE, SCROLL, InteractionObserver
from captcha_gate.utils.helpers import iso_timestamp, now_ms, parse_int_param

log = logging.getLogger(__name__)

CAPTCHA_BOX = "captchaBox"
VERIFY_BTN = "verifyBtn"
BTN_TEXT = "btnText"
LOADING_DOTS = "loadingDots"
SUCCESS_MESSAGE = "successMessage"
REQUIRED_ANCHORS = (CAPTCHA_BOX, VERIFY_BTN, BTN_TEXT, LOADING_DOTS, SUCCESS_MESSAGE)

RETRY_TEXT = "Retry Verification"
FALLBACK_MESSAGE = "Verification complete. You can close this window."
TOGGLE_KEYS = ("Space", "Enter")


class VerificationController:
    def __init__(self, host: Host, settings: Settings,
                 delivery: Optional[DeliveryChannel] = None,
                 clock: Callable[[], int] = now_ms):
        missing = [a for a in REQUIRED_ANCHORS if host.document.get_element_by_id(a) is None]
        if missing:
            raise InitializationError(missing)

        self.host = host
        self.settings = settings
        self.delivery = delivery or DeliveryChannel(settings)
        self._clock = clock
        self.state = VerificationState.IDLE
        self.history: List[VerificationState] = [self.state]
        self.payload: Optional[VerificationPayload] = None
        self.notification: Optional[str] = None
        self.last_error: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._close_handle = None

        self.loaded_at = clock()
        self.bridge = select_bridge(host.bridge)
        self.aggregator = FingerprintAggregator(host.signals)
        self.observer = InteractionObserver(host.document, host.window, clock=clock)
        self.tgid = parse_int_param(host.document.query_param("tgid"), "tgid")

        browser = probes.browser_identity(host.signals)
        screen = probes.screen_metrics(host.signals)
        self.identity = derive_identity(
            browser.value["userAgent"] if browser.ok else probes.UNKNOWN,
            screen.value["width"] if screen.ok else probes.UNKNOWN,
            screen.value["height"] if screen.ok else probes.UNKNOWN,
            clock=clock,
        )
        self.environment = self.aggregator.snapshot(self.identity.session_id, iso_timestamp(self.loaded_at))

        self._bind_events()
        self.bridge.prepare(settings.bridge_background_color)
        log.info("Verification controller initialized: session=%s tgid=%s bridge=%s",
                 self.identity.session_id, self.tgid, self.bridge.present)

    # -------- wiring --------
    def _bind_events(self):
        doc = self.host.document
        doc.get_element_by_id(CAPTCHA_BOX).add_event_listener("click", self._on_box_click)
        doc.get_element_by_id(VERIFY_BTN).add_event_listener("click", self._on_verify_click)
        doc.add_event_listener("keydown", self._on_keydown)

    def _unbind_events(self):
        doc = self.host.document
        box = doc.get_element_by_id(CAPTCHA_BOX)
        if box is not None:
            box.remove_event_listener("click", self._on_box_click)
        btn = doc.get_element_by_id(VERIFY_BTN)
        if btn is not None:
            btn.remove_event_listener("click", self._on_verify_click)
        doc.remove_event_listener("keydown", self._on_keydown)

    def _on_box_click(self, event: Event):
        self.toggle()

    def _on_verify_click(self, event: Event):
        event.prevent_default()
        if self.state is not VerificationState.CHECKED:
            return
        task = asyncio.get_running_loop().create_task(self.verify())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_keydown(self, event: Event):
        if event.code not in TOGGLE_KEYS:
            return
        active = self.host.document.active_element
        if active is self.host.document.body or active.id == CAPTCHA_BOX:
            event.prevent_default()
            self.toggle()

    # -------- state --------
    def _transition(self, target: VerificationState):
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        log.debug("State %s -> %s", self.state.name, target.name)
        self.state = target
        self.history.append(target)

    @property
    def is_checked(self) -> bool:
        return self.state is VerificationState.CHECKED

    def _element(self, anchor_id: str) -> Optional[Element]:
        el = self.host.document.get_element_by_id(anchor_id)
        if el is None:
            log.warning("Page anchor %s is missing", anchor_id)
        return el

    def _require(self, anchor_id: str) -> Element:
        el = self.host.document.get_element_by_id(anchor_id)
        if el is None:
            raise AnchorMissingError(anchor_id)
        return el

    def toggle(self) -> VerificationState:
        """Flip consent. Ignored while submitting and once verified."""
        if self.state in (VerificationState.SUBMITTING, VerificationState.VERIFIED):
            log.debug("Toggle ignored in state %s", self.state.name)
            return self.state

        box = self._element(CAPTCHA_BOX)
        btn = self._element(VERIFY_BTN)
        if self.state is VerificationState.CHECKED:
            self._transition(VerificationState.IDLE)
            self.observer.cancel_all()
            if box is not None:
                box.remove_class("checked")
            if btn is not None:
                btn.disabled = True
        else:
            # windows first: without a running loop nothing may change
            try:
                self._collect_interaction_data()
            except Exception:
                self.observer.cancel_all()
                raise
            self._transition(VerificationState.CHECKED)
            if box is not None:
                box.add_class("checked")
            if btn is not None:
                btn.disabled = False
        return self.state

    def _collect_interaction_data(self):
        self.aggregator.rendering()
        self._start_windows()

    def _start_windows(self):
        self.observer.start_all({
            MOUSEMOVE: self.settings.mousemove_window_ms,
            CLICK: self.settings.click_window_ms,
            SCROLL: self.settings.scroll_window_ms,
        })

    async def verify(self) -> Optional[VerificationOutcome]:
        """
        Run one verification attempt. Returns None without side effects
        unless consent is currently given and no attempt is in flight.
        """
        if self.state is not VerificationState.CHECKED:
            log.info("Verify ignored in state %s", self.state.name)
            return None
        self._transition(VerificationState.SUBMITTING)

        try:
            btn = self._require(VERIFY_BTN)
            btn_text = self._require(BTN_TEXT)
            dots = self._require(LOADING_DOTS)
            btn.disabled = True
            btn_text.visible = False
            dots.visible = True
            payload = self._assemble()
        except Exception as e:
            return self._fail(e)

        self.payload = payload
        if self.settings.submit_delay_ms:
            await asyncio.sleep(self.settings.submit_delay_ms / 1000)

        delivery = await self._deliver(payload)
        self._transition(VerificationState.VERIFIED)
        self._render_verified()
        self.notification = self._notify_verified()
        log.info("Session %s verified (delivery synthesized=%s, notified via %s)",
                 self.identity.session_id, delivery.synthesized, self.notification)
        return VerificationOutcome(
            state=self.state,
            payload=payload,
            delivery=delivery,
            notification=self.notification,
        )

    def _assemble(self) -> VerificationPayload:
        rendering = self.aggregator.rendering()
        interaction = self.observer.freeze()
        now = self._clock()
        signals = self.host.signals
        final = {
            "verificationTime": iso_timestamp(now),
            "timeToComplete": now - self.loaded_at,
            "userBehavior": {
                "mouseMovements": interaction.mouse_movements,
                "clicks": len(interaction.clicks),
                "scrolls": interaction.scrolls,
                "timeOnPage": probes.time_on_page(signals).value,
                "navigationTiming": probes.navigation_timing(signals).value,
            },
        }
        return VerificationPayload(
            environment=self.environment,
            identity=self.identity,
            rendering=rendering,
            interaction=interaction,
            final_verification=final,
            tgid=self.tgid,
        )

    async def _deliver(self, payload: VerificationPayload) -> DeliveryResult:
        try:
            return await self.delivery.submit(payload)
        except Exception as e:
            # submit() absorbs its own failures; this covers substituted channels
            log.error("Delivery channel raised: %s", e)
            return DeliveryResult(status="success", body={}, synthesized=True, error=str(e))

    def _fail(self, error: Exception) -> VerificationOutcome:
        log.error("Verification failed: %s", error, exc_info=True)
        self.last_error = str(error)
        self._transition(VerificationState.FAILED)

        dots = self._element(LOADING_DOTS)
        btn_text = self._element(BTN_TEXT)
        btn = self._element(VERIFY_BTN)
        if dots is not None:
            dots.visible = False
        if btn_text is not None:
            btn_text.visible = True
            btn_text.text = RETRY_TEXT
        if btn is not None:
            btn.disabled = False

        self._transition(VerificationState.CHECKED)
        self._start_windows()
        return VerificationOutcome(state=VerificationState.FAILED, error=self.last_error)

    def _render_verified(self):
        dots = self._element(LOADING_DOTS)
        success = self._element(SUCCESS_MESSAGE)
        btn = self._element(VERIFY_BTN)
        if dots is not None:
            dots.visible = False
        if success is not None:
            success.visible = True
        if btn is not None:
            btn.visible = False

    def _notify_verified(self) -> str:
        """Exactly one of: host bridge, or the local fallback indicator."""
        if self.bridge.present and self.bridge.send_verified(self.identity.session_id):
            self._close_handle = self.bridge.schedule_close(self.settings.bridge_close_delay_ms)
            return "bridge"
        log.info("Host bridge unavailable; showing local success indicator")
        success = self._element(SUCCESS_MESSAGE)
        if success is not None:
            success.text = FALLBACK_MESSAGE
            success.add_class("fallback")
        return "fallback"

    async def aclose(self):
        self._unbind_events()
        self.observer.cancel_all()
        for task in list(self._tasks):
            await task
        if self._close_handle is not None:
            # a verified session always ends with the host app closed
            self._close_handle.cancel()
            self._close_handle = None
            self.bridge.close()
        await self.delivery.aclose()
