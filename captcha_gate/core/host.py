"""
Host capability interface.

The gate never talks to a browser directly. Everything it needs from the
embedding runtime comes through the objects defined here: event targets for
the document, window and page elements, a SignalSource that hands out raw
environment values, and the optional bridge object injected by the host
application. Concrete runtimes subclass SignalSource (see core/headless.py).
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit, parse_qs

log = logging.getLogger(__name__)

Listener = Callable[["Event"], None]


@dataclass
class Event:
    """A dispatched DOM-style event"""
    type: str
    x: Optional[float] = None
    y: Optional[float] = None
    code: Optional[str] = None
    target: Any = None
    default_prevented: bool = False

    def prevent_default(self):
        self.default_prevented = True


class EventTarget:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def add_event_listener(self, type: str, listener: Listener):
        handlers = self._listeners.setdefault(type, [])
        if listener not in handlers:
            handlers.append(listener)

    def remove_event_listener(self, type: str, listener: Listener):
        handlers = self._listeners.get(type, [])
        if listener in handlers:
            handlers.remove(listener)

    def listener_count(self, type: str) -> int:
        return len(self._listeners.get(type, []))

    def dispatch_event(self, event: Event) -> Event:
        if event.target is None:
            event.target = self
        # snapshot: listeners may unregister themselves while running
        for listener in list(self._listeners.get(event.type, [])):
            try:
                listener(event)
            except Exception:
                log.exception("Listener for %s raised", event.type)
        return event


class Element(EventTarget):
    """A page element the gate reads or renders into"""

    def __init__(self, element_id: str, text: str = "", visible: bool = True, disabled: bool = False):
        super().__init__()
        self.id = element_id
        self.text = text
        self.visible = visible
        self.disabled = disabled
        self.classes: set = set()

    def add_class(self, name: str):
        self.classes.add(name)

    def remove_class(self, name: str):
        self.classes.discard(name)

    def has_class(self, name: str) -> bool:
        return name in self.classes

    def click(self) -> Event:
        return self.dispatch_event(Event("click", target=self))

    def __repr__(self):
        return f"<Element #{self.id}>"


class Document(EventTarget):
    def __init__(self, elements: Iterable[Element] = (), url: str = "about:blank"):
        super().__init__()
        self.url = url
        self.body = Element("body")
        self._elements: Dict[str, Element] = {}
        for el in elements:
            self.add_element(el)
        self.active_element: Element = self.body

    def add_element(self, element: Element) -> Element:
        self._elements[element.id] = element
        return element

    def remove_element(self, element_id: str):
        self._elements.pop(element_id, None)
        if self.active_element.id == element_id:
            self.active_element = self.body

    def get_element_by_id(self, element_id: str) -> Optional[Element]:
        return self._elements.get(element_id)

    def focus(self, element_id: Optional[str]):
        self.active_element = self._elements.get(element_id) if element_id else self.body
        if self.active_element is None:
            self.active_element = self.body

    def query_param(self, name: str) -> Optional[str]:
        values = parse_qs(urlsplit(self.url).query).get(name)
        return values[0] if values else None


class Window(EventTarget):
    """Receives window-level events such as scroll"""


# -------- Rendering capabilities --------
class RenderingContext2D(ABC):
    text_baseline: str = "alphabetic"
    font: str = "10px sans-serif"
    fill_style: str = "#000000"

    @abstractmethod
    def fill_rect(self, x: float, y: float, w: float, h: float): ...

    @abstractmethod
    def fill_text(self, text: str, x: float, y: float): ...


class Canvas(ABC):
    width: int
    height: int

    @abstractmethod
    def get_context(self, kind: str) -> Optional[RenderingContext2D]: ...

    @abstractmethod
    def to_data_url(self) -> str: ...


class DebugRendererInfo:
    UNMASKED_VENDOR_WEBGL: int = 0x9245
    UNMASKED_RENDERER_WEBGL: int = 0x9246


class WebGLContext(ABC):
    VERSION: int = 0x1F02

    @abstractmethod
    def get_extension(self, name: str) -> Optional[DebugRendererInfo]: ...

    @abstractmethod
    def get_parameter(self, pname: int) -> Any: ...


# -------- Raw signal source --------
class SignalSource(ABC):
    """
    Raw environment primitives. Every method may raise or return None; the
    probe layer is responsible for turning that into sentinels.
    """

    @abstractmethod
    def screen(self) -> Dict[str, Any]: ...

    @abstractmethod
    def navigator(self) -> Dict[str, Any]: ...

    @abstractmethod
    def connection(self) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def has_feature(self, name: str) -> bool: ...

    @abstractmethod
    def create_canvas(self) -> Optional[Canvas]: ...

    @abstractmethod
    def webgl_context(self) -> Optional[WebGLContext]: ...

    @abstractmethod
    def font_available(self, font_spec: str) -> bool: ...

    @abstractmethod
    def plugins(self) -> List[str]: ...

    @abstractmethod
    def timezone(self) -> str: ...

    @abstractmethod
    def timezone_offset(self) -> int: ...

    @abstractmethod
    def locale(self) -> str: ...

    @abstractmethod
    def navigation_timing(self) -> Optional[Dict[str, float]]: ...

    @abstractmethod
    def performance_now(self) -> float: ...


@dataclass
class Host:
    """Everything the embedding runtime hands to the gate"""
    document: Document
    window: Window
    signals: SignalSource
    bridge: Any = None
