"""Listener tables and message dispatch.

Dispatch order for a decoded message is ID listeners, then type listeners,
then generic listeners. The first listener returning anything other than
``NEXT`` ends the pass. Userdata travels only between a query and its
ID listener and is cleared before the type tier.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .config import FrameConfig
from .events import EventKind, EventReporter
from .message import Listener, ListenerResult, Message, TimeoutListener

if TYPE_CHECKING:
    from ..engine import FrameEngine

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class IdListener:
    frame_id: int
    callback: Listener
    timeout_callback: TimeoutListener | None = None
    timeout: int = 0
    timeout_max: int = 0
    userdata: Any = None
    userdata2: Any = None


@dataclass(eq=False)
class TypeListener:
    type: int
    callback: Listener


class ListenerRegistry:
    """Bounded ID, type and generic listener tables.

    Every mutation and every walk over the tables happens under one
    reentrant lock, so a listener may register or remove listeners from
    inside its own callback. Walks iterate over a snapshot and skip entries
    removed mid-pass.
    """

    def __init__(self, config: FrameConfig, reporter: EventReporter | None = None) -> None:
        self._config = config
        self._reporter = reporter or EventReporter()
        self._lock = threading.RLock()
        self._id_listeners: list[IdListener] = []
        self._type_listeners: list[TypeListener] = []
        self._generic_listeners: list[Listener] = []

    # ─── REGISTRATION ────────────────────────────────────────────────

    def add_id_listener(
        self,
        msg: Message,
        callback: Listener,
        timeout_callback: TimeoutListener | None = None,
        timeout: int = 0,
    ) -> bool:
        """Register a listener for responses carrying ``msg.frame_id``.

        The message's userdata slots are stored with the listener and
        handed back on every matching dispatch.
        """
        with self._lock:
            if any(lst.frame_id == msg.frame_id for lst in self._id_listeners):
                self._reporter.report(
                    EventKind.ID_LISTENER_EXISTS,
                    f"ID listener for 0x{msg.frame_id:X} already registered",
                    frame_id=msg.frame_id,
                )
                return False
            if len(self._id_listeners) >= self._config.max_id_listeners:
                self._reporter.report(
                    EventKind.LISTENER_TABLE_FULL,
                    f"Failed to add ID listener: max {self._config.max_id_listeners} reached",
                    frame_id=msg.frame_id,
                )
                return False
            self._id_listeners.append(
                IdListener(
                    frame_id=msg.frame_id,
                    callback=callback,
                    timeout_callback=timeout_callback,
                    timeout=timeout,
                    timeout_max=timeout,
                    userdata=msg.userdata,
                    userdata2=msg.userdata2,
                )
            )
            return True

    def add_type_listener(self, frame_type: int, callback: Listener) -> bool:
        with self._lock:
            if len(self._type_listeners) >= self._config.max_type_listeners:
                self._reporter.report(
                    EventKind.LISTENER_TABLE_FULL,
                    f"Failed to add type listener: max {self._config.max_type_listeners} reached",
                    type=frame_type,
                )
                return False
            self._type_listeners.append(TypeListener(type=frame_type, callback=callback))
            return True

    def add_generic_listener(self, callback: Listener) -> bool:
        with self._lock:
            if len(self._generic_listeners) >= self._config.max_generic_listeners:
                self._reporter.report(
                    EventKind.LISTENER_TABLE_FULL,
                    f"Failed to add generic listener: max "
                    f"{self._config.max_generic_listeners} reached",
                )
                return False
            self._generic_listeners.append(callback)
            return True

    def remove_id_listener(self, frame_id: int) -> bool:
        with self._lock:
            for lst in self._id_listeners:
                if lst.frame_id == frame_id:
                    self._id_listeners.remove(lst)
                    return True
        self._reporter.report(
            EventKind.LISTENER_NOT_FOUND,
            f"No ID listener for 0x{frame_id:X}",
            frame_id=frame_id,
        )
        return False

    def remove_type_listener(self, frame_type: int) -> bool:
        """Remove every listener bound to ``frame_type``."""
        with self._lock:
            before = len(self._type_listeners)
            self._type_listeners = [
                lst for lst in self._type_listeners if lst.type != frame_type
            ]
            if len(self._type_listeners) != before:
                return True
        self._reporter.report(
            EventKind.LISTENER_NOT_FOUND,
            f"No type listener for 0x{frame_type:X}",
            type=frame_type,
        )
        return False

    def remove_generic_listener(self, callback: Listener) -> bool:
        with self._lock:
            if callback in self._generic_listeners:
                self._generic_listeners.remove(callback)
                return True
        self._reporter.report(EventKind.LISTENER_NOT_FOUND, "Generic listener not registered")
        return False

    def renew_id_listener(self, frame_id: int) -> bool:
        """Restart the timeout of the listener for ``frame_id``."""
        with self._lock:
            for lst in self._id_listeners:
                if lst.frame_id == frame_id:
                    lst.timeout = lst.timeout_max
                    return True
        self._reporter.report(
            EventKind.LISTENER_NOT_FOUND,
            f"No ID listener for 0x{frame_id:X} to renew",
            frame_id=frame_id,
        )
        return False

    def has_id_listener(self, frame_id: int) -> bool:
        with self._lock:
            return any(lst.frame_id == frame_id for lst in self._id_listeners)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "id": len(self._id_listeners),
                "type": len(self._type_listeners),
                "generic": len(self._generic_listeners),
            }

    # ─── DISPATCH ────────────────────────────────────────────────────

    def dispatch(self, engine: FrameEngine, msg: Message) -> bool:
        """Offer ``msg`` to the listeners. Returns False if nobody claimed it."""
        with self._lock:
            if self._dispatch_id(engine, msg):
                return True

            msg.userdata = None
            msg.userdata2 = None

            for lst in list(self._type_listeners):
                if lst.type != msg.type or lst not in self._type_listeners:
                    continue
                result = self._call(lst.callback, engine, msg)
                if result is ListenerResult.NEXT:
                    continue
                if result is ListenerResult.CLOSE and lst in self._type_listeners:
                    self._type_listeners.remove(lst)
                return True

            for callback in list(self._generic_listeners):
                if callback not in self._generic_listeners:
                    continue
                result = self._call(callback, engine, msg)
                if result is ListenerResult.NEXT:
                    continue
                if result is ListenerResult.CLOSE and callback in self._generic_listeners:
                    self._generic_listeners.remove(callback)
                return True

        self._reporter.report(
            EventKind.UNHANDLED_MESSAGE,
            f"Unhandled message, type 0x{msg.type:X}",
            frame_id=msg.frame_id,
            type=msg.type,
        )
        return False

    def _dispatch_id(self, engine: FrameEngine, msg: Message) -> bool:
        for lst in list(self._id_listeners):
            if lst.frame_id != msg.frame_id or lst not in self._id_listeners:
                continue
            msg.userdata = lst.userdata
            msg.userdata2 = lst.userdata2
            result = self._call(lst.callback, engine, msg)
            lst.userdata = msg.userdata
            lst.userdata2 = msg.userdata2

            if result is ListenerResult.NEXT:
                continue
            if result is ListenerResult.RENEW:
                lst.timeout = lst.timeout_max
            elif result is ListenerResult.CLOSE and lst in self._id_listeners:
                self._id_listeners.remove(lst)
            return True
        return False

    def _call(self, callback: Listener, engine: FrameEngine, msg: Message) -> ListenerResult:
        try:
            result = callback(engine, msg)
        except Exception as e:
            logger.exception("Listener %r raised", callback)
            self._reporter.report(
                EventKind.LISTENER_ERROR,
                f"Listener raised {type(e).__name__}: {e}",
                frame_id=msg.frame_id,
                type=msg.type,
            )
            return ListenerResult.NEXT
        if result is None:
            return ListenerResult.NEXT
        return ListenerResult(result)

    # ─── TIMEOUTS ────────────────────────────────────────────────────

    def tick(self, engine: FrameEngine) -> None:
        """Count down ID listener timeouts and expire those reaching zero."""
        with self._lock:
            for lst in list(self._id_listeners):
                if lst.timeout <= 0 or lst not in self._id_listeners:
                    continue
                lst.timeout -= 1
                if lst.timeout > 0:
                    continue
                self._id_listeners.remove(lst)
                self._reporter.report(
                    EventKind.ID_LISTENER_EXPIRED,
                    f"ID listener 0x{lst.frame_id:X} has expired",
                    frame_id=lst.frame_id,
                )
                if lst.timeout_callback is not None:
                    try:
                        lst.timeout_callback(engine)
                    except Exception as e:
                        logger.exception("Timeout listener for 0x%X raised", lst.frame_id)
                        self._reporter.report(
                            EventKind.LISTENER_ERROR,
                            f"Timeout listener raised {type(e).__name__}: {e}",
                            frame_id=lst.frame_id,
                        )
