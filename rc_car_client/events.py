"""
Event records and listener registry.

Handles:
- Immutable events emitted by the vehicle state and the session
- Listener registration that never keeps the listener's owner alive
"""

import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, TypeVar

from .protocol import Throttle

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class ThrottleChangeEvent:
    """The desired throttle direction changed."""
    source: Any
    direction: Throttle


@dataclass(frozen=True)
class SteerChangeEvent:
    """The desired steering angle changed."""
    source: Any
    angle: int


@dataclass(frozen=True)
class LossEvent:
    """An active session lost its link."""
    source: Any
    reason: str = ""


class Listeners(Generic[E]):
    """
    Ordered registry of event callbacks.

    Bound methods are held through weak references, so registering
    ``obj.method`` does not extend the lifetime of ``obj``. Other
    callables are held as given. Entries whose target was collected
    are dropped on the next emit.
    """

    def __init__(self, name: str = "listeners"):
        self.name = name
        self._lock = threading.Lock()
        self._refs: List[Callable[[], Any]] = []

    def add(self, callback: Callable[[E], None]) -> None:
        """Register a callback."""
        if hasattr(callback, "__self__") and hasattr(callback, "__func__"):
            ref = weakref.WeakMethod(callback)
        else:
            ref = _StrongRef(callback)
        with self._lock:
            self._refs.append(ref)

    def remove(self, callback: Callable[[E], None]) -> None:
        """Unregister a callback. Unknown callbacks are ignored."""
        with self._lock:
            self._refs = [r for r in self._refs if r() is not None and r() != callback]

    def clear(self) -> None:
        with self._lock:
            self._refs = []

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for r in self._refs if r() is not None)

    def emit(self, event: E) -> None:
        """
        Deliver an event to every live callback, in registration order.

        A raising callback is logged and does not stop delivery.
        """
        with self._lock:
            self._refs = [r for r in self._refs if r() is not None]
            callbacks = [r() for r in self._refs]

        for callback in callbacks:
            if callback is None:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in {self.name} callback: {e}")


class _StrongRef:
    """Callable wrapper with the same interface as weakref.WeakMethod."""

    __slots__ = ("_obj",)

    def __init__(self, obj):
        self._obj = obj

    def __call__(self):
        return self._obj
