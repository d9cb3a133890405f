"""Read-only values shipped from the driver to partition tasks."""

import copy
import threading
from typing import Any, Callable, Generic, Optional, TypeVar

import torch

from dist_dl_train.errors import ConfigurationError

T = TypeVar('T')


def default_cloner(value: Any) -> Any:
    """Deep copy: tensor ``.clone()``, the object's own ``clone()`` if it has one, else ``copy.deepcopy``."""
    if value is None:
        return None
    if isinstance(value, torch.Tensor):
        return value.detach().clone()
    clone = getattr(value, 'clone', None)
    if callable(clone):
        return clone()
    return copy.deepcopy(value)


class Broadcast(Generic[T]):
    """
    A snapshot of a driver value shared by every task of one round.

    The value is copied once at construction so later driver mutations are not
    visible to tasks. The snapshot itself never leaves the broadcast: every
    read goes through the cloner and hands the caller a private, mutable copy.
    """

    def __init__(self, value: T, cloner: Optional[Callable[[T], T]] = None):
        self._cloner = cloner or default_cloner
        self._value = self._cloner(value)
        self._destroyed = False
        self._lock = threading.Lock()

    def _snapshot(self) -> T:
        with self._lock:
            if self._destroyed:
                raise ConfigurationError("Broadcast value has been destroyed")
            return self._value

    @property
    def value(self) -> T:
        """A copy of the broadcast value; mutating it leaves the broadcast untouched."""
        return self.clone()

    def clone(self) -> T:
        """Independent copy of the broadcast value."""
        return self._cloner(self._snapshot())

    @property
    def is_empty(self) -> bool:
        return self._snapshot() is None

    def destroy(self) -> None:
        """Release the value. Reads after this raise ConfigurationError."""
        with self._lock:
            self._value = None
            self._destroyed = True

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def __repr__(self) -> str:
        state = 'destroyed' if self._destroyed else type(self._value).__name__
        return f"Broadcast({state})"
