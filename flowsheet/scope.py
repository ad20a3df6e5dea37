"""
FlowSheet Scope - Shared variable namespace.

Holds the last computed value of every named variable on the canvas, plus a
version counter that is the only invalidation signal consumers may rely on.
"""
import logging
import threading
from types import MappingProxyType

import torch

from .explorer import format_value
from .formula import format_int

logger = logging.getLogger(__name__)


def same_value(a, b) -> bool:
    """Equality that understands tensors, nested lists and the ERROR sentinel."""
    if a is b:
        return True
    if torch.is_tensor(a) or torch.is_tensor(b):
        if not (torch.is_tensor(a) and torch.is_tensor(b)):
            return False
        return a.dtype == b.dtype and a.shape == b.shape and bool(torch.equal(a, b))
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    if type(a) is not type(b):
        return False
    try:
        return bool(a == b)
    except Exception:
        return False


def _summary_text(value):
    if isinstance(value, int) and not isinstance(value, bool):
        return format_int(value)
    try:
        return str(value)
    except ValueError:
        # containers holding ints too long for str()
        return format_value(value)


class ScopeStore:
    """
    The single source of truth for variable values.

    Attributes:
        version: Incremented exactly once per mutation batch.

    Entries are overwritten, never removed: callers that need to "unset" a
    variable write None.
    """
    def __init__(self, initial=None):
        self._values = dict(initial or {})
        self._version = 0
        self._lock = threading.RLock()
        self._subscribers = []

    @property
    def version(self):
        return self._version

    def get(self, name, default=None):
        """Non-failing lookup."""
        return self._values.get(name, default)

    def set(self, name, value):
        """Insert or overwrite a variable. Bumps the version by one."""
        return self.update({name: value})

    def update(self, values):
        """
        Apply several writes as one batch.

        Observers see either the state before or after the whole batch, and
        the version moves by exactly one.
        """
        values = dict(values)
        with self._lock:
            self._values.update(values)
            self._version += 1
            version = self._version
        logger.debug("Scope v%d: wrote %s", version, ", ".join(sorted(values)) or "<nothing>")
        self._notify(version)
        return version

    def snapshot(self):
        """Read-only copy of the current values."""
        with self._lock:
            return MappingProxyType(dict(self._values))

    def names(self):
        with self._lock:
            return list(self._values)

    def items(self):
        return self.snapshot().items()

    def subscribe(self, callback):
        """
        Register `callback(version)` to run after every batch.
        Returns a function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self, version):
        for callback in list(self._subscribers):
            try:
                callback(version)
            except Exception:
                logger.exception("Scope subscriber %r failed at version %d", callback, version)

    def summary(self):
        """Return a human-readable summary of the scope contents."""
        lines = [f"=== FlowSheet Scope (v{self._version}) ==="]
        for k, v in self.snapshot().items():
            if k.startswith('_'):
                continue
            lines.append(f"{k}: {_summary_text(v)}")
        return "\n".join(lines)

    def __contains__(self, name):
        return name in self._values

    def __len__(self):
        return len(self._values)

    def __repr__(self):
        return f"ScopeStore(version={self._version}, names={self.names()!r})"
