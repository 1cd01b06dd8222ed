"""
Per-operation tensor arena.

Every temporary tensor created while preprocessing, extracting or ranking
is registered with the active TensorScope. Leaving the ``with`` block
drops the scope's references to all of them, on normal return and on
error alike. Only tensors explicitly handed out with keep() survive.
"""

import logging
import threading

logger = logging.getLogger(__name__)

_live_lock = threading.Lock()
_live_tensors = 0


def live_tensors() -> int:
    """Number of tensors currently held by open scopes (all threads)."""
    return _live_tensors


def _adjust_live(delta: int):
    global _live_tensors
    with _live_lock:
        _live_tensors += delta


class TensorScope:
    """Context manager that owns the temporary tensors of one operation."""

    def __init__(self, name: str):
        self.name = name
        self._tensors = []
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __len__(self):
        return len(self._tensors)

    def track(self, tensor):
        """Register a temporary tensor; returns it for inline use."""
        if self._closed:
            raise RuntimeError(f"Tensor scope '{self.name}' is already released")
        self._tensors.append(tensor)
        _adjust_live(1)
        return tensor

    def keep(self, tensor):
        """Let a tracked tensor escape the scope (the operation's result)."""
        for i, tracked in enumerate(self._tensors):
            if tracked is tensor:
                del self._tensors[i]
                _adjust_live(-1)
                break
        return tensor

    def release(self):
        count = len(self._tensors)
        self._tensors.clear()
        if count:
            _adjust_live(-count)
        self._closed = True
        logger.debug(f"Tensor scope '{self.name}' released {count} tensors")
