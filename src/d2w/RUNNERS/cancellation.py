"""
Cancellation requests for running sandboxes.
"""
import threading
from typing import Optional

from wasmtime import Engine


class CancellationToken:
    """
    Carries a stop request into a running sandbox.

    Cancelling sets a flag the host bridge checks on every call and bumps the
    epoch of the engine bound to the token, so the module traps at its next
    epoch check. Nothing is forcibly killed.
    """

    def __init__(self):
        self._event = threading.Event()
        self._engine: Optional[Engine] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, engine: Engine) -> None:
        """Attach the engine running the sandbox; interrupts it at once if already cancelled."""
        with self._lock:
            self._engine = engine
            if self._event.is_set():
                engine.increment_epoch()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            if self._engine is not None:
                self._engine.increment_epoch()
