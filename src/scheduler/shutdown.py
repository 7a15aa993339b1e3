"""Process-wide shutdown signal and exit status.

ShutdownToken flips exactly once. The scheduler stops dispatching new
units once it has fired and actions waiting between retries wake up.
ShutdownManager installs the interrupt handlers that fire the token and
tracks the exit status the CLI returns.
"""

import enum
import logging
import signal
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class ReturnCode(enum.IntEnum):
    SUCCESS = 0
    TOOL_FAILED = 1
    CLUSTER_FAILED = 2
    INTERRUPTED = 130


class ShutdownToken:
    """One-shot cancellation signal shared by the scheduler and its units."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._callbacks: list = []

    def fire(self, reason: str = 'shutdown requested') -> bool:
        """Flip the token. Returns True only for the call that flipped it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        logger.info(f"Shutdown: {reason}")
        for callback in callbacks:
            callback()
        return True

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to timeout seconds. Returns True if the token has fired."""
        return self._event.wait(timeout)

    def add_callback(self, callback) -> None:
        """Call callback (no args) when the token fires, or now if it already has."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class ShutdownManager:
    """Owns the shutdown token and the process exit status."""

    def __init__(self, token: Optional[ShutdownToken] = None):
        self.token = token or ShutdownToken()
        self._return_code = ReturnCode.SUCCESS
        self._previous_handlers: dict[int, object] = {}

    def install(self, signals=(signal.SIGINT, signal.SIGTERM)) -> None:
        """Fire the token on the given signals. Must run on the main thread."""
        for sig in signals:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def uninstall(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum, _frame) -> None:
        name = signal.Signals(signum).name
        if self.token.fire(f'received {name}'):
            self.record(ReturnCode.INTERRUPTED)
            logger.warning(f"Received {name}: no new actions will start; waiting for running actions")

    def record(self, code: ReturnCode) -> None:
        """Record an outcome. The most severe code recorded wins."""
        if code > self._return_code:
            self._return_code = code

    @property
    def return_code(self) -> ReturnCode:
        return self._return_code
