"""
Process-wide registry of cleanup callbacks run when the process is interrupted.
"""
import signal
import sys
import threading
from typing import Callable, Dict, List

from ..logger import logger

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CleanupRegistry:
    """
    Keeps destroy callbacks of live sessions and runs them on SIGINT/SIGTERM.
    Signal handlers are installed once, on the first registration.
    """
    def __init__(self):
        self._callbacks: Dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()
        self._installed = False
        self._previous: Dict[int, object] = {}

    def register(self, key: str, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks[key] = callback
        self._install_handlers()

    def unregister(self, key: str) -> None:
        with self._lock:
            self._callbacks.pop(key, None)

    def registered(self) -> List[str]:
        with self._lock:
            return list(self._callbacks)

    def run_all(self) -> None:
        """Runs and forgets every callback; failures are logged."""
        with self._lock:
            callbacks, self._callbacks = self._callbacks, {}
        for key, callback in callbacks.items():
            try:
                callback()
            except Exception as e:
                logger.warning("Cleanup failed", key=key, error=str(e))

    def _install_handlers(self) -> None:
        with self._lock:
            if self._installed:
                return
            if threading.current_thread() is not threading.main_thread():
                logger.debug("Not on the main thread, signal handlers not installed")
                return
            for signum in HANDLED_SIGNALS:
                self._previous[signum] = signal.signal(signum, self._handle)
            self._installed = True

    def _handle(self, signum, frame) -> None:
        logger.info("Caught signal, cleaning up", signal=signal.Signals(signum).name)
        self.run_all()
        previous = self._previous.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        sys.exit(128 + signum)


cleanup_registry = CleanupRegistry()
