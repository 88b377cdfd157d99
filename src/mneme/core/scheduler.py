"""Debounced push scheduler for Mneme.

Every local mutation calls schedule(). Bursts of mutations are coalesced
into a single push that runs once no new mutation has arrived for `delay`
seconds. A mutation that arrives while a push is running re-arms the timer
once that push finishes, so it is never lost and pushes never overlap.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PushScheduler:
    """Debounced, non-overlapping runner for a push function.

    One instance is created by the composition root and handed to the
    repositories as their on_change callback.
    """

    def __init__(self, push_fn: Callable[[], Any], delay: float = 2.0) -> None:
        """Initialize the scheduler.

        Args:
            push_fn: Callable that performs one push
            delay: Quiet period in seconds before a scheduled push runs
        """
        self.push_fn = push_fn
        self.delay = delay
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._dirty = False
        self._closed = False

    def schedule(self) -> None:
        """Request a push after the quiet period, restarting the period."""
        with self._lock:
            if self._closed:
                return
            if self._running:
                self._dirty = True
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def is_running(self) -> bool:
        """Check whether a push started by this scheduler is in progress."""
        with self._lock:
            return self._running

    def is_scheduled(self) -> bool:
        """Check whether a push is waiting for its quiet period to end."""
        with self._lock:
            return self._timer is not None

    def flush_now(self) -> Any:
        """Cancel the pending timer and push immediately in this thread.

        Returns:
            The push function's result, or None if a push was already running

        Raises:
            Whatever the push function raises
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        return self._run(swallow_errors=False)

    def shutdown(self) -> None:
        """Cancel any pending push and refuse new ones."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        self._run(swallow_errors=True)

    def _run(self, swallow_errors: bool) -> Any:
        with self._lock:
            if self._running:
                self._dirty = True
                return None
            self._running = True
            self._dirty = False

        result = None
        try:
            result = self.push_fn()
        except Exception as e:
            if not swallow_errors:
                raise
            # Offline is a normal condition; pending records wait for the next trigger.
            logger.warning(f"Scheduled push failed: {e}")
        finally:
            with self._lock:
                self._running = False
                rerun = self._dirty or bool(getattr(result, "coalesced", False))
                self._dirty = False
            if rerun:
                self.schedule()
        return result
