"""
Periodic timer with overlapping ticks.

A dedicated thread keeps the cadence (monotonic deadlines) and submits every
tick into the timer's own thread pool, so a slow tick never delays the next
one. Ticks may therefore run concurrently; callbacks must be idempotent.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class PeriodicTimer:
    """
    Fire callback every interval seconds until stopped.

    Usage:
        timer = PeriodicTimer("heartbeat", 0.5, scheduler.heartbeat_tick)
        timer.start()
        ...
        timer.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], object],
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        if interval <= 0:
            raise ValueError(f"Timer '{name}' interval must be > 0 (got {interval})")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.max_workers = max_workers

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._fired = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def fired(self) -> int:
        return self._fired

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=f"{self.name}-tick",
        )
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"{self.name}-timer",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Timer {self.name} started ({self.interval:.3f}s)")

    def stop(self, wait: bool = True) -> None:
        """Stop firing, drop queued ticks, optionally wait for running ones."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=max(1.0, self.interval * 2))
            if self._thread.is_alive():
                logger.warning(f"Timer {self.name} stop timed out; continuing shutdown")
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)
            self._executor = None
        logger.debug(f"Timer {self.name} stopped")

    def _run_loop(self) -> None:
        deadline = time.monotonic() + self.interval
        while not self._stop.wait(max(0.0, deadline - time.monotonic())):
            self._submit()
            deadline += self.interval
            now = time.monotonic()
            if deadline < now:
                # Fell behind (suspend, debugger); skip missed ticks
                deadline = now + self.interval

    def _submit(self) -> None:
        executor = self._executor
        if executor is None:
            return
        try:
            executor.submit(self._tick)
        except RuntimeError:
            # Executor shut down between the wait and the submit
            return
        self._fired += 1

    def _tick(self) -> None:
        try:
            self.callback()
        except Exception as exc:
            logger.exception(f"Timer {self.name} tick failed: {exc}")
