"""Start/stop contract shared by the engine, scheduler and discovery agent."""
from abc import ABC, abstractmethod
from typing import Any, Dict


class Module(ABC):
    """
    A component that owns timers, worker pools or sockets.

    The engine starts discovery before the scheduler and stops them in the
    same order, then closes the transport. start() and stop() are both
    idempotent; a stopped module can be started again.
    """

    def __init__(self):
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    @abstractmethod
    def start(self) -> bool:
        """Spin up background work. False means the module could not run."""

    @abstractmethod
    def stop(self) -> None:
        """Stop background work and release what start() acquired."""

    def get_status(self) -> Dict[str, Any]:
        """Counters and state for the status panel; subclasses extend it."""
        return {"started": self._started}
