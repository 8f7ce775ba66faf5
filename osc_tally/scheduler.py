"""
Broadcast scheduler.

Two independent timers:
- update tick (configurable interval): Preview, Program, Standby, Error
  to every destination under every configured address
- heartbeat tick (fixed 0.5s): toggle Heartbeat and send it the same way

Each timer has its own worker pool so update load never delays the heartbeat.
A failed send is logged and counted; the remaining destinations still get
their messages and the next tick retries.
A destination evicted while a tick is running is skipped, not counted as
failing.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .base import Module
from .errors import DestinationClosed, TransportError
from .parameters import STATE_PARAMETERS, ParameterTable, TallyParameter
from .registry import Destination, PeerRegistry
from .timers import PeriodicTimer
from .transport import Transport, build_bool_message

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 0.5
DEFAULT_UPDATE_INTERVAL = 0.1


@dataclass
class _SchedulerStats:
    update_ticks: int = 0
    heartbeat_ticks: int = 0
    sends: int = 0
    failures: int = 0
    last_error: Optional[str] = None


class BroadcastScheduler(Module):
    """
    Periodic OSC fan-out of the parameter table.

    Usage:
        scheduler = BroadcastScheduler(table, registry, transport, update_interval=0.1)
        scheduler.on_tick = window.refresh
        scheduler.start()
    """

    def __init__(
        self,
        table: ParameterTable,
        registry: PeerRegistry,
        transport: Transport,
        update_interval: float = DEFAULT_UPDATE_INTERVAL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        super().__init__()
        if update_interval <= 0:
            raise ValueError(f"update_interval must be > 0 (got {update_interval})")
        self.table = table
        self.registry = registry
        self.transport = transport
        self.update_interval = update_interval
        self.heartbeat_interval = heartbeat_interval
        self.on_tick: Optional[Callable[[], None]] = None

        self._update_timer: Optional[PeriodicTimer] = None
        self._heartbeat_timer: Optional[PeriodicTimer] = None
        self._stats = _SchedulerStats()
        self._stats_lock = threading.Lock()
        self._failing: Set[Destination] = set()

    def start(self) -> bool:
        if self._started:
            return True
        self._update_timer = PeriodicTimer("update", self.update_interval, self.update_tick)
        self._heartbeat_timer = PeriodicTimer(
            "heartbeat", self.heartbeat_interval, self.heartbeat_tick, max_workers=2
        )
        self._heartbeat_timer.start()
        self._update_timer.start()
        self._started = True
        logger.info(
            f"Broadcasting every {self.update_interval}s "
            f"(heartbeat {self.heartbeat_interval}s)"
        )
        return True

    def stop(self) -> None:
        if not self._started:
            return
        for timer in (self._update_timer, self._heartbeat_timer):
            if timer:
                timer.stop()
        self._update_timer = None
        self._heartbeat_timer = None
        self._started = False
        logger.info("Broadcast stopped")

    def update_tick(self) -> int:
        """Send the four state parameters to every destination. Returns sends attempted."""
        destinations = self.registry.snapshot()
        sent = 0
        for name in STATE_PARAMETERS:
            value, addresses = self.table.get(name)
            sent += self._broadcast(addresses, value, destinations)
        with self._stats_lock:
            self._stats.update_ticks += 1
        self._prune_failing()
        self._notify()
        return sent

    def heartbeat_tick(self) -> bool:
        """Toggle the heartbeat and send the new value. Returns the new value."""
        value = self.table.toggle(TallyParameter.HEARTBEAT)
        addresses = self.table.addresses(TallyParameter.HEARTBEAT)
        self._broadcast(addresses, value, self.registry.snapshot())
        with self._stats_lock:
            self._stats.heartbeat_ticks += 1
        self._prune_failing()
        self._notify()
        return value

    def _broadcast(self, addresses, value: bool, destinations: List[Destination]) -> int:
        if not destinations:
            return 0
        attempted = 0
        for address in addresses:
            message = build_bool_message(address, value)
            for destination in destinations:
                attempted += 1
                self._send_one(destination, message)
        return attempted

    def _send_one(self, destination: Destination, message) -> None:
        try:
            self.transport.send(destination, message)
        except DestinationClosed:
            logger.debug(f"Skipping {destination}: evicted during tick")
        except TransportError as exc:
            self._record_failure(destination, exc)
        except Exception as exc:
            # Never let one destination take the tick down
            self._record_failure(destination, exc)
        else:
            with self._stats_lock:
                self._stats.sends += 1
                recovered = destination in self._failing
                self._failing.discard(destination)
            if recovered:
                logger.info(f"OSC send to {destination} recovered")

    def _record_failure(self, destination: Destination, exc: Exception) -> None:
        with self._stats_lock:
            self._stats.failures += 1
            self._stats.last_error = str(exc)
            first = destination not in self._failing
            self._failing.add(destination)
        if first:
            logger.warning(f"OSC send to {destination} failing: {exc}")
        else:
            logger.debug(f"OSC send to {destination} failed: {exc}")

    def forget(self, destination: Destination) -> None:
        """Drop failure tracking for an evicted destination."""
        with self._stats_lock:
            self._failing.discard(destination)

    def _prune_failing(self) -> None:
        # Evictions racing a send can re-add a destination after forget()
        current = set(self.registry.snapshot())
        with self._stats_lock:
            self._failing &= current

    def _notify(self) -> None:
        if not self.on_tick:
            return
        try:
            self.on_tick()
        except Exception as exc:
            logger.error(f"Tick observer error: {exc}")

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "update_ticks": self._stats.update_ticks,
                "heartbeat_ticks": self._stats.heartbeat_ticks,
                "sends": self._stats.sends,
                "failures": self._stats.failures,
                "last_error": self._stats.last_error,
                "failing": sorted(str(dest) for dest in self._failing),
            }

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["update_interval"] = self.update_interval
        status["heartbeat_interval"] = self.heartbeat_interval
        status["stats"] = self.get_stats()
        return status
