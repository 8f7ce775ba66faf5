"""
Peer registry for OSC send destinations.

In-memory registry guarded by a lock. Holds at most one static destination
(custom-port mode) plus one destination per accepted OSCQuery service.
Broadcast ticks read a point-in-time snapshot so discovery can keep adding
peers while a tick is iterating.

Staleness is counted in discovery cycles: every refresh() marks the profiles
the mesh still advertises as seen. With stale_after_cycles=None nothing is
ever evicted (peers stay until restart).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DestinationHandler = Callable[["Destination"], None]


@dataclass(frozen=True)
class Destination:
    """Resolved OSC send target."""
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ServiceProfile:
    """Identity of an advertised OSCQuery service (name + address + port)."""
    name: str
    address: str
    port: int

    def __str__(self) -> str:
        return f"{self.name} ({self.address}:{self.port})"


@dataclass
class _DynamicEntry:
    destination: Destination
    last_seen_cycle: int


class PeerRegistry:
    """
    Live set of OSC destinations.

    Usage:
        registry = PeerRegistry(stale_after_cycles=None)
        registry.add_static("127.0.0.1", 9000)
        registry.add_dynamic(profile, profile.address, 9001)
        for destination in registry.snapshot():
            ...
    """

    def __init__(
        self,
        stale_after_cycles: Optional[int] = None,
        on_evict: Optional[DestinationHandler] = None,
        on_add: Optional[DestinationHandler] = None,
    ):
        """
        Initialize registry.

        Args:
            stale_after_cycles: Evict a dynamic peer not re-confirmed within
                this many refresh cycles (None = retain forever)
            on_evict: Called with a destination once nothing uses it anymore
            on_add: Called with a destination as it enters the registry

        Both handlers run under the registry lock, so they must not call
        back into the registry.
        """
        if stale_after_cycles is not None and stale_after_cycles < 1:
            raise ValueError("stale_after_cycles must be >= 1 or None")
        self.stale_after_cycles = stale_after_cycles
        self.on_evict = on_evict
        self.on_add = on_add

        self._lock = threading.Lock()
        self._static: Optional[Destination] = None
        self._dynamic: Dict[ServiceProfile, _DynamicEntry] = {}
        self._cycle = 0

    def add_static(self, host: str, port: int) -> Destination:
        """Set the fixed destination used in custom-port mode."""
        destination = Destination(host, int(port))
        with self._lock:
            self._announce_locked(destination)
            self._static = destination
        logger.info(f"Static OSC destination → {destination}")
        return destination

    def add_dynamic(self, profile: ServiceProfile, host: str, port: int) -> bool:
        """
        Add the destination for an accepted service.

        Returns:
            False if the profile already has a destination (no change)
        """
        destination = Destination(host, int(port))
        with self._lock:
            if profile in self._dynamic:
                return False
            self._announce_locked(destination)
            self._dynamic[profile] = _DynamicEntry(destination, self._cycle)
        logger.info(f"Sending to {profile.name} at {destination}")
        return True

    def snapshot(self) -> List[Destination]:
        """Point-in-time copy of all destinations, static first, without duplicates."""
        with self._lock:
            candidates = [self._static] if self._static else []
            candidates.extend(entry.destination for entry in self._dynamic.values())
        # dict preserves insertion order
        return list(dict.fromkeys(candidates))

    def refresh(self, present: Iterable[ServiceProfile] = ()) -> List[Destination]:
        """
        Close one discovery cycle.

        Args:
            present: Profiles the mesh currently advertises

        Returns:
            Destinations that were released by eviction
        """
        present = set(present)
        with self._lock:
            self._cycle += 1
            for profile in present:
                entry = self._dynamic.get(profile)
                if entry is not None:
                    entry.last_seen_cycle = self._cycle

            if self.stale_after_cycles is None:
                return []

            stale = [
                profile
                for profile, entry in self._dynamic.items()
                if self._cycle - entry.last_seen_cycle >= self.stale_after_cycles
            ]
            released = []
            for profile in stale:
                destination = self._remove_locked(profile)
                if destination is not None:
                    released.append(destination)
            self._notify_evicted(released)

        for profile in stale:
            logger.info(f"Peer lost: {profile}")
        return released

    def evict(self, profile: ServiceProfile) -> Optional[Destination]:
        """Remove one dynamic peer. Returns the released destination, if any."""
        with self._lock:
            if profile not in self._dynamic:
                return None
            destination = self._remove_locked(profile)
            self._notify_evicted([destination] if destination else [])
        logger.info(f"Peer evicted: {profile}")
        return destination

    def _remove_locked(self, profile: ServiceProfile) -> Optional[Destination]:
        """Drop a profile; return its destination only if no one else still uses it."""
        entry = self._dynamic.pop(profile)
        destination = entry.destination
        if destination == self._static:
            return None
        if any(other.destination == destination for other in self._dynamic.values()):
            return None
        return destination

    def _announce_locked(self, destination: Destination) -> None:
        if not self.on_add:
            return
        try:
            self.on_add(destination)
        except Exception as exc:
            logger.error(f"Add handler error for {destination}: {exc}")

    def _notify_evicted(self, destinations: List[Destination]) -> None:
        if not self.on_evict:
            return
        for destination in destinations:
            try:
                self.on_evict(destination)
            except Exception as exc:
                logger.error(f"Evict handler error for {destination}: {exc}")

    def has_profile(self, profile: ServiceProfile) -> bool:
        with self._lock:
            return profile in self._dynamic

    def profiles(self) -> Dict[ServiceProfile, Destination]:
        with self._lock:
            return {profile: entry.destination for profile, entry in self._dynamic.items()}

    @property
    def static(self) -> Optional[Destination]:
        return self._static

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        return len(self.snapshot())
