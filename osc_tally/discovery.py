"""
OSCQuery peer discovery.

Finds advertised OSCQuery services, probes each one for the capability
endpoint and feeds accepted peers into the PeerRegistry.

Per advertisement:
    SEEN -> PROBING -> ACCEPTED | REJECTED

Probes are keyed by ServiceProfile, so repeated advertisements of the same
service are ignored. Each probe runs on the agent's worker pool and never
blocks other candidates or the refresh timer. A failing probe rejects the
candidate; it never aborts discovery.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .base import Module
from .errors import DiscoveryError
from .registry import PeerRegistry, ServiceProfile
from .timers import PeriodicTimer

logger = logging.getLogger(__name__)

DEFAULT_CAPABILITY_ENDPOINT = "/chatbox"
DEFAULT_REFRESH_INTERVAL = 2.0
DEFAULT_MAX_PROBES = 8

ServiceCallback = Callable[[ServiceProfile], None]


class ProbeState(str, Enum):
    SEEN = "seen"
    PROBING = "probing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ServiceMesh(ABC):
    """
    Discovery collaborator: an OSCQuery-compatible service registry.

    fetch_tree() returns the root of the peer's OSC address space; the only
    thing the agent needs from it is find_subnode(path) -> node or None.
    """

    @abstractmethod
    def enumerate(self) -> List[ServiceProfile]:
        """All services currently known to the mesh."""

    @abstractmethod
    def subscribe(self, callback: ServiceCallback) -> None:
        """Register a callback for newly advertised services."""

    @abstractmethod
    def fetch_tree(self, profile: ServiceProfile) -> Any:
        """Fetch the service's OSC address-space tree."""

    @abstractmethod
    def fetch_osc_port(self, profile: ServiceProfile) -> int:
        """Fetch the service's advertised OSC (UDP) port."""

    def forget(self, profile: ServiceProfile) -> None:
        """Drop anything cached for a profile that is no longer a peer."""

    def close(self) -> None:
        pass


class DiscoveryAgent(Module):
    """
    Drives the probe state machine and the periodic mesh refresh.

    Usage:
        agent = DiscoveryAgent(mesh, registry)
        agent.on_refresh = window.refresh
        agent.start()
        ...
        agent.stop()
    """

    def __init__(
        self,
        mesh: ServiceMesh,
        registry: PeerRegistry,
        capability_endpoint: str = DEFAULT_CAPABILITY_ENDPOINT,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        max_probes: int = DEFAULT_MAX_PROBES,
    ):
        super().__init__()
        self.mesh = mesh
        self.registry = registry
        self.capability_endpoint = capability_endpoint
        self.refresh_interval = refresh_interval
        self.max_probes = max_probes
        self.on_refresh: Optional[Callable[[], None]] = None

        self._states: Dict[ServiceProfile, ProbeState] = {}
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._timer: Optional[PeriodicTimer] = None
        self._refreshes = 0
        self._probe_errors = 0

    def start(self) -> bool:
        """Subscribe, probe everything already known, start the refresh timer."""
        if self._started:
            return True

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_probes,
            thread_name_prefix="oscquery-probe",
        )
        self._started = True

        self.mesh.subscribe(self.observe)
        try:
            existing = self.mesh.enumerate()
        except Exception as exc:
            logger.warning(f"Initial service enumeration failed: {exc}")
            existing = []
        for profile in existing:
            self.observe(profile)

        # A single refresh tick at a time is enough; the next one catches up
        self._timer = PeriodicTimer(
            "discovery", self.refresh_interval, self.refresh, max_workers=1
        )
        self._timer.start()
        logger.info(
            f"Discovery started ({len(existing)} known services, "
            f"marker {self.capability_endpoint}, refresh {self.refresh_interval}s)"
        )
        return True

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._timer:
            self._timer.stop()
            self._timer = None
        if self._executor:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        try:
            self.mesh.close()
        except Exception as exc:
            logger.error(f"Mesh close error: {exc}")
        logger.info("Discovery stopped")

    def observe(self, profile: ServiceProfile) -> bool:
        """
        Handle one advertisement (push notification or enumeration).

        Returns:
            True if a probe was scheduled, False if the profile was already known
        """
        with self._lock:
            if profile in self._states:
                return False
            self._states[profile] = ProbeState.SEEN
        logger.debug(f"Service seen: {profile}")

        executor = self._executor
        if executor is None:
            # Not running: probe inline (used by tests and one-shot scans)
            self._probe(profile)
            return True
        try:
            executor.submit(self._probe, profile)
        except RuntimeError:
            # Shutting down; allow a later start() to re-probe
            with self._lock:
                self._states.pop(profile, None)
            return False
        return True

    def _probe(self, profile: ServiceProfile) -> ProbeState:
        self._set_state(profile, ProbeState.PROBING)
        try:
            supported = self._is_supported(profile)
            if supported:
                osc_port = self._fetch_osc_port(profile)
        except DiscoveryError as exc:
            with self._lock:
                self._probe_errors += 1
            logger.warning(f"Probe failed, rejecting {profile}: {exc}")
            return self._set_state(profile, ProbeState.REJECTED)

        if not supported:
            logger.info(f"{profile.name} NOT compatible (no {self.capability_endpoint})")
            return self._set_state(profile, ProbeState.REJECTED)

        self.registry.add_dynamic(profile, profile.address, osc_port)
        return self._set_state(profile, ProbeState.ACCEPTED)

    def _is_supported(self, profile: ServiceProfile) -> bool:
        try:
            tree = self.mesh.fetch_tree(profile)
        except Exception as exc:
            raise DiscoveryError(f"tree query failed: {exc}") from exc
        if tree is None:
            raise DiscoveryError("peer returned no address tree")
        try:
            return tree.find_subnode(self.capability_endpoint) is not None
        except Exception as exc:
            raise DiscoveryError(f"malformed address tree: {exc}") from exc

    def _fetch_osc_port(self, profile: ServiceProfile) -> int:
        try:
            port = self.mesh.fetch_osc_port(profile)
        except Exception as exc:
            raise DiscoveryError(f"host info query failed: {exc}") from exc
        if not port:
            raise DiscoveryError("peer advertises no OSC port")
        return int(port)

    def _set_state(self, profile: ServiceProfile, state: ProbeState) -> ProbeState:
        with self._lock:
            # Evicted while probing: leave it forgotten
            if profile in self._states:
                self._states[profile] = state
        return state

    def refresh(self) -> None:
        """Re-enumerate the mesh, probe newcomers, age out vanished peers."""
        try:
            current = self.mesh.enumerate()
        except Exception as exc:
            logger.warning(f"Service refresh failed: {exc}")
            current = None

        if current is not None:
            for profile in current:
                self.observe(profile)
            self.registry.refresh(current)
            self._forget_evicted()
        self._refreshes += 1

        if self.on_refresh:
            try:
                self.on_refresh()
            except Exception as exc:
                logger.error(f"Refresh observer error: {exc}")

    def _forget_evicted(self) -> None:
        """Drop accepted profiles the registry no longer holds so they are re-probed on return."""
        forgotten = []
        with self._lock:
            for profile, state in list(self._states.items()):
                if state == ProbeState.ACCEPTED and not self.registry.has_profile(profile):
                    del self._states[profile]
                    forgotten.append(profile)
        for profile in forgotten:
            self.mesh.forget(profile)

    def state_of(self, profile: ServiceProfile) -> Optional[ProbeState]:
        with self._lock:
            return self._states.get(profile)

    def states(self) -> Dict[ServiceProfile, ProbeState]:
        with self._lock:
            return dict(self._states)

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        states = self.states()
        with self._lock:
            probe_errors = self._probe_errors
        status.update({
            "capability_endpoint": self.capability_endpoint,
            "refreshes": self._refreshes,
            "probe_errors": probe_errors,
            "accepted": sum(1 for s in states.values() if s == ProbeState.ACCEPTED),
            "rejected": sum(1 for s in states.values() if s == ProbeState.REJECTED),
            "pending": sum(
                1 for s in states.values() if s in (ProbeState.SEEN, ProbeState.PROBING)
            ),
        })
        return status
