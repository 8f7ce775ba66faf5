"""
Tally engine - discovery + broadcast wired from configuration.

Custom-port mode sends to 127.0.0.1:<send_port> and skips discovery entirely.
Otherwise peers come from OSCQuery discovery and the engine advertises itself
as an OSCQuery service (unless advertise is off).

Usage:
    engine = TallyEngine(load_config())
    engine.on_refresh = lambda: print(engine.get_status())
    engine.start()
    engine.apply_state(TallyState(preview=True))
    ...
    engine.stop()
"""

import logging
from typing import Any, Callable, Dict, Optional

from .base import Module
from .config import TallyConfig
from .discovery import DiscoveryAgent, ServiceMesh
from .errors import ConfigError
from .parameters import ParameterName, ParameterTable, TallyState
from .registry import Destination, PeerRegistry
from .scheduler import BroadcastScheduler
from .transport import Transport

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"

MeshFactory = Callable[[], ServiceMesh]
AdvertiserFactory = Callable[[str], Any]


def _default_mesh() -> ServiceMesh:
    # Imported lazily: zeroconf is only needed in discovery mode
    from .oscquery import OSCQueryMesh
    return OSCQueryMesh()


def _default_advertiser(name: str):
    from .oscquery import OSCQueryAdvertiser
    return OSCQueryAdvertiser(name)


class TallyEngine(Module):
    """Owns the parameter table, peer registry, transport, discovery and scheduler."""

    def __init__(
        self,
        config: Optional[TallyConfig] = None,
        mesh_factory: Optional[MeshFactory] = None,
        transport: Optional[Transport] = None,
        advertiser_factory: Optional[AdvertiserFactory] = None,
    ):
        super().__init__()
        self.config = config or TallyConfig()
        osc = self.config.osc

        self.table = ParameterTable(osc.parameters)
        self.transport = transport or Transport()
        self.registry = PeerRegistry(
            stale_after_cycles=osc.stale_after_cycles,
            on_evict=self._release,
            on_add=self.transport.revive,
        )
        self.scheduler = BroadcastScheduler(
            self.table,
            self.registry,
            self.transport,
            update_interval=osc.update_interval,
        )
        self.scheduler.on_tick = self._notify
        self.discovery: Optional[DiscoveryAgent] = None
        self._mesh_factory = mesh_factory or _default_mesh
        self._advertiser_factory = advertiser_factory or _default_advertiser
        self.advertiser = None
        self.on_refresh: Optional[Callable[[], None]] = None

    def _release(self, destination: Destination) -> None:
        """Evicted destination: close its socket and stop reporting it as failing."""
        self.transport.close(destination)
        self.scheduler.forget(destination)

    @property
    def uses_custom_port(self) -> bool:
        return self.config.osc.use_custom_port

    def start(self) -> bool:
        if self._started:
            return True
        osc = self.config.osc

        if osc.use_custom_port:
            # Discovery is irrelevant with a fixed port
            self.registry.add_static(LOOPBACK, osc.send_port)
        else:
            try:
                mesh = self._mesh_factory()
            except Exception as exc:
                logger.error(f"OSCQuery discovery unavailable: {exc}")
                return False
            self.discovery = DiscoveryAgent(
                mesh,
                self.registry,
                capability_endpoint=osc.capability_endpoint,
                refresh_interval=osc.discovery_interval,
            )
            self.discovery.on_refresh = self._notify
            self.discovery.start()
            if osc.advertise:
                self._start_advertiser(osc.service_name)

        self.scheduler.start()
        self._started = True
        logger.info("Tally engine ready")
        return True

    def stop(self) -> None:
        if not self._started:
            return
        logger.info("Tally engine stopping...")
        if self.discovery:
            self.discovery.stop()
        if self.advertiser:
            self.advertiser.stop()
            self.advertiser = None
        self.scheduler.stop()
        self.transport.close_all()
        self._started = False
        logger.info("Tally engine stopped")

    def _start_advertiser(self, name: str) -> None:
        # Peers can still be found and fed without it
        try:
            advertiser = self._advertiser_factory(name)
            advertiser.start()
        except Exception as exc:
            logger.warning(f"Could not advertise OSCQuery service {name}: {exc}")
            return
        self.advertiser = advertiser

    def apply_state(self, state: TallyState) -> None:
        """Entry point for the upstream producer."""
        self.table.apply(state)
        self._notify()

    def set_parameter(self, name: ParameterName, value: bool) -> None:
        self.table.set(name, value)
        self._notify()

    def toggle_parameter(self, name: ParameterName) -> bool:
        value = self.table.toggle(name)
        self._notify()
        return value

    def _notify(self) -> None:
        if not self.on_refresh:
            return
        try:
            self.on_refresh()
        except Exception as exc:
            logger.debug(f"Refresh observer error: {exc}")

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        destinations = self.registry.snapshot()
        status.update({
            "mode": "custom_port" if self.uses_custom_port else "oscquery",
            "destinations": [str(dest) for dest in destinations],
            "connected": [str(dest) for dest in self.transport.connected_destinations()],
            "no_receivers": not destinations,
            "parameters": {name.value: value for name, value in self.table.snapshot().items()},
            "scheduler": self.scheduler.get_stats(),
        })
        if self.discovery:
            status["discovery"] = self.discovery.get_status()
        if self.advertiser:
            status["service"] = self.advertiser.get_status()
        return status


def build_engine(config: TallyConfig, **kwargs) -> TallyEngine:
    """Build an engine, turning construction errors into ConfigError."""
    try:
        return TallyEngine(config, **kwargs)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
