"""
OSC Tally - mirror production-switcher tally state to OSC receivers

Receivers are found with OSCQuery (or one fixed loopback port) and receive
Preview/Program/Standby/Error as OSC True/False at the configured update
rate, plus a Heartbeat toggled every 0.5s.

Public API:
    TallyEngine - wires discovery, registry, transport and scheduler
    TallyState - upstream tally value (preview/program/standby/error)
    TallyConfig, load_config - YAML + pydantic configuration
    ParameterTable, TallyParameter - the five published parameters
    PeerRegistry, Destination, ServiceProfile - live send targets
    DiscoveryAgent, ServiceMesh, ProbeState - OSCQuery probing
    BroadcastScheduler - update + heartbeat ticks
    Transport - per-destination UDP sender

Usage:
    from osc_tally import TallyEngine, TallyState, load_config

    engine = TallyEngine(load_config())
    engine.start()
    engine.apply_state(TallyState(program=True))
    engine.stop()
"""

__version__ = "1.0.0"

from .config import TallyConfig, OscSettings, load_config, save_config
from .discovery import DiscoveryAgent, ProbeState, ServiceMesh
from .engine import TallyEngine
from .errors import ConfigError, DestinationClosed, DiscoveryError, TallyError, TransportError
from .parameters import ParameterTable, TallyParameter, TallyState
from .registry import Destination, PeerRegistry, ServiceProfile
from .scheduler import BroadcastScheduler
from .transport import Transport, build_bool_message

__all__ = [
    "TallyConfig",
    "OscSettings",
    "load_config",
    "save_config",
    "DiscoveryAgent",
    "ProbeState",
    "ServiceMesh",
    "TallyEngine",
    "ConfigError",
    "DestinationClosed",
    "DiscoveryError",
    "TallyError",
    "TransportError",
    "ParameterTable",
    "TallyParameter",
    "TallyState",
    "Destination",
    "PeerRegistry",
    "ServiceProfile",
    "BroadcastScheduler",
    "Transport",
    "build_bool_message",
]
