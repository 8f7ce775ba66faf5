"""
Tally parameter table.

The five fixed parameters (Preview, Program, Standby, Error, Heartbeat), their
current boolean values and the OSC addresses each one is published under.

Values are written by the upstream state producer and by the heartbeat tick,
and read by the broadcast ticks. Every access goes through one lock so a tick
never sees a half-applied TallyState.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, Tuple, Union

from .errors import ConfigError


class TallyParameter(str, Enum):
    """The fixed set of tally parameters."""
    PREVIEW = "Preview"
    PROGRAM = "Program"
    STANDBY = "Standby"
    ERROR = "Error"
    HEARTBEAT = "Heartbeat"


# Parameters driven by the upstream state (everything except the heartbeat)
STATE_PARAMETERS: Tuple[TallyParameter, ...] = (
    TallyParameter.PREVIEW,
    TallyParameter.PROGRAM,
    TallyParameter.STANDBY,
    TallyParameter.ERROR,
)

ParameterName = Union[TallyParameter, str]


@dataclass(frozen=True)
class TallyState:
    """Tally state as decided by the upstream producer (e.g. a vision mixer)."""
    preview: bool = False
    program: bool = False
    standby: bool = False
    error: bool = False

    def as_values(self) -> Dict[TallyParameter, bool]:
        return {
            TallyParameter.PREVIEW: self.preview,
            TallyParameter.PROGRAM: self.program,
            TallyParameter.STANDBY: self.standby,
            TallyParameter.ERROR: self.error,
        }


@dataclass
class Parameter:
    """One named boolean published under one or more OSC addresses."""
    name: TallyParameter
    addresses: Tuple[str, ...]
    value: bool = False


def resolve_name(name: ParameterName) -> TallyParameter:
    """Map a name to its TallyParameter. Unknown names raise KeyError."""
    if isinstance(name, TallyParameter):
        return name
    try:
        return TallyParameter(name)
    except ValueError:
        raise KeyError(f"Unknown tally parameter: {name!r}") from None


class ParameterTable:
    """
    Lock-guarded table of the five tally parameters.

    Usage:
        table = ParameterTable({"Preview": ["/tally/preview"], ...})
        table.set("Preview", True)
        value, addresses = table.get(TallyParameter.PREVIEW)
    """

    def __init__(self, addresses: Mapping[ParameterName, Iterable[str]]):
        """
        Build the table.

        Args:
            addresses: OSC address list for every one of the five parameters

        Raises:
            ConfigError: a parameter is missing or has no address
        """
        given = {}
        for name, addrs in addresses.items():
            try:
                given[resolve_name(name)] = tuple(addrs)
            except KeyError as exc:
                raise ConfigError(str(exc.args[0])) from None

        self._lock = threading.Lock()
        self._params: Dict[TallyParameter, Parameter] = {}
        for name in TallyParameter:
            addrs = given.get(name, ())
            if not addrs:
                raise ConfigError(f"Parameter {name.value} needs at least one OSC address")
            self._params[name] = Parameter(name=name, addresses=addrs)

    def get(self, name: ParameterName) -> Tuple[bool, Tuple[str, ...]]:
        """Return (value, addresses) for a parameter."""
        param = self._params[resolve_name(name)]
        with self._lock:
            return param.value, param.addresses

    def set(self, name: ParameterName, value: bool) -> None:
        param = self._params[resolve_name(name)]
        with self._lock:
            param.value = bool(value)

    def toggle(self, name: ParameterName) -> bool:
        """Flip a parameter and return its new value."""
        param = self._params[resolve_name(name)]
        with self._lock:
            param.value = not param.value
            return param.value

    def apply(self, state: TallyState) -> None:
        """Write all four state parameters in one step."""
        values = state.as_values()
        with self._lock:
            for name, value in values.items():
                self._params[name].value = value

    def addresses(self, name: ParameterName) -> Tuple[str, ...]:
        return self._params[resolve_name(name)].addresses

    def snapshot(self) -> Dict[TallyParameter, bool]:
        """Consistent copy of all current values."""
        with self._lock:
            return {name: param.value for name, param in self._params.items()}
