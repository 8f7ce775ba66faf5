"""
Shared fixtures: in-memory OSCQuery mesh, recording transport, parameter table.

Nothing here touches mDNS; the only real sockets are loopback UDP sockets
bound by the transport tests.
"""
import socket
import threading
import time

import pytest

from osc_tally.config import TallyConfig
from osc_tally.discovery import ServiceMesh
from osc_tally.errors import DestinationClosed, TransportError
from osc_tally.parameters import ParameterTable
from osc_tally.registry import PeerRegistry, ServiceProfile

ADDRESSES = {
    "Preview": ["/tally/preview"],
    "Program": ["/tally/program", "/avatar/parameters/OnAir"],
    "Standby": ["/tally/standby"],
    "Error": ["/tally/error"],
    "Heartbeat": ["/tally/heartbeat"],
}


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class FakeNode:
    """Minimal OSCQuery address tree: knows a set of full paths."""

    def __init__(self, paths):
        self.paths = set(paths)

    def find_subnode(self, full_path):
        return self if full_path in self.paths else None


class FakeMesh(ServiceMesh):
    """In-memory ServiceMesh with per-profile trees and OSC ports."""

    def __init__(self):
        self.services = {}
        self.callbacks = []
        self.tree_calls = []
        self.fail_enumerate = False
        self.closed = False
        self.forgotten = []
        self._lock = threading.Lock()

    def advertise(self, profile, paths=("/chatbox",), osc_port=9001, error=None):
        with self._lock:
            self.services[profile] = {"paths": paths, "osc_port": osc_port, "error": error}

    def withdraw(self, profile):
        with self._lock:
            self.services.pop(profile, None)

    def announce(self, profile):
        """Push a 'service added' notification, like the mDNS browser."""
        for callback in list(self.callbacks):
            callback(profile)

    def enumerate(self):
        if self.fail_enumerate:
            raise OSError("mdns unavailable")
        with self._lock:
            return list(self.services)

    def subscribe(self, callback):
        self.callbacks.append(callback)

    def fetch_tree(self, profile):
        self.tree_calls.append(profile)
        service = self.services[profile]
        if service["error"] is not None:
            raise service["error"]
        if service["paths"] is None:
            return None
        return FakeNode(service["paths"])

    def fetch_osc_port(self, profile):
        return self.services[profile]["osc_port"]

    def forget(self, profile):
        self.forgotten.append(profile)

    def close(self):
        self.closed = True


class RecordingTransport:
    """Transport stand-in that records sends and fails for chosen destinations."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []
        self.closed = []
        self.retired = set()
        self._lock = threading.Lock()

    def send(self, destination, message):
        if destination in self.retired:
            raise DestinationClosed(f"{destination} was closed")
        if destination in self.failing:
            raise TransportError(f"refused by {destination}")
        with self._lock:
            self.sent.append((destination, message.address, list(message.params)))

    def close(self, destination):
        self.closed.append(destination)
        self.retired.add(destination)

    def revive(self, destination):
        self.retired.discard(destination)

    def close_all(self):
        self.closed.append("*")
        self.retired.clear()

    def connected_destinations(self):
        with self._lock:
            return list(dict.fromkeys(dest for dest, _, _ in self.sent))


@pytest.fixture
def table():
    return ParameterTable(ADDRESSES)


@pytest.fixture
def registry():
    return PeerRegistry()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def mesh():
    return FakeMesh()


@pytest.fixture
def profile():
    return ServiceProfile(name="VRChat-Client-A1B2C3", address="192.168.1.20", port=55123)


@pytest.fixture
def config():
    return TallyConfig.model_validate({"osc": {"parameters": ADDRESSES, "advertise": False}})


@pytest.fixture
def udp_receiver():
    """Loopback UDP socket to receive what the transport sends."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(1.0)
    yield sock
    sock.close()
