"""
Tally engine integration tests.

Custom-port mode goes over real loopback UDP; discovery mode uses the
in-memory mesh.
"""

import socket

import pytest
from pythonosc.osc_message import OscMessage

from osc_tally.config import TallyConfig
from osc_tally.engine import TallyEngine, build_engine
from osc_tally.errors import ConfigError
from osc_tally.parameters import TallyParameter, TallyState
from osc_tally.registry import Destination

from tests.conftest import ADDRESSES, RecordingTransport, wait_for


def _custom_port_config(port: int, **osc) -> TallyConfig:
    settings = {"use_custom_port": True, "send_port": port, "parameters": ADDRESSES}
    settings.update(osc)
    return TallyConfig.model_validate({"osc": settings})


def _drain(sock: socket.socket):
    sock.settimeout(0.05)
    messages = []
    while True:
        try:
            data, _ = sock.recvfrom(1024)
        except socket.timeout:
            return messages
        message = OscMessage(data)
        messages.append((message.address, message.params))


class TestCustomPortMode:
    """Static destination, no discovery."""

    def test_static_destination_and_no_discovery(self, mesh):
        """Custom port mode never builds a mesh."""
        def factory():
            raise AssertionError("mesh must not be created in custom port mode")

        engine = TallyEngine(_custom_port_config(9000), mesh_factory=factory,
                             transport=RecordingTransport())
        assert engine.start()
        try:
            assert engine.registry.snapshot() == [Destination("127.0.0.1", 9000)]
            assert engine.discovery is None
        finally:
            engine.stop()

    def test_one_update_tick_over_udp(self, udp_receiver):
        """Preview=true, Program=false arrive at the loopback port."""
        port = udp_receiver.getsockname()[1]
        engine = TallyEngine(_custom_port_config(port))
        engine.registry.add_static("127.0.0.1", port)
        engine.apply_state(TallyState(preview=True, program=False))
        try:
            engine.scheduler.update_tick()
            received = _drain(udp_receiver)
        finally:
            engine.transport.close_all()

        assert received.count(("/tally/preview", [True])) == 1
        assert received.count(("/tally/program", [False])) == 1
        assert ("/tally/heartbeat", [True]) not in received

    def test_running_engine_sends_heartbeat(self, udp_receiver):
        """The started engine emits alternating heartbeats."""
        port = udp_receiver.getsockname()[1]
        engine = TallyEngine(_custom_port_config(port, update_interval=5.0))
        engine.scheduler.heartbeat_interval = 0.05
        engine.start()
        received = []
        try:
            def collect():
                received.extend(_drain(udp_receiver))
                return sum(1 for addr, _ in received if addr == "/tally/heartbeat") >= 3
            assert wait_for(collect, timeout=2.0)
        finally:
            engine.stop()

        beats = [args[0] for addr, args in received if addr == "/tally/heartbeat"]
        assert beats[:3] == [True, False, True]

    def test_stop_closes_sockets(self, udp_receiver):
        """No sockets survive stop()."""
        port = udp_receiver.getsockname()[1]
        engine = TallyEngine(_custom_port_config(port))
        engine.start()
        engine.scheduler.update_tick()
        assert engine.transport.connected_destinations()
        engine.stop()
        assert engine.transport.connected_destinations() == []
        assert not engine.is_started


class TestDiscoveryMode:
    """Peers from the mesh."""

    def test_discovered_peer_receives_updates(self, config, mesh, profile):
        """Accepted peers show up as destinations."""
        mesh.advertise(profile, osc_port=9001)
        transport = RecordingTransport()
        engine = TallyEngine(config, mesh_factory=lambda: mesh, transport=transport)
        engine.start()
        try:
            assert wait_for(lambda: engine.registry.has_profile(profile))
            engine.set_parameter(TallyParameter.PROGRAM, True)
            engine.scheduler.update_tick()
        finally:
            engine.stop()

        dest = Destination(profile.address, 9001)
        assert (dest, "/tally/program", [True]) in transport.sent
        assert mesh.closed

    def test_mesh_unavailable(self, config):
        """A mesh that cannot start fails start() without raising."""
        def factory():
            raise OSError("no multicast")

        engine = TallyEngine(config, mesh_factory=factory, transport=RecordingTransport())
        assert engine.start() is False
        assert not engine.is_started


class FakeAdvertiser:
    def __init__(self, name):
        self.name = name
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def get_status(self):
        return {"name": self.name, "http_port": 8060, "osc_port": 9060, "running": self.started}


class TestAdvertisement:
    """Own OSCQuery service."""

    def _config(self, **osc):
        settings = {"parameters": ADDRESSES, "service_name": "Studio-Tally"}
        settings.update(osc)
        return TallyConfig.model_validate({"osc": settings})

    def test_advertised_in_discovery_mode(self, mesh):
        """The service is published at start and withdrawn at stop."""
        made = []

        def factory(name):
            made.append(FakeAdvertiser(name))
            return made[-1]

        engine = TallyEngine(self._config(), mesh_factory=lambda: mesh,
                             transport=RecordingTransport(), advertiser_factory=factory)
        engine.start()
        try:
            assert [a.name for a in made] == ["Studio-Tally"]
            assert made[0].started
            assert engine.get_status()["service"]["http_port"] == 8060
        finally:
            engine.stop()
        assert made[0].stopped
        assert "service" not in engine.get_status()

    def test_not_advertised_with_custom_port(self):
        """Custom port mode publishes nothing."""
        def factory(name):
            raise AssertionError("no advertisement in custom port mode")

        engine = TallyEngine(_custom_port_config(9000), transport=RecordingTransport(),
                             advertiser_factory=factory)
        engine.start()
        engine.stop()

    def test_advertise_off(self, mesh):
        """advertise: false skips the service."""
        def factory(name):
            raise AssertionError("advertise is off")

        engine = TallyEngine(self._config(advertise=False), mesh_factory=lambda: mesh,
                             transport=RecordingTransport(), advertiser_factory=factory)
        assert engine.start()
        engine.stop()

    def test_advertise_failure_is_not_fatal(self, mesh):
        """Discovery and broadcast run even if the service cannot be published."""
        def factory(name):
            raise OSError("address in use")

        engine = TallyEngine(self._config(), mesh_factory=lambda: mesh,
                             transport=RecordingTransport(), advertiser_factory=factory)
        try:
            assert engine.start()
            assert engine.advertiser is None
            assert engine.scheduler.is_started
        finally:
            engine.stop()


class TestEviction:
    """Stale peers with staleness enabled."""

    def test_evicted_peer_closed_and_revived(self, mesh, profile):
        """Eviction closes the destination; a returning peer is sent to again."""
        config = TallyConfig.model_validate(
            {"osc": {"parameters": ADDRESSES, "advertise": False, "stale_after_cycles": 1,
                     "update_interval": 5.0}}
        )
        transport = RecordingTransport(failing=[Destination(profile.address, 9001)])
        engine = TallyEngine(config, mesh_factory=lambda: mesh, transport=transport)
        dest = Destination(profile.address, 9001)
        mesh.advertise(profile, osc_port=9001)
        engine.start()
        try:
            assert wait_for(lambda: engine.registry.has_profile(profile))
            engine.scheduler.update_tick()
            assert engine.get_status()["scheduler"]["failing"] == [str(dest)]

            mesh.withdraw(profile)
            engine.discovery.refresh()
            assert dest in transport.closed
            assert engine.get_status()["scheduler"]["failing"] == []
            assert engine.get_status()["no_receivers"] is True

            transport.failing.clear()
            mesh.advertise(profile, osc_port=9001)
            engine.discovery.refresh()
            assert wait_for(lambda: engine.registry.has_profile(profile))
            engine.scheduler.update_tick()
            assert (dest, "/tally/preview", [False]) in transport.sent
        finally:
            engine.stop()


class TestStatus:
    """Presentation-facing status."""

    def test_no_receivers(self, config, mesh):
        """Empty destination set is reported as no receivers."""
        engine = TallyEngine(config, mesh_factory=lambda: mesh, transport=RecordingTransport())
        status = engine.get_status()
        assert status["no_receivers"] is True
        assert status["destinations"] == []
        assert status["mode"] == "oscquery"
        assert status["parameters"]["Heartbeat"] is False

    def test_observer_notified_on_state_change(self, config):
        """apply_state() redraws the presentation layer."""
        engine = TallyEngine(config, transport=RecordingTransport())
        calls = []
        engine.on_refresh = lambda: calls.append(1)
        engine.apply_state(TallyState(error=True))
        engine.toggle_parameter("Standby")
        assert len(calls) == 2
        assert engine.get_status()["parameters"]["Error"] is True
        assert engine.get_status()["parameters"]["Standby"] is True


class TestBuildEngine:
    """Config-driven construction."""

    def test_bad_parameters_raise_config_error(self):
        """Construction problems surface as ConfigError."""
        config = TallyConfig.model_construct(
            osc=TallyConfig().osc.model_copy(update={"parameters": {"Preview": ["/p"]}})
        )
        with pytest.raises(ConfigError):
            build_engine(config)
