"""
OSCQuery mesh backed by tinyoscquery and zeroconf.

- Enumeration: tinyoscquery's OSCQueryBrowser (mDNS _oscjson._tcp)
- Push notifications: a zeroconf ServiceBrowser state-change handler
- Address tree / host info: tinyoscquery's OSCQueryClient (HTTP JSON)
- Own advertisement: tinyoscquery's OSCQueryService (HTTP server + mDNS record)
"""

import logging
import socket
import threading
from typing import Any, Dict, List, Optional

from tinyoscquery.query import OSCQueryBrowser, OSCQueryClient
from tinyoscquery.queryservice import OSCQueryService
from tinyoscquery.utility import get_open_tcp_port, get_open_udp_port
from zeroconf import ServiceBrowser, ServiceInfo, ServiceStateChange, Zeroconf

from .discovery import ServiceCallback, ServiceMesh
from .registry import ServiceProfile

logger = logging.getLogger(__name__)

OSCJSON_SERVICE_TYPE = "_oscjson._tcp.local."
SERVICE_INFO_TIMEOUT_MS = 3000


def profile_from_info(info: ServiceInfo) -> Optional[ServiceProfile]:
    """Build the profile identity for a resolved mDNS record (None if unresolved)."""
    if info is None or not info.addresses or not info.port:
        return None
    address = socket.inet_ntoa(info.addresses[0])
    return ServiceProfile(name=info.name, address=address, port=info.port)


class OSCQueryMesh(ServiceMesh):
    """ServiceMesh over the local OSCQuery/mDNS network."""

    def __init__(self):
        self._browser = OSCQueryBrowser()
        self._infos: Dict[ServiceProfile, ServiceInfo] = {}
        self._callbacks: List[ServiceCallback] = []
        self._lock = threading.Lock()
        self._push_browser: Optional[ServiceBrowser] = None

    @property
    def zeroconf(self) -> Zeroconf:
        return self._browser.zc

    def enumerate(self) -> List[ServiceProfile]:
        profiles = []
        for info in self._browser.get_discovered_oscquery():
            profile = self._remember(info)
            if profile is not None:
                profiles.append(profile)
        return profiles

    def subscribe(self, callback: ServiceCallback) -> None:
        with self._lock:
            self._callbacks.append(callback)
            if self._push_browser is not None:
                return
        self._push_browser = ServiceBrowser(
            self.zeroconf,
            OSCJSON_SERVICE_TYPE,
            handlers=[self._on_service_state_change],
        )

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is not ServiceStateChange.Added:
            return
        info = zeroconf.get_service_info(service_type, name, timeout=SERVICE_INFO_TIMEOUT_MS)
        profile = self._remember(info)
        if profile is None:
            logger.debug(f"Could not resolve OSCQuery service {name}")
            return
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(profile)
            except Exception as exc:
                logger.error(f"Service callback error for {profile}: {exc}")

    def _remember(self, info: Any) -> Optional[ServiceProfile]:
        profile = profile_from_info(info)
        if profile is not None:
            with self._lock:
                self._infos.setdefault(profile, info)
        return profile

    def forget(self, profile: ServiceProfile) -> None:
        with self._lock:
            self._infos.pop(profile, None)

    def _client(self, profile: ServiceProfile) -> OSCQueryClient:
        with self._lock:
            info = self._infos.get(profile)
        if info is None:
            raise LookupError(f"No mDNS record for {profile}")
        return OSCQueryClient(info)

    def fetch_tree(self, profile: ServiceProfile) -> Any:
        return self._client(profile).query_node("/")

    def fetch_osc_port(self, profile: ServiceProfile) -> int:
        host_info = self._client(profile).get_host_info()
        if host_info is None:
            raise LookupError(f"{profile} returned no HOST_INFO")
        return host_info.osc_port

    def close(self) -> None:
        if self._push_browser is not None:
            self._push_browser.cancel()
            self._push_browser = None
        self.zeroconf.close()
        logger.debug("OSCQuery browser closed")


class OSCQueryAdvertiser:
    """
    Advertises this sender as an OSCQuery service so peers can see it.

    Nothing is served on the OSC port; it is only published in HOST_INFO.

    Usage:
        advertiser = OSCQueryAdvertiser("OSC-Tally")
        advertiser.start()
        print(advertiser.http_port, advertiser.osc_port)
        advertiser.stop()
    """

    def __init__(self, name: str, http_port: Optional[int] = None, osc_port: Optional[int] = None):
        self.name = name
        self.http_port = http_port or get_open_tcp_port()
        self.osc_port = osc_port or get_open_udp_port()
        self._service: Optional[OSCQueryService] = None

    @property
    def running(self) -> bool:
        return self._service is not None

    def start(self) -> None:
        if self._service is not None:
            return
        self._service = OSCQueryService(self.name, self.http_port, self.osc_port)
        logger.info(
            f"OSCQuery service {self.name} running at TCP {self.http_port} and UDP {self.osc_port}"
        )

    def stop(self) -> None:
        service, self._service = self._service, None
        if service is None:
            return
        try:
            service.http_server.shutdown()
            service.http_server.server_close()
            service._zeroconf.unregister_all_services()
            service._zeroconf.close()
        except Exception as exc:
            logger.error(f"OSCQuery service shutdown error: {exc}")
        logger.debug(f"OSCQuery service {self.name} withdrawn")

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "http_port": self.http_port,
            "osc_port": self.osc_port,
            "running": self.running,
        }
