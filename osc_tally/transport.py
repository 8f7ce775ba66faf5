"""
OSC UDP transport.

One connected UDP socket per destination, created on first send.
Fire-and-forget: no acknowledgement, no delivery guarantee. A connected
socket lets the kernel report ICMP "port unreachable" on a later send, which
surfaces here as TransportError.

close(destination) retires the destination: later sends raise
DestinationClosed instead of opening a new socket, until revive() is called
for it (the registry does that when the destination is added again).
"""

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from pythonosc.osc_message import OscMessage
from pythonosc.osc_message_builder import OscMessageBuilder

from .errors import DestinationClosed, TransportError
from .registry import Destination

logger = logging.getLogger(__name__)


def build_bool_message(address: str, value: bool) -> OscMessage:
    """Build an OSC message whose only argument is the True/False type tag."""
    builder = OscMessageBuilder(address=address)
    arg_type = OscMessageBuilder.ARG_TYPE_TRUE if value else OscMessageBuilder.ARG_TYPE_FALSE
    builder.add_arg(bool(value), arg_type)
    return builder.build()


@dataclass
class _Link:
    sock: socket.socket
    sent: int = 0
    failed: int = 0
    last_error: Optional[str] = None


class Transport:
    """
    Best-effort OSC sender keyed by destination.

    Usage:
        transport = Transport()
        transport.send(Destination("127.0.0.1", 9000), build_bool_message("/a", True))
        transport.close_all()
    """

    def __init__(self):
        self._links: Dict[Destination, _Link] = {}
        self._retired: Set[Destination] = set()
        self._lock = threading.Lock()

    def send(self, destination: Destination, message: OscMessage) -> None:
        """
        Send one message.

        Raises:
            DestinationClosed: destination was closed and not revived
            TransportError: socket could not be opened or the send was refused
        """
        link = self._get_link(destination)
        try:
            link.sock.send(message.dgram)
        except OSError as exc:
            link.failed += 1
            link.last_error = str(exc)
            with self._lock:
                retired = destination in self._retired
            if retired:
                # Closed underneath an in-flight send
                raise DestinationClosed(f"{destination} was closed") from exc
            raise TransportError(f"Send to {destination} failed: {exc}") from exc
        link.sent += 1

    def _get_link(self, destination: Destination) -> _Link:
        with self._lock:
            if destination in self._retired:
                raise DestinationClosed(f"{destination} was closed")
            link = self._links.get(destination)
            if link is not None:
                return link
            try:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            except OSError as exc:
                raise TransportError(f"Cannot open socket for {destination}: {exc}") from exc
            try:
                sock.connect((destination.host, destination.port))
            except OSError as exc:
                sock.close()
                raise TransportError(f"Cannot connect to {destination}: {exc}") from exc
            link = _Link(sock)
            self._links[destination] = link
            logger.debug(f"Opened OSC socket → {destination}")
            return link

    def is_connected(self, destination: Destination) -> bool:
        """True if a socket is open and connected to the destination."""
        with self._lock:
            link = self._links.get(destination)
        if link is None:
            return False
        try:
            link.sock.getpeername()
        except OSError:
            return False
        return True

    def is_retired(self, destination: Destination) -> bool:
        with self._lock:
            return destination in self._retired

    def connected_destinations(self) -> List[Destination]:
        with self._lock:
            candidates = list(self._links)
        return [dest for dest in candidates if self.is_connected(dest)]

    def get_link_stats(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                str(dest): {
                    "sent": link.sent,
                    "failed": link.failed,
                    "last_error": link.last_error,
                }
                for dest, link in self._links.items()
            }

    def close(self, destination: Destination) -> None:
        """Close the socket for one destination and refuse to reopen it until revived."""
        with self._lock:
            link = self._links.pop(destination, None)
            self._retired.add(destination)
        if link is not None:
            link.sock.close()
            logger.debug(f"Closed OSC socket → {destination}")

    def revive(self, destination: Destination) -> None:
        """Allow sends to a previously closed destination again."""
        with self._lock:
            if destination not in self._retired:
                return
            self._retired.discard(destination)
        logger.debug(f"OSC destination revived → {destination}")

    def close_all(self) -> None:
        """Close every socket (shutdown). Retired destinations are forgotten too."""
        with self._lock:
            links = list(self._links.items())
            self._links.clear()
            self._retired.clear()
        for destination, link in links:
            link.sock.close()
        if links:
            logger.info(f"Closed {len(links)} OSC socket(s)")
