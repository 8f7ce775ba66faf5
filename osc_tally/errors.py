"""Error taxonomy for the tally engine."""


class TallyError(Exception):
    """Base class for all osc_tally errors."""


class DiscoveryError(TallyError):
    """A probe or mesh query failed. The candidate is rejected, discovery continues."""


class TransportError(TallyError):
    """A send to one destination failed. Swallowed per destination; the next tick retries."""


class ConfigError(TallyError):
    """Configuration is malformed. Fatal at startup."""


class DestinationClosed(TransportError):
    """Send to a destination whose socket was closed on eviction. Not a failure."""
