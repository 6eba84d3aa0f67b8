"""Exception types raised by the health monitor."""


class MonitorError(Exception):
    """Base class for health monitor errors."""


class ConfigurationError(MonitorError, ValueError):
    """Malformed configuration or descriptor, raised at startup only."""


class PersistenceError(MonitorError):
    """The persistence layer rejected a read or write."""


class CredentialError(MonitorError):
    """No access token could be obtained for a tenant."""


class DispatchError(MonitorError):
    """A notification channel rejected a send."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
