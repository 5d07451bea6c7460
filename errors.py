# errors.py
from typing import Optional


class GatekeeperError(Exception):
    """Base exception for the access gate."""
    pass


class ConfigMissing(GatekeeperError):
    """Required configuration is absent or unparsable. Fatal at startup."""

    def __init__(self, keys):
        self.keys = list(keys)
        super().__init__(f"Missing or invalid configuration: {', '.join(self.keys)}")


class RegistryUnavailable(GatekeeperError):
    """The registry could not be read or written (transport, auth or malformed range)."""
    pass


class MessagingError(GatekeeperError):
    pass


class MessagingUnavailable(MessagingError):
    """Transport failure talking to the messaging platform."""
    pass


class MessagingRejected(MessagingError):
    """The messaging platform answered with a well-formed error response."""

    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        self.method = method
        self.description = description
        self.error_code = error_code
        super().__init__(f"{method} rejected ({error_code}): {description}")
