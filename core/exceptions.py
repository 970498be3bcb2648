"""
Error taxonomy.

Setup errors end up in the single PublicationResult; TransportLostError is
the only runtime fatal and goes to the supervisor instead.
"""
from typing import Optional


class OnionizeError(Exception):
    """Base class for all onionize errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


# Configuration errors

class ConfigurationError(OnionizeError):
    """Invalid input; raised before the control channel is contacted."""


class SourceResolveError(ConfigurationError):
    """The content path cannot be opened."""


class ArchiveOpenError(ConfigurationError):
    """The archive cannot be opened or parsed."""


class IdentityDerivationError(ConfigurationError):
    """Keystream or key generation from the passphrase failed."""


class SlugGenerationError(ConfigurationError):
    """No randomness available for the capability slug."""


# Transport setup errors

class TransportSetupError(OnionizeError):
    """The transport provider refused or failed a setup step."""


class ControlConnectError(TransportSetupError):
    pass


class AuthenticationError(TransportSetupError):
    pass


class ListenerCreationError(TransportSetupError):
    pass


class SetupTimeoutError(TransportSetupError):
    """A setup step did not complete within SETUP_TIMEOUT."""


class PublicationCancelled(OnionizeError):
    """Publication was cancelled before an address was produced."""


# Runtime fatal errors

class TransportLostError(OnionizeError):
    """The control channel reported the transport is gone, or serving died."""


class ControlChannelClosed(Exception):
    """Raised by a control provider's next_event() once the channel is down."""
