"""
Onionize Core Package

Content sources, capability gating, service identities and the
publication lifecycle (core.lifecycle, which also pulls in the HTTP
gateway).
"""

__version__ = "0.2.0"
__author__ = "Onionize Contributors"

from .exceptions import (
    OnionizeError, ConfigurationError, TransportSetupError, TransportLostError,
)
from .content_source import ContentSource, resolve_source
from .capability import CapabilityGate, generate_slug
from .identity import ServiceIdentity, derive_identity
from .transport import ListenerConfig

__all__ = [
    # Errors
    'OnionizeError',
    'ConfigurationError',
    'TransportSetupError',
    'TransportLostError',

    # Content
    'ContentSource',
    'resolve_source',

    # Gating
    'CapabilityGate',
    'generate_slug',

    # Identity
    'ServiceIdentity',
    'derive_identity',

    # Transport
    'ListenerConfig',
]
