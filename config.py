"""
Onionize configuration: constants and environment-driven defaults.
"""
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional
import logging
import os

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

# Module constants below may come from .env too
load_dotenv(find_dotenv(usecwd=True))


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r, not a number; using %g", name, raw, default)
        return default


# Version
VERSION = "0.2.0"

# Capability slug
SLUG_LENGTH = 16               # base32 characters, 80 bits

# Identity derivation
KEYGEN_LABEL = b"onionize-keygen"

# Published service
SERVICE_PORT = 80
LOCAL_HOST = '127.0.0.1'

# Control channel
DEFAULT_CONTROL = 'tcp://127.0.0.1:9051'

# Timeouts (seconds)
SETUP_TIMEOUT = _env_float('ONIONIZE_SETUP_TIMEOUT', 120.0)
PUBLISH_TIMEOUT = _env_float('ONIONIZE_PUBLISH_TIMEOUT', 300.0)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, 'false').lower() == 'true'


@dataclass(frozen=True)
class PublicationConfig:
    """Everything one invocation needs. Never mutated after creation."""

    path: Path
    archive: bool = False
    slug: bool = True
    control: str = DEFAULT_CONTROL
    control_password: str = ''
    passphrase: str = ''
    debug: bool = False

    @classmethod
    def from_env(cls, path, **overrides) -> 'PublicationConfig':
        """
        Build a config for ``path``, taking unset values from the environment.

        Explicit keyword overrides win over ``ONIONIZE_*`` variables, which
        win over the defaults.
        """
        load_dotenv(find_dotenv(usecwd=True))
        values = {
            'control': os.environ.get('ONIONIZE_CONTROL', DEFAULT_CONTROL),
            'control_password': os.environ.get('ONIONIZE_CONTROL_PASSWORD', ''),
            'debug': _env_flag('ONIONIZE_DEBUG'),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(path=Path(path), **values)

    def with_passphrase(self, passphrase: Optional[str]) -> 'PublicationConfig':
        return replace(self, passphrase=passphrase or '')

    def __repr__(self):
        # Credentials stay out of logs and tracebacks.
        return (f"PublicationConfig(path={str(self.path)!r}, archive={self.archive}, "
                f"slug={self.slug}, control={self.control!r}, debug={self.debug})")
