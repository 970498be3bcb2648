"""
Service identity: fresh or derived from a passphrase.
"""
import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from config import KEYGEN_LABEL
from .exceptions import IdentityDerivationError

logger = logging.getLogger(__name__)

ONION_VERSION = b'\x03'
KEY_TYPE = 'ED25519-V3'


class KeystreamReader:
    """
    Deterministic pseudorandom byte stream from a secret and a label.

    HKDF-SHA256 expands the secret under ``label`` into a ChaCha20 key and
    the stream is the cipher's keystream. The same secret under another
    label gives an unrelated stream.
    """

    def __init__(self, secret: bytes, label: bytes):
        if not secret:
            raise ValueError("Empty secret")
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=label,
        ).derive(secret)
        cipher = Cipher(algorithms.ChaCha20(key, b'\x00' * 16), mode=None)
        self._encryptor = cipher.encryptor()

    def read(self, n: int) -> bytes:
        return self._encryptor.update(b'\x00' * n)


def onion_address(public_key: bytes) -> str:
    """Compute the v3 onion host name for an Ed25519 public key."""
    checksum = hashlib.sha3_256(b'.onion checksum' + public_key + ONION_VERSION).digest()[:2]
    encoded = base64.b32encode(public_key + checksum + ONION_VERSION)
    return encoded.decode('ascii').lower() + '.onion'


def expand_secret_key(seed: bytes) -> bytes:
    """Expand a 32 byte Ed25519 seed to the 64 byte form tor expects."""
    h = bytearray(hashlib.sha512(seed).digest())
    h[0] &= 248
    h[31] &= 127
    h[31] |= 64
    return bytes(h)


@dataclass(frozen=True)
class ServiceIdentity:
    """
    Key material for the published address.

    ``key_blob`` is None for an ephemeral identity: the transport provider
    generates the key and it is never seen here.
    """

    key_blob: Optional[bytes] = None
    public_key: Optional[bytes] = None

    @property
    def derived(self) -> bool:
        return self.key_blob is not None

    @property
    def key_type(self) -> str:
        return KEY_TYPE

    def key_content(self) -> str:
        """Base64 key blob for the control protocol."""
        if self.key_blob is None:
            raise ValueError("Ephemeral identity has no local key material")
        return base64.b64encode(self.key_blob).decode('ascii')

    def service_host(self) -> Optional[str]:
        """The onion host this identity publishes under, if known locally."""
        if self.public_key is None:
            return None
        return onion_address(self.public_key)

    def __repr__(self):
        return f"ServiceIdentity(derived={self.derived}, host={self.service_host()!r})"


def derive_identity(passphrase: str = '', label: bytes = KEYGEN_LABEL) -> ServiceIdentity:
    """
    Produce the service identity for an invocation.

    An empty passphrase gives an ephemeral identity. Otherwise the key is
    generated from a keystream over the passphrase, so the same passphrase
    always yields the same address.

    Raises:
        IdentityDerivationError: keystream or key generation failed
    """
    if not passphrase:
        logger.info("Using a fresh ephemeral service key")
        return ServiceIdentity()

    try:
        stream = KeystreamReader(passphrase.encode('utf-8'), label)
    except (ValueError, UnicodeError) as e:
        raise IdentityDerivationError("Unable to create keystream", e)

    try:
        seed = stream.read(32)
        private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
    except (ValueError, TypeError) as e:
        raise IdentityDerivationError("Unable to generate onion key", e)

    identity = ServiceIdentity(key_blob=expand_secret_key(seed), public_key=public_bytes)
    logger.info("Derived service key from passphrase")
    return identity
