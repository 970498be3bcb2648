"""
Capability slug: an unguessable path prefix that gates the whole service.
"""
import base64
import hmac
import logging
import secrets
import socket
import struct
from typing import Optional

from werkzeug.utils import redirect

from config import SLUG_LENGTH
from .exceptions import SlugGenerationError

logger = logging.getLogger(__name__)


def generate_slug(length: int = SLUG_LENGTH) -> str:
    """
    Draw a fresh slug of ``length`` lowercase base32 characters.

    Each character carries 5 bits, so the default of 16 gives 80 bits.
    """
    try:
        raw = secrets.token_bytes(length * 5 // 8 + 1)
    except OSError as e:
        raise SlugGenerationError("Unable to generate slug", e)
    encoded = base64.b32encode(raw).decode('ascii').lower()
    return encoded[:length]


def strip_slug(path: str, slug: str) -> Optional[str]:
    """
    Check that ``path`` starts with ``slug`` and return what follows it.

    The comparison runs in constant time over the slug length, wherever
    the first differing byte is.

    Returns:
        The remainder of the path, or None on mismatch
    """
    if len(path) < len(slug):
        return None
    candidate = path[:len(slug)].encode('utf-8', 'surrogatepass')
    if not hmac.compare_digest(candidate, slug.encode('ascii')):
        return None
    return path[len(slug):]


def reset_connection(environ) -> bool:
    """
    Drop the client connection without sending anything.

    Returns:
        False if the server does not expose its socket
    """
    sock = environ.get('werkzeug.socket')
    if sock is None:
        return False
    try:
        # Zero linger turns the close into a RST
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.warning("Unable to reset connection: %s", e)
        return False
    return True


class CapabilityGate:
    """
    WSGI middleware forwarding only requests under ``/<slug>``.

    Matching requests reach the inner app with the slug moved from
    PATH_INFO to SCRIPT_NAME. Everything else gets its connection reset,
    never an error page. A request for the bare root is redirected to
    ``/<slug>/``.
    """

    def __init__(self, app, slug: str):
        if not slug:
            raise ValueError("CapabilityGate needs a non-empty slug")
        self.app = app
        self.slug = slug

    def __call__(self, environ, start_response):
        path = environ.get('PATH_INFO', '')
        if path.startswith('/'):
            path = path[1:]

        if not path:
            return self._redirect_to_slug(environ, start_response)

        remainder = strip_slug(path, self.slug)
        if remainder is None:
            return self._reject(environ, start_response)

        if not remainder:
            return self._redirect_to_slug(environ, start_response)

        environ = dict(environ)
        environ['SCRIPT_NAME'] = environ.get('SCRIPT_NAME', '').rstrip('/') + '/' + self.slug
        environ['PATH_INFO'] = remainder
        logger.debug("Rewriting request to %r", remainder)
        return self.app(environ, start_response)

    def _redirect_to_slug(self, environ, start_response):
        return redirect('/' + self.slug + '/', code=302)(environ, start_response)

    def _reject(self, environ, start_response):
        logger.debug("Rejected request without a valid capability")
        if not reset_connection(environ):
            logger.debug("Connection reset unsupported, failing request silently")
        # Once reset, writing this fails and the server drops the connection
        start_response('404 Not Found', [('Content-Length', '0')])
        return [b'']


def gate(app, slug: str):
    """Wrap ``app`` in a CapabilityGate, or return it untouched for no slug."""
    if not slug:
        return app
    return CapabilityGate(app, slug)
