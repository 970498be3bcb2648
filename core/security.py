"""
Path sanitization shared by every content source.
"""
import posixpath
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def sanitize_name(raw: str) -> Optional[str]:
    """
    Turn a request path into a logical name relative to the source root.

    Cleaning follows static file server rules: separators are collapsed,
    ``.`` and ``..`` are resolved lexically and can never climb above the
    root. The root itself is the empty string.

    Returns:
        Cleaned name, or None if the path is unusable
    """
    if '\x00' in raw:
        logger.warning("Null byte in path: %r", raw)
        return None

    cleaned = posixpath.normpath('/' + raw.replace('\\', '/'))
    # normpath keeps a leading '//' as-is
    return cleaned.lstrip('/')


def resolve_within(base_dir: Path, name: str) -> Optional[Path]:
    """
    Map a sanitized name onto the filesystem below ``base_dir``.

    Symlinks are followed, but the final target must stay inside
    ``base_dir``.
    """
    if not base_dir.is_absolute():
        raise ValueError("base_dir must be absolute")

    requested = base_dir / name if name else base_dir
    try:
        resolved = requested.resolve(strict=False)
    except (OSError, RuntimeError) as e:
        logger.warning("Path resolution failed: %s", e)
        return None

    try:
        resolved.relative_to(base_dir.resolve())
    except ValueError:
        logger.warning("Path escape attempt: %s -> %s", name, resolved)
        return None

    return resolved
