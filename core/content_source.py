"""
Content sources: read-only views of a directory, a zip archive or one file.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Set, Tuple
from urllib.parse import quote
import io
import logging
import zipfile

from .exceptions import ArchiveOpenError, SourceResolveError
from .security import resolve_within

logger = logging.getLogger(__name__)

FILE = 'file'
DIRECTORY = 'dir'


class ContentSource(ABC):
    """
    Read-only mapping from logical names to bytes.

    Names are sanitized, relative and use '/' separators; the root is ''.
    Instances are immutable after construction and shared by all request
    threads.
    """

    #: Whether directory listings may be rendered for this source
    listing_allowed = True

    #: Escaped path appended to the published address
    url_suffix = ''

    @abstractmethod
    def kind(self, name: str) -> Optional[str]:
        """Return FILE, DIRECTORY or None if the name does not exist."""

    @abstractmethod
    def open(self, name: str) -> BinaryIO:
        pass

    @abstractmethod
    def listdir(self, name: str) -> List[Tuple[str, bool]]:
        """List (entry name, is_directory) pairs of a directory, sorted."""

    def local_path(self, name: str) -> Optional[Path]:
        """Filesystem location of a file entry, when there is one."""
        return None

    def close(self):
        pass


class DirectorySource(ContentSource):
    """A directory tree, exposed verbatim."""

    def __init__(self, root: Path):
        self.root = root.resolve()

    def _resolve(self, name: str) -> Optional[Path]:
        return resolve_within(self.root, name)

    def kind(self, name):
        path = self._resolve(name)
        if path is None:
            return None
        if path.is_dir():
            return DIRECTORY
        if path.is_file():
            return FILE
        return None

    def open(self, name):
        path = self._resolve(name)
        if path is None:
            raise FileNotFoundError(name)
        return open(path, 'rb')

    def listdir(self, name):
        path = self._resolve(name)
        if path is None or not path.is_dir():
            raise NotADirectoryError(name)
        return sorted((entry.name, entry.is_dir()) for entry in path.iterdir())

    def local_path(self, name):
        path = self._resolve(name)
        if path is not None and path.is_file():
            return path
        return None


class ArchiveSource(ContentSource):
    """Entries of a zip archive under their original relative paths."""

    def __init__(self, archive: zipfile.ZipFile):
        self.archive = archive
        self.files: Dict[str, zipfile.ZipInfo] = {}
        self.directories: Set[str] = {''}

        for info in archive.infolist():
            name = info.filename.strip('/')
            if not name:
                continue
            if info.is_dir():
                self.directories.add(name)
            else:
                self.files[name] = info
            # Intermediate directories are often missing from zips
            parts = name.split('/')
            for i in range(1, len(parts)):
                self.directories.add('/'.join(parts[:i]))

    def kind(self, name):
        if name in self.files:
            return FILE
        if name in self.directories:
            return DIRECTORY
        return None

    def open(self, name):
        info = self.files.get(name)
        if info is None:
            raise FileNotFoundError(name)
        return io.BytesIO(self.archive.read(info))

    def listdir(self, name):
        if name not in self.directories:
            raise NotADirectoryError(name)
        prefix = name + '/' if name else ''
        entries = {}
        for candidates, is_dir in ((self.directories, True), (self.files, False)):
            for entry in candidates:
                if entry and entry.startswith(prefix) and '/' not in entry[len(prefix):]:
                    entries[entry[len(prefix):]] = is_dir
        return sorted(entries.items())

    def close(self):
        self.archive.close()


class SingleFileSource(ContentSource):
    """
    Exactly one file, reachable under its basename only.

    Nothing else in the containing directory is visible, and there is no
    listing, not even of the root.
    """

    listing_allowed = False

    def __init__(self, path: Path):
        self.path = path.resolve()
        self.name = self.path.name
        # quote() with no safe characters escapes like a query component,
        # but encodes spaces as %20
        self.url_suffix = quote(self.name, safe='')

    def kind(self, name):
        if name == self.name:
            return FILE
        return None

    def open(self, name):
        if name != self.name:
            raise FileNotFoundError(name)
        return open(self.path, 'rb')

    def listdir(self, name):
        raise NotADirectoryError(name)

    def local_path(self, name):
        if name == self.name:
            return self.path
        return None


def resolve_source(path: Path, archive: bool = False) -> ContentSource:
    """
    Select the content source for a path. The choice is made once.

    Raises:
        ArchiveOpenError: archive mode and the zip cannot be read
        SourceResolveError: the path cannot be opened
    """
    path = Path(path)

    if archive:
        try:
            zf = zipfile.ZipFile(path)
        except (OSError, ValueError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise ArchiveOpenError("Unable to open zip archive", e)
        logger.info("Serving contents of zip archive %s (%d entries)",
                    path, len(zf.infolist()))
        return ArchiveSource(zf)

    try:
        st = path.stat()
    except (OSError, ValueError) as e:  # ValueError: embedded null byte
        raise SourceResolveError("Unable to open path", e)

    if path.is_dir():
        logger.info("Serving directory %s", path)
        return DirectorySource(path)

    if not path.is_file():
        raise SourceResolveError(f"Not a regular file or directory: {path}")

    logger.info("Serving single file %s (%d bytes)", path.name, st.st_size)
    return SingleFileSource(path)
