"""
Read-only file systems over folders and zip archives, and the merged view
the browsers walk.

All paths are posix-style and relative to the root of the tree ("" is the
root). When several roots provide the same path, the earliest root in the
configured order wins.
"""

import datetime
import logging
import os
import posixpath
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from photoingest.errors import NotFound, SourceUnavailable


log = logging.getLogger(__name__)

# What reading a member of a damaged archive can raise, besides OSError
READ_ERRORS = (OSError, EOFError, zipfile.BadZipFile, zlib.error)


@dataclass(frozen=True)
class FileInfo:
    name: str
    size: int
    mtime: float
    is_dir: bool
    is_link: bool = False


def clean_path(path: str) -> str:
    """
    Normalize a relative path: "", ".", "/" all mean the root.
    """
    path = (path or "").replace("\\", "/").strip("/")
    if not path:
        return ""
    path = posixpath.normpath(path)
    if path == ".":
        return ""
    if path.startswith("../") or path == "..":
        raise NotFound(path)
    return path


class DirectoryRoot:
    """
    A folder on disk.
    """

    def __init__(self, base):
        self.base = Path(base)
        if not self.base.is_dir():
            raise SourceUnavailable(f"{self.base} is not a folder")
        self.name = str(self.base)

    def _full(self, path: str) -> Path:
        path = clean_path(path)
        return self.base / path if path else self.base

    def exists(self, path: str) -> bool:
        return self._full(path).exists()

    def stat(self, path: str) -> FileInfo:
        full = self._full(path)
        try:
            st = full.stat()
        except FileNotFoundError:
            raise NotFound(path) from None
        return FileInfo(
            name=posixpath.basename(clean_path(path)),
            size=st.st_size,
            mtime=st.st_mtime,
            is_dir=full.is_dir(),
            is_link=full.is_symlink(),
        )

    def listdir(self, path: str) -> List[str]:
        full = self._full(path)
        if not full.is_dir():
            raise NotFound(path)
        return sorted(os.listdir(full))

    def open(self, path: str) -> BinaryIO:
        full = self._full(path)
        if not full.is_file():
            raise NotFound(path)
        return open(full, "rb")

    def local_path(self, path: str) -> Optional[Path]:
        return self._full(path)

    def close(self):
        pass


class ZipRoot:
    """
    A zip archive, opened once and indexed at construction.
    """

    def __init__(self, archive):
        self.name = str(archive)
        try:
            self.zf = zipfile.ZipFile(archive)
        except (OSError, zipfile.BadZipFile) as e:
            raise SourceUnavailable(f"Can't open archive {archive}: {e}") from e
        self.mtime = os.stat(archive).st_mtime

        self.files: Dict[str, zipfile.ZipInfo] = {}
        self.dirs: Dict[str, Set[str]] = {"": set()}
        for info in self.zf.infolist():
            name = clean_path(info.filename)
            if not name:
                continue
            if info.is_dir():
                self._add_dir(name)
            else:
                self.files[name] = info
                parent, base = posixpath.split(name)
                self._add_dir(parent)
                self.dirs[parent].add(base)

    def _add_dir(self, path: str):
        # Registers the directory and all its implicit parents
        while path and path not in self.dirs:
            self.dirs[path] = set()
            parent, base = posixpath.split(path)
            self.dirs.setdefault(parent, set()).add(base)
            path = parent

    def exists(self, path: str) -> bool:
        path = clean_path(path)
        return path in self.files or path in self.dirs

    def stat(self, path: str) -> FileInfo:
        path = clean_path(path)
        base = posixpath.basename(path)
        if path in self.files:
            info = self.files[path]
            mtime = self._member_mtime(info)
            return FileInfo(name=base, size=info.file_size, mtime=mtime, is_dir=False)
        if path in self.dirs:
            return FileInfo(name=base, size=0, mtime=0.0, is_dir=True)
        raise NotFound(path)

    def _member_mtime(self, info: zipfile.ZipInfo) -> float:
        # DOS timestamps are local wall clock time. Some archivers write
        # zeroed dates; those get the archive's own mtime.
        try:
            return datetime.datetime(*info.date_time).timestamp()
        except (ValueError, OverflowError, OSError):
            log.debug("Invalid date in %s for %s, using the archive mtime", self.name, info.filename)
            return self.mtime

    def listdir(self, path: str) -> List[str]:
        path = clean_path(path)
        if path not in self.dirs:
            raise NotFound(path)
        return sorted(self.dirs[path])

    def open(self, path: str) -> BinaryIO:
        path = clean_path(path)
        if path not in self.files:
            raise NotFound(path)
        return self.zf.open(self.files[path])

    def local_path(self, path: str) -> Optional[Path]:
        return None

    def close(self):
        self.zf.close()


def open_root(path):
    """
    Open one source: a folder or a .zip archive.
    """
    p = Path(path).expanduser()
    if not p.exists():
        raise SourceUnavailable(f"{p} does not exist")
    if p.is_dir():
        return DirectoryRoot(p)
    if p.suffix.lower() == ".zip":
        return ZipRoot(p)
    raise SourceUnavailable(f"{p} is neither a folder nor a zip archive")


class MergedFileSystem:
    """
    Several read-only roots seen as a single tree.
    """

    def __init__(self, roots: Sequence):
        self.roots = list(roots)

    @classmethod
    def from_paths(cls, paths: Sequence) -> "MergedFileSystem":
        """
        Open every path up front. If one fails, the ones already opened are
        closed and SourceUnavailable propagates.
        """
        roots = []
        try:
            for p in paths:
                roots.append(open_root(p))
                log.debug("Opened source %s", p)
        except SourceUnavailable:
            for r in roots:
                r.close()
            raise
        return cls(roots)

    def root_of(self, path: str):
        for root in self.roots:
            if root.exists(path):
                return root
        raise NotFound(path)

    def exists(self, path: str) -> bool:
        return any(root.exists(path) for root in self.roots)

    def stat(self, path: str) -> FileInfo:
        return self.root_of(path).stat(path)

    def is_dir(self, path: str) -> bool:
        try:
            return self.stat(path).is_dir
        except NotFound:
            return False

    def open(self, path: str) -> BinaryIO:
        return self.root_of(path).open(path)

    def local_path(self, path: str) -> Optional[Path]:
        return self.root_of(path).local_path(path)

    def listdir(self, path: str) -> List[str]:
        names: Set[str] = set()
        found = False
        for root in self.roots:
            try:
                names.update(root.listdir(path))
                found = True
            except NotFound:
                continue
        if not found:
            raise NotFound(path)
        return sorted(names)

    def walk(self, top: str = "") -> Iterator[Tuple[str, List[str], List[str]]]:
        """
        Top-down walk, like os.walk, in sorted order. Unreadable folders and
        entries are logged and skipped. Symlinked folders are not followed.
        """
        top = clean_path(top)
        try:
            names = self.listdir(top)
        except OSError as e:
            log.error("Can't read folder %r: %s", top, e)
            return
        dirnames, filenames = [], []
        for name in names:
            child = posixpath.join(top, name) if top else name
            try:
                info = self.stat(child)
            except OSError as e:
                log.error("Can't read %r: %s", child, e)
                continue
            if info.is_dir and info.is_link:
                log.info("Not following symlinked folder %r", child)
            elif info.is_dir:
                dirnames.append(name)
            else:
                filenames.append(name)
        yield top, dirnames, filenames
        for name in dirnames:
            child = posixpath.join(top, name) if top else name
            yield from self.walk(child)

    def close(self):
        for root in self.roots:
            root.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
