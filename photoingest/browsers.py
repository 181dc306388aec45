"""
Browsers turn a MergedFileSystem into a lazy stream of LocalAsset.

Two layouts are understood:
- a plain folder tree (LocalFolderBrowser)
- a Google Photos Takeout export, where every media file comes with a JSON
  sidecar and albums are directories (TakeoutBrowser)

A browser is single-pass: browse() can be called once per instance.
"""

import datetime
import json
import logging
import posixpath
import re
import threading
from dataclasses import dataclass
from typing import Collection, Dict, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from photoingest.assets import LocalAsset
from photoingest.errors import MetadataUnavailable
from photoingest.filters import SUPPORTED_MEDIA
from photoingest.mergedfs import READ_ERRORS


log = logging.getLogger(__name__)

JUNK_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}
JUNK_PREFIXES = ("._",)  # AppleDouble resource forks like ._IMG_1234.JPG
DIR_IGNORE = {".Spotlight-V100", ".fseventsd", ".Trashes", ".TemporaryItems", "@eaDir"}

# Album description files written by Takeout, depending on the account language
ALBUM_METADATA_FILES = {"metadata.json", "metadaten.json", "métadonnées.json", "metadatos.json"}

# Takeout cuts "<media name>.json" so that the part before ".json" is at most
# this many characters long.
DEFAULT_TRUNCATED_NAME_LENGTH = 46

SUPPLEMENTAL = "supplemental-metadata"
EDITED_SUFFIXES = ("-edited", "-bearbeitet", "-modifié")

_year_folder = re.compile(r"^Photos from \d{4}$")
_counter = re.compile(r"^(?P<base>.*)\((?P<n>\d+)\)$")

_name_dt = re.compile(
    r"(?<!\d)(?P<y>(?:19|20)\d{2})[-_.]?(?P<m>\d{2})[-_.]?(?P<d>\d{2})"
    r"[ _T-]+(?:at )?"
    r"(?P<H>\d{2})[-_.:]?(?P<M>\d{2})[-_.:]?(?P<S>\d{2})"
)


@runtime_checkable
class Browser(Protocol):
    def browse(self, cancel: Optional[threading.Event] = None) -> Iterator[LocalAsset]:
        ...


def is_junk(name: str) -> bool:
    return name in JUNK_FILES or name.startswith(JUNK_PREFIXES)


def date_from_filename(name: str) -> Optional[datetime.datetime]:
    """
    Best-effort capture date embedded in camera/phone file names:
      IMG_20240710_200842.HEIC, PXL_20240710_200842123.jpg,
      WhatsApp Image 2024-07-10 at 20.08.42.jpeg, 2024-07-10 20.08.42.jpg
    Returns a naive datetime (wall clock of the device) or None.
    """
    m = _name_dt.search(name)
    if not m:
        return None
    try:
        return datetime.datetime(
            int(m.group("y")), int(m.group("m")), int(m.group("d")),
            int(m.group("H")), int(m.group("M")), int(m.group("S")),
        )
    except ValueError:
        return None


def _utc(ts: float) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)


class LocalFolderBrowser:
    """
    Every supported media file of the tree is a candidate. The capture date
    comes from the file name when it carries one, else from the file's
    modification time.
    """

    def __init__(self, fsys, extensions: Collection[str] = SUPPORTED_MEDIA):
        self.fsys = fsys
        self.extensions = extensions
        self._browsed = False

    def browse(self, cancel: Optional[threading.Event] = None) -> Iterator[LocalAsset]:
        if self._browsed:
            raise RuntimeError("LocalFolderBrowser.browse() can only be called once")
        self._browsed = True
        return self._browse(cancel or threading.Event())

    def _browse(self, cancel: threading.Event) -> Iterator[LocalAsset]:
        for dirpath, dirnames, filenames in self.fsys.walk():
            dirnames[:] = [d for d in dirnames if d not in DIR_IGNORE]
            for name in filenames:
                if cancel.is_set():
                    log.info("Browsing cancelled")
                    return
                if is_junk(name):
                    continue
                if posixpath.splitext(name)[1].lower() not in self.extensions:
                    continue
                path = posixpath.join(dirpath, name) if dirpath else name
                try:
                    info = self.fsys.stat(path)
                except OSError as e:
                    log.error("Can't read %s: %s", path, e)
                    continue
                yield LocalAsset(
                    fsys=self.fsys,
                    path=path,
                    title=name,
                    size=info.size,
                    date_taken=date_from_filename(name) or _utc(info.mtime),
                    mtime=info.mtime,
                )


# -----------------------------
# TAKEOUT SIDECARS
# -----------------------------

@dataclass
class TakeoutMetadata:
    title: str = ""
    date_taken: Optional[datetime.datetime] = None
    trashed: bool = False
    archived: bool = False
    favorite: bool = False
    from_partner: bool = False


def _timestamp(block) -> Optional[datetime.datetime]:
    if not isinstance(block, dict):
        return None
    raw = block.get("timestamp")
    if raw in (None, ""):
        return None
    try:
        ts = int(float(raw))
        if ts <= 0:
            return None
        return _utc(ts)
    except (TypeError, ValueError, OverflowError, OSError):
        log.debug("Unusable timestamp %r", raw)
        return None


def parse_sidecar(data: dict) -> TakeoutMetadata:
    """
    Extract what we need from a Takeout media sidecar.
    """
    if not isinstance(data, dict):
        raise MetadataUnavailable("sidecar is not a JSON object")
    origin = data.get("googlePhotosOrigin") or {}
    return TakeoutMetadata(
        title=str(data.get("title") or ""),
        date_taken=_timestamp(data.get("photoTakenTime")) or _timestamp(data.get("creationTime")),
        trashed=bool(data.get("trashed", False)),
        archived=bool(data.get("archived", False)),
        favorite=bool(data.get("favorited", False)),
        from_partner=isinstance(origin, dict) and "fromPartnerSharing" in origin,
    )


def read_json(fsys, path: str) -> dict:
    try:
        with fsys.open(path) as f:
            return json.loads(f.read().decode("utf-8"))
    except READ_ERRORS + (UnicodeDecodeError, ValueError) as e:
        raise MetadataUnavailable(f"{path}: {e}") from e


def read_sidecar(fsys, path: str) -> TakeoutMetadata:
    return parse_sidecar(read_json(fsys, path))


def match_sidecar(
    name: str,
    sidecars: Collection[str],
    truncated_name_length: int = DEFAULT_TRUNCATED_NAME_LENGTH,
) -> Optional[str]:
    """
    Find the JSON sidecar of the media file `name` among the JSON file names
    of the same directory. Rules, first hit wins:

    1. exact:         IMG_0001.jpg.json, then IMG_0001.json
    2. supplemental:  IMG_0001.jpg.supplemental-metadata.json, or any
                      truncation of "supplemental-metadata" (IMG_0001.jpg.supp.json)
    3. counter:       IMG_0001(1).jpg  ->  IMG_0001.jpg(1).json
    4. edited copy:   IMG_0001-edited.jpg  ->  the sidecar of IMG_0001.jpg
    5. truncated:     the first `truncated_name_length` characters of the
                      media name (or of "<name>.supplemental-metadata")
                      followed by .json
    """
    stem, ext = posixpath.splitext(name)

    for candidate in (name + ".json", stem + ".json"):
        if candidate in sidecars:
            return candidate

    for n in range(len(SUPPLEMENTAL), 0, -1):
        candidate = f"{name}.{SUPPLEMENTAL[:n]}.json"
        if candidate in sidecars:
            return candidate

    m = _counter.match(stem)
    if m:
        original = m.group("base") + ext
        counter = m.group("n")
        for candidate in (f"{original}({counter}).json", f"{original}.{SUPPLEMENTAL}({counter}).json"):
            if candidate in sidecars:
                return candidate

    for suffix in EDITED_SUFFIXES:
        if stem.endswith(suffix):
            found = match_sidecar(stem[: -len(suffix)] + ext, sidecars, truncated_name_length)
            if found:
                return found

    for full in (name, f"{name}.{SUPPLEMENTAL}"):
        if len(full) > truncated_name_length:
            candidate = full[:truncated_name_length] + ".json"
            if candidate in sidecars:
                return candidate
    return None


def is_edited(name: str) -> bool:
    stem = posixpath.splitext(name)[0]
    return stem.endswith(EDITED_SUFFIXES)


@dataclass
class _Copy:
    path: str
    sidecar: Optional[str]
    album: Optional[str]


class TakeoutBrowser:
    """
    Browse a Takeout export. The whole tree is indexed first (pairing media
    with sidecars and grouping copies of the same asset), then assets are
    produced lazily, each one once, with all its albums.
    """

    def __init__(self, fsys, truncated_name_length: int = DEFAULT_TRUNCATED_NAME_LENGTH,
                 extensions: Collection[str] = SUPPORTED_MEDIA):
        self.fsys = fsys
        self.truncated_name_length = truncated_name_length
        self.extensions = extensions
        self._browsed = False

        # (lowercase file name, size) -> copies, in discovery order
        self._groups: Dict[Tuple[str, int], List[_Copy]] = {}
        self._sizes: Dict[str, Tuple[int, float]] = {}

    def browse(self, cancel: Optional[threading.Event] = None) -> Iterator[LocalAsset]:
        if self._browsed:
            raise RuntimeError("TakeoutBrowser.browse() can only be called once")
        self._browsed = True
        return self._browse(cancel or threading.Event())

    def _browse(self, cancel: threading.Event) -> Iterator[LocalAsset]:
        self._index(cancel)
        for copies in self._groups.values():
            if cancel.is_set():
                log.info("Browsing cancelled")
                return
            yield self._make_asset(copies)

    # -----------------------------
    # INDEXING
    # -----------------------------

    def _index(self, cancel: threading.Event):
        for dirpath, dirnames, filenames in self.fsys.walk():
            if cancel.is_set():
                return
            dirnames[:] = [d for d in dirnames if d not in DIR_IGNORE]

            album = self.album_name(dirpath, filenames)
            sidecars = {
                f for f in filenames
                if f.lower().endswith(".json") and f.lower() not in ALBUM_METADATA_FILES
            }
            used = set()

            for name in filenames:
                if is_junk(name) or posixpath.splitext(name)[1].lower() not in self.extensions:
                    continue
                path = posixpath.join(dirpath, name) if dirpath else name
                try:
                    info = self.fsys.stat(path)
                except OSError as e:
                    log.error("Can't read %s: %s", path, e)
                    continue

                sidecar = match_sidecar(name, sidecars, self.truncated_name_length)
                if sidecar:
                    used.add(sidecar)
                    sidecar = posixpath.join(dirpath, sidecar) if dirpath else sidecar
                else:
                    log.info("No JSON sidecar for %s, using file system metadata", path)

                self._sizes[path] = (info.size, info.mtime)
                key = (name.lower(), info.size)
                self._groups.setdefault(key, []).append(_Copy(path, sidecar, album))

            for orphan in sorted(sidecars - used):
                log.debug("Sidecar %s matches no media file, ignored", posixpath.join(dirpath, orphan))

    def album_name(self, dirpath: str, filenames: Collection[str]) -> Optional[str]:
        """
        The album a directory stands for, or None for the export root and
        the "Photos from YYYY" year folders. An album metadata.json title
        takes precedence over the directory name.
        """
        if not dirpath:
            return None
        base = posixpath.basename(dirpath)
        if _year_folder.match(base):
            return None
        for name in filenames:
            if name.lower() in ALBUM_METADATA_FILES:
                path = posixpath.join(dirpath, name)
                try:
                    title = read_json(self.fsys, path).get("title")
                except (MetadataUnavailable, AttributeError) as e:
                    log.warning("Can't read album metadata %s: %s", path, e)
                    continue
                if title:
                    return str(title)
        return base

    # -----------------------------
    # ASSETS
    # -----------------------------

    def _make_asset(self, copies: List[_Copy]) -> LocalAsset:
        first = copies[0]
        name = posixpath.basename(first.path)
        size, mtime = self._sizes[first.path]

        meta = None
        sidecar = None
        for copy in copies:
            if not copy.sidecar:
                continue
            try:
                meta = read_sidecar(self.fsys, copy.sidecar)
                sidecar = copy.sidecar
                break
            except MetadataUnavailable as e:
                log.warning("Unusable sidecar, falling back to file system metadata: %s", e)

        asset = LocalAsset(
            fsys=self.fsys,
            path=first.path,
            title=name,
            size=size,
            mtime=mtime,
            sidecar=sidecar,
        )
        if meta:
            if meta.title and not is_edited(name):
                asset.title = meta.title
            asset.date_taken = meta.date_taken
            asset.trashed = meta.trashed
            asset.archived = meta.archived
            asset.favorite = meta.favorite
            asset.from_partner = meta.from_partner
        if asset.date_taken is None:
            asset.date_taken = _utc(mtime)

        for copy in copies:
            if copy.album:
                asset.add_album(copy.album)
        return asset
