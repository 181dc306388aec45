import datetime
from typing import Iterable, List, Optional


FILE_TYPES = {
    "video": [
        ".3gp", ".avi", ".flv", ".insv", ".m2ts", ".m4v", ".mkv", ".mov",
        ".mp4", ".mpg", ".mts", ".webm", ".wmv", ".xmp", ".json",
    ],
    "picture": [
        ".3fr", ".ari", ".arw", ".avif", ".bmp", ".cap", ".cin", ".cr2",
        ".cr3", ".crw", ".dcr", ".dng", ".erf", ".fff", ".gif", ".heic",
        ".heif", ".hif", ".iiq", ".insp", ".jpe", ".jpeg", ".jpg", ".jxl",
        ".k25", ".kdc", ".mrw", ".nef", ".orf", ".ori", ".pef", ".png",
        ".psd", ".raf", ".raw", ".rw2", ".rwl", ".sr2", ".srf", ".srw",
        ".tif", ".tiff", ".webp", ".x3f", ".xmp", ".json",
    ],
}

# Sidecars travel with media in the type groups but are never assets themselves
SIDECAR_EXTENSIONS = {".json", ".xmp"}

SUPPORTED_MEDIA = frozenset(
    ext
    for exts in FILE_TYPES.values()
    for ext in exts
    if ext not in SIDECAR_EXTENSIONS
)


def normalize_extension(ext: str) -> str:
    ext = str(ext).strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


class ExtensionList:
    """
    A list of file extensions, stored lowercase and dot-prefixed.

    Normalization happens once, when the list is built. An empty list
    includes everything and excludes nothing.
    """

    def __init__(self, items: Optional[Iterable[str]] = None):
        self.extensions: List[str] = []
        for item in items or []:
            ext = normalize_extension(item)
            if ext and ext not in self.extensions:
                self.extensions.append(ext)

    @classmethod
    def parse(cls, text: Optional[str]) -> "ExtensionList":
        """
        Build a list from a comma-separated string like ".jpg, HEIC,.mp4".
        """
        if not text:
            return cls()
        return cls(part for part in text.split(",") if part.strip())

    def include(self, ext: str) -> bool:
        if not self.extensions:
            return True
        return ext.lower() in self.extensions

    def exclude(self, ext: str) -> bool:
        if not self.extensions:
            return False
        return ext.lower() in self.extensions

    def __len__(self):
        return len(self.extensions)

    def __iter__(self):
        return iter(self.extensions)

    def __eq__(self, other):
        if isinstance(other, ExtensionList):
            return self.extensions == other.extensions
        return NotImplemented

    def __repr__(self):
        return f"ExtensionList({self.extensions!r})"

    def __str__(self):
        return ", ".join(self.extensions)


def include_type(name: str) -> ExtensionList:
    """
    Expand a named type shortcut ("video" or "picture") to its extensions.
    The result replaces any explicit include list.
    """
    key = (name or "").strip().lower()
    if key not in FILE_TYPES:
        raise ValueError(f"Unknown include-type: {name!r} (expected one of {sorted(FILE_TYPES)})")
    return ExtensionList(FILE_TYPES[key])


class DateRange:
    """
    Optional closed interval of calendar days.

    Accepted forms:
      "2023"                   the whole year
      "2023-07"                the whole month
      "2023-07-14"             a single day
      "2023-01-15,2023-03"     from the start of the first to the end of the second
    """

    def __init__(self, after: Optional[datetime.date] = None, before: Optional[datetime.date] = None):
        if after and before and after > before:
            raise ValueError(f"Invalid date range: {after} is after {before}")
        self.after = after
        self.before = before

    @classmethod
    def parse(cls, text: Optional[str]) -> "DateRange":
        if not text or not text.strip():
            return cls()
        parts = [p.strip() for p in text.split(",")]
        if len(parts) == 1:
            start, end = _period(parts[0])
            return cls(start, end)
        if len(parts) == 2:
            start, _ = _period(parts[0])
            _, end = _period(parts[1])
            return cls(start, end)
        raise ValueError(f"Invalid date range: {text!r}")

    def is_set(self) -> bool:
        return self.after is not None or self.before is not None

    def in_range(self, when: datetime.datetime) -> bool:
        if not self.is_set():
            return True
        day = when.date() if isinstance(when, datetime.datetime) else when
        if self.after and day < self.after:
            return False
        if self.before and day > self.before:
            return False
        return True

    def __repr__(self):
        return f"DateRange({self.after}, {self.before})"

    def __str__(self):
        if not self.is_set():
            return ""
        return f"{self.after},{self.before}"


def _period(text: str):
    """
    Return the first and last day covered by YYYY, YYYY-MM or YYYY-MM-DD.
    """
    try:
        pieces = [int(p) for p in text.split("-")]
    except ValueError:
        raise ValueError(f"Invalid date: {text!r}") from None

    try:
        if len(pieces) == 1:
            year, = pieces
            return datetime.date(year, 1, 1), datetime.date(year, 12, 31)
        if len(pieces) == 2:
            year, month = pieces
            first = datetime.date(year, month, 1)
            if month == 12:
                last = datetime.date(year, 12, 31)
            else:
                last = datetime.date(year, month + 1, 1) - datetime.timedelta(days=1)
            return first, last
        if len(pieces) == 3:
            day = datetime.date(*pieces)
            return day, day
    except ValueError as e:
        raise ValueError(f"Invalid date: {text!r} ({e})") from None
    raise ValueError(f"Invalid date: {text!r}")
