import datetime
import posixpath
import re
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional

from photoingest.local_store import delete_local_file


_spaces = re.compile(r"\s+")


@dataclass(eq=False)
class LocalAsset:
    """
    A media file found by a browser, waiting to be reconciled.

    The browser hands it over to the driver, which must call close()
    whatever happens to the asset.
    """

    fsys: object
    path: str
    title: str
    size: int
    date_taken: Optional[datetime.datetime] = None
    albums: List[str] = field(default_factory=list)
    from_partner: bool = False
    trashed: bool = False
    archived: bool = False
    favorite: bool = False
    sidecar: Optional[str] = None
    mtime: Optional[float] = None

    _handle: Optional[BinaryIO] = field(default=None, init=False, repr=False)

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def ext(self) -> str:
        return posixpath.splitext(self.path)[1].lower()

    @property
    def album(self) -> str:
        return self.albums[0] if self.albums else ""

    @property
    def device_asset_id(self) -> str:
        return _spaces.sub("", f"{self.title}-{self.size}")

    @property
    def modified_at(self) -> Optional[datetime.datetime]:
        if self.mtime is None:
            return None
        return datetime.datetime.fromtimestamp(self.mtime, tz=datetime.timezone.utc)

    def open(self) -> BinaryIO:
        if self._handle is None:
            self._handle = self.fsys.open(self.path)
        return self._handle

    def close(self):
        if self._handle is not None:
            try:
                self._handle.close()
            finally:
                self._handle = None

    def remove(self):
        """
        Delete the local original. Only files from folder sources can be
        deleted; files inside archives raise PermissionError.
        """
        self.close()
        local = self.fsys.local_path(self.path)
        if local is None:
            raise PermissionError(f"{self.path} is inside an archive and can't be deleted")
        delete_local_file(local)

    def add_album(self, name: str):
        if name and name not in self.albums:
            self.albums.append(name)
