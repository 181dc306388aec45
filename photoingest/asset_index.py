"""
What the server already has, and what to do with a local asset given that.

Assets are matched on metadata only (title + device id): the server's
content hashes can't be compared without downloading every asset. Two
different files sharing a title on the same device are seen as the same
asset; that risk is accepted.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from photoingest.assets import LocalAsset


log = logging.getLogger(__name__)


@dataclass
class RemoteAsset:
    id: str
    title: str
    size: Optional[int] = None
    checksum: str = ""
    device_id: str = ""
    just_uploaded: bool = False


class AdviceKind(enum.Enum):
    NOT_ON_SERVER = "not on server"
    SMALLER_ON_SERVER = "smaller on server"
    SAME_ON_SERVER = "same on server"


@dataclass(frozen=True)
class Advice:
    kind: AdviceKind
    message: str
    server_asset: Optional[RemoteAsset] = None


def fingerprint(title: str, device_id: str = "") -> Tuple[str, str]:
    return (device_id or "").lower(), (title or "").lower()


class AssetIndex:
    """
    One RemoteAsset per fingerprint. Seeded once from the server listing,
    then updated by add_local_asset() after each successful upload.
    """

    def __init__(self, assets: Iterable[RemoteAsset] = (), device_id: str = ""):
        self.device_id = device_id
        self._assets: Dict[Tuple[str, str], RemoteAsset] = {}
        for a in assets:
            key = fingerprint(a.title, a.device_id)
            known = self._assets.get(key)
            # Keep the best copy when the server already holds duplicates
            if known is None or (a.size or 0) > (known.size or 0):
                self._assets[key] = a

    @classmethod
    def from_catalog(cls, catalog, device_id: str) -> "AssetIndex":
        return cls(catalog.list_all_assets(), device_id=device_id)

    def __len__(self):
        return len(self._assets)

    def __contains__(self, title):
        return fingerprint(title, self.device_id) in self._assets

    def get(self, title: str) -> Optional[RemoteAsset]:
        return self._assets.get(fingerprint(title, self.device_id))

    def should_upload(self, asset: LocalAsset) -> Advice:
        known = self.get(asset.title)
        if known is None:
            return Advice(AdviceKind.NOT_ON_SERVER, "no matching asset on server")
        # An unknown server size can't prove the server copy is worse
        if known.size is not None and asset.size > known.size:
            return Advice(
                AdviceKind.SMALLER_ON_SERVER,
                f"server copy is smaller/lower quality ({known.size} < {asset.size} bytes)",
                known,
            )
        return Advice(AdviceKind.SAME_ON_SERVER, "equivalent asset already present", known)

    def add_local_asset(self, asset: LocalAsset, remote_id: str) -> RemoteAsset:
        """
        Record an asset the server just acknowledged. Replaces any previous
        record with the same fingerprint.
        """
        record = RemoteAsset(
            id=remote_id,
            title=asset.title,
            size=asset.size,
            device_id=self.device_id,
            just_uploaded=True,
        )
        self._assets[fingerprint(asset.title, self.device_id)] = record
        log.debug("Indexed %s as %s", asset.title, remote_id)
        return record
