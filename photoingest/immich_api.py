import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from photoingest.asset_index import RemoteAsset
from photoingest.errors import CatalogError, UploadFailed


log = logging.getLogger(__name__)

TIMEOUT = 60
UPLOAD_TIMEOUT = 600
PAGE_SIZE = 1000

_trailing_size = re.compile(r"-(\d+)$")


@dataclass
class Connection:
    endpoint: str
    key: str
    device_id: str

    def url(self, path: str) -> str:
        base = self.endpoint.rstrip("/")
        if not base.endswith("/api"):
            base += "/api"
        return base + path


@dataclass
class Album:
    id: str
    name: str
    asset_count: int = 0


def get_headers(conn: Connection, json_body: bool = True) -> Dict[str, str]:
    """
    Return headers for authorized requests to the server.
    """
    headers = {
        "x-api-key": conn.key,
        "Accept": "application/json",
    }
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def _call(method: str, conn: Connection, path: str, error=CatalogError, **kwargs):
    """
    Send a request and return the decoded JSON body (or None when empty).
    Any transport error or non-2xx status raises `error`.
    """
    kwargs.setdefault("timeout", TIMEOUT)
    kwargs.setdefault("headers", get_headers(conn))
    url = conn.url(path)
    try:
        resp = requests.request(method, url, **kwargs)
    except requests.RequestException as e:
        raise error(f"{method} {path}: {e}") from e

    if resp.status_code // 100 != 2:
        raise error(f"{method} {path}: {resp.status_code} {resp.text}", status_code=resp.status_code)
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise error(f"{method} {path}: invalid JSON response") from e


def ping_server(conn: Connection):
    data = _call("GET", conn, "/server/ping")
    if not data or data.get("res") != "pong":
        raise CatalogError(f"Unexpected ping answer: {data!r}")


def validate_connection(conn: Connection) -> dict:
    """
    Return the user owning the API key.
    """
    return _call("GET", conn, "/users/me")


def search_assets(conn: Connection, body: dict) -> dict:
    """
    Generic helper to call the metadata search with a given request body.
    """
    return _call("POST", conn, "/search/metadata", json=body) or {}


def to_remote_asset(item: dict) -> RemoteAsset:
    exif = item.get("exifInfo") or {}
    size = exif.get("fileSizeInByte")
    if size is None:
        # deviceAssetId is "<name>-<size>" when we uploaded it ourselves
        m = _trailing_size.search(item.get("deviceAssetId") or "")
        if m:
            size = int(m.group(1))
    return RemoteAsset(
        id=item["id"],
        title=item.get("originalFileName", ""),
        size=int(size) if size is not None else None,
        checksum=item.get("checksum", ""),
        device_id=item.get("deviceId", ""),
    )


def list_all_assets(conn: Connection) -> List[RemoteAsset]:
    """
    List every asset of the user (paginated).
    """
    assets = []
    page = 1

    while page:
        body = {"page": page, "size": PAGE_SIZE, "withExif": True}
        data = search_assets(conn, body).get("assets", {})
        assets.extend(to_remote_asset(item) for item in data.get("items", []))

        next_page = data.get("nextPage")
        page = int(next_page) if next_page else None

    return assets


def upload_asset(conn: Connection, asset) -> str:
    """
    Upload a local asset (raw bytes plus dates). Return the new asset ID.
    """
    created = asset.date_taken or asset.modified_at
    modified = asset.modified_at or asset.date_taken
    data = {
        "deviceAssetId": asset.device_asset_id,
        "deviceId": conn.device_id,
        "fileCreatedAt": created.isoformat() if created else "",
        "fileModifiedAt": modified.isoformat() if modified else "",
        "isFavorite": "true" if asset.favorite else "false",
        "isArchived": "true" if asset.archived else "false",
    }
    files = {"assetData": (asset.title, asset.open(), "application/octet-stream")}

    result = _call(
        "POST", conn, "/assets",
        error=UploadFailed,
        headers=get_headers(conn, json_body=False),
        data=data,
        files=files,
        timeout=UPLOAD_TIMEOUT,
    )
    if not result or "id" not in result:
        raise UploadFailed(f"No asset id in upload answer for {asset.title}: {result!r}")
    if result.get("status") == "duplicate":
        log.info("%s was already on the server as %s", asset.title, result["id"])
    return result["id"]


def delete_assets(conn: Connection, ids: List[str]):
    _call("DELETE", conn, "/assets", json={"ids": list(ids), "force": False})


def _to_album(data: dict) -> Album:
    return Album(
        id=data["id"],
        name=data.get("albumName", ""),
        asset_count=data.get("assetCount", 0),
    )


def list_albums(conn: Connection) -> List[Album]:
    return [_to_album(a) for a in _call("GET", conn, "/albums") or []]


def create_album(conn: Connection, name: str, ids: List[str]) -> Album:
    data = _call("POST", conn, "/albums", json={"albumName": name, "assetIds": list(ids)})
    return _to_album(data)


def add_assets_to_album(conn: Connection, album_id: str, ids: List[str]) -> List[dict]:
    """
    Add ids into album_id. Assets already in the album are reported by the
    server, not treated as errors.
    """
    results = _call("PUT", conn, f"/albums/{album_id}/assets", json={"ids": list(ids)}) or []
    for r in results:
        if not r.get("success") and r.get("error") != "duplicate":
            log.warning("Can't add %s to album %s: %s", r.get("id"), album_id, r.get("error"))
    return results


class ImmichCatalog:
    """
    The synchronous catalog facade the ingest driver talks to.
    """

    def __init__(self, endpoint: str, key: str, device_id: str):
        self.conn = Connection(endpoint=endpoint, key=key, device_id=device_id)
        self._albums: Optional[Dict[str, Album]] = None

    def ping(self):
        ping_server(self.conn)

    def validate_connection(self) -> dict:
        return validate_connection(self.conn)

    def list_all_assets(self) -> List[RemoteAsset]:
        return list_all_assets(self.conn)

    def upload(self, asset) -> str:
        return upload_asset(self.conn, asset)

    def delete_assets(self, ids: List[str]):
        delete_assets(self.conn, ids)

    def list_albums(self) -> List[Album]:
        albums = list_albums(self.conn)
        self._albums = {a.id: a for a in albums}
        return albums

    def create_album(self, name: str, ids: List[str]) -> Album:
        return create_album(self.conn, name, ids)

    def update_album(self, album_id: str, ids: List[str]) -> Album:
        add_assets_to_album(self.conn, album_id, ids)
        if self._albums and album_id in self._albums:
            return self._albums[album_id]
        return Album(id=album_id, name="")
