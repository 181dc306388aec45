import datetime
import json
import threading
import zipfile

import pytest

from photoingest.asset_index import AssetIndex, RemoteAsset
from photoingest.assets import LocalAsset
from photoingest.config import Settings
from photoingest.errors import CatalogError, UploadFailed
from photoingest.filters import DateRange, ExtensionList
from photoingest.immich_api import Album
from photoingest.mergedfs import DirectoryRoot, MergedFileSystem, ZipRoot
from photoingest.browsers import Browser, LocalFolderBrowser, TakeoutBrowser
from photoingest.syncer import Outcome, PhotoIngest, handoff

DEVICE = "test-device"


class DummyCatalog:
    """
    In-memory stand-in for the remote catalog. Records every call.
    """

    def __init__(self, assets=(), albums=(), fail_uploads=(), fail_albums=()):
        self.assets = list(assets)
        self.albums = list(albums)
        self.fail_uploads = set(fail_uploads)
        self.fail_albums = set(fail_albums)
        self.uploaded = []
        self.deleted = []
        self.created = {}
        self.updated = {}
        self.on_upload = None
        self._next = 0

    def list_all_assets(self):
        return list(self.assets)

    def upload(self, asset):
        if asset.title in self.fail_uploads:
            raise UploadFailed(f"refused {asset.title}")
        data = asset.open().read()
        assert len(data) == asset.size
        self._next += 1
        remote_id = f"id-{self._next}"
        self.uploaded.append((asset.title, remote_id))
        if self.on_upload:
            self.on_upload(asset)
        return remote_id

    def delete_assets(self, ids):
        self.deleted.append(list(ids))

    def list_albums(self):
        return list(self.albums)

    def create_album(self, name, ids):
        if name in self.fail_albums:
            raise CatalogError(f"can't create {name}")
        self.created[name] = list(ids)
        return Album(id=f"album-{name}", name=name)

    def update_album(self, album_id, ids):
        self.updated[album_id] = list(ids)
        return Album(id=album_id, name="")


def settings(**kw):
    kw.setdefault("device_uuid", DEVICE)
    kw.setdefault("queue_size", 2)
    return Settings(**kw)


def make_fs(tmp_path, files):
    for name, data in files.items():
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    return MergedFileSystem([DirectoryRoot(tmp_path)])


def test_new_assets_are_uploaded_and_indexed(tmp_path):
    fsys = make_fs(tmp_path, {"a.jpg": b"aaaa", "b.mov": b"bb", "notes.txt": b"x"})
    catalog = DummyCatalog()
    ingest = PhotoIngest(catalog, settings())

    state = ingest.run(fsys)

    assert [t for t, _ in catalog.uploaded] == ["a.jpg", "b.mov"]
    assert state.scanned == 2
    assert state.uploaded == 2
    assert state.outcomes[Outcome.UPLOADED] == 2
    assert ingest.index.get("a.jpg").just_uploaded
    assert catalog.deleted == []
    assert not state.cancelled


def test_beach_scenario_replaces_then_skips(tmp_path):
    fsys = make_fs(tmp_path, {"beach.jpg": b"x" * 250})
    catalog = DummyCatalog(assets=[RemoteAsset(id="old", title="beach.jpg", size=100, device_id=DEVICE)])
    ingest = PhotoIngest(catalog, settings())

    state = ingest.run(fsys)
    assert state.outcomes[Outcome.REPLACED_AND_QUEUED] == 1
    assert catalog.deleted == [["old"]]

    # A second candidate with the same fingerprint in the same run
    again = LocalAsset(fsys=fsys, path="beach.jpg", title="beach.jpg", size=250)
    assert ingest.handle_asset(again) is Outcome.SKIPPED_DUPLICATE
    assert [a.id for a in ingest.state.delete_server] == ["old"]
    assert ingest.state.delete_local == []


def test_failed_upload_leaves_index_untouched(tmp_path):
    fsys = make_fs(tmp_path, {"bad.jpg": b"x" * 300, "good.jpg": b"g"})
    catalog = DummyCatalog(
        assets=[RemoteAsset(id="old", title="bad.jpg", size=100, device_id=DEVICE)],
        fail_uploads={"bad.jpg"},
    )
    ingest = PhotoIngest(catalog, settings(delete_local=True))

    state = ingest.run(fsys)

    assert state.failed == 1
    assert [t for t, _ in catalog.uploaded] == ["good.jpg"]
    assert ingest.index.get("bad.jpg").id == "old"
    assert not ingest.index.get("bad.jpg").just_uploaded
    assert catalog.deleted == []
    # only the uploaded file is deleted locally
    assert (tmp_path / "bad.jpg").exists()
    assert not (tmp_path / "good.jpg").exists()


def test_local_files_are_deleted_at_end_of_run(tmp_path):
    fsys = make_fs(tmp_path, {"a.jpg": b"a", "b.jpg": b"b", "c.jpg": b"c"})
    catalog = DummyCatalog(assets=[RemoteAsset(id="r", title="c.jpg", size=1, device_id=DEVICE)])

    still_there = []
    catalog.on_upload = lambda asset: still_there.append((tmp_path / "a.jpg").exists())

    state = PhotoIngest(catalog, settings(delete_local=True)).run(fsys)

    assert still_there == [True, True]
    assert state.outcomes[Outcome.SKIPPED_DUPLICATE] == 1
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        assert not (tmp_path / name).exists()


def test_local_deletion_failures_do_not_stop_the_others(tmp_path):
    fsys = make_fs(tmp_path, {"a.jpg": b"a", "b.jpg": b"b"})
    catalog = DummyCatalog()

    def vanish(asset):
        if asset.title == "a.jpg":
            (tmp_path / "a.jpg").unlink()

    catalog.on_upload = vanish
    state = PhotoIngest(catalog, settings(delete_local=True)).run(fsys)

    assert len(state.errors) == 1
    assert state.errors[0].operation == "delete local file"
    assert not (tmp_path / "b.jpg").exists()


def test_takeout_never_deletes_local_files(tmp_path):
    fsys = make_fs(tmp_path, {"Trip/a.jpg": b"a"})
    PhotoIngest(DummyCatalog(), settings(google_photos=True, delete_local=True)).run(fsys)
    assert (tmp_path / "Trip" / "a.jpg").exists()


def test_cancel_stops_run_without_flushing(tmp_path):
    fsys = make_fs(tmp_path, {f"{i}.jpg": b"x" * (i + 1) for i in range(6)})
    catalog = DummyCatalog(assets=[RemoteAsset(id="old", title="0.jpg", size=0, device_id=DEVICE)])
    cancel = threading.Event()
    catalog.on_upload = lambda asset: cancel.set()

    ingest = PhotoIngest(catalog, settings(delete_local=True, into_album="Imported"), cancel)
    state = ingest.run(fsys)

    assert state.cancelled
    assert len(catalog.uploaded) == 1
    assert catalog.deleted == []
    assert catalog.created == {}
    assert (tmp_path / "0.jpg").exists()
    # what was queued stays queued
    assert [a.id for a in state.delete_server] == ["old"]


def test_albums_are_created_or_updated(tmp_path):
    root = tmp_path
    for album in ("Family", "Trip"):
        p = root / album
        p.mkdir()
        (p / "shared.jpg").write_bytes(b"same")
        (p / "shared.jpg.json").write_text(json.dumps({
            "title": "shared.jpg", "photoTakenTime": {"timestamp": "1600000000"},
        }))
    (root / "Trip" / "solo.jpg").write_bytes(b"solo")
    fsys = MergedFileSystem([DirectoryRoot(root)])

    catalog = DummyCatalog(albums=[Album(id="fam", name="Family")])
    state = PhotoIngest(catalog, settings(google_photos=True, create_albums=True)).run(fsys)

    assert len(catalog.uploaded) == 2
    ids = dict(catalog.uploaded)
    assert catalog.updated == {"fam": [ids["shared.jpg"]]}
    assert catalog.created == {"Trip": [ids["shared.jpg"], ids["solo.jpg"]]}
    assert state.errors == []


def test_into_album_collects_every_upload(tmp_path):
    fsys = make_fs(tmp_path, {"a.jpg": b"a", "sub/b.jpg": b"b"})
    catalog = DummyCatalog()
    PhotoIngest(catalog, settings(into_album="Imported")).run(fsys)
    assert catalog.created == {"Imported": ["id-1", "id-2"]}


def test_one_album_failure_does_not_block_others(tmp_path):
    fsys = make_fs(tmp_path, {"A/a.jpg": b"a", "B/b.jpg": b"b"})
    catalog = DummyCatalog(fail_albums={"A"})
    state = PhotoIngest(catalog, settings(google_photos=True, create_albums=True)).run(fsys)

    assert list(catalog.created) == ["B"]
    assert len(state.errors) == 1
    assert state.errors[0].operation == "create album"
    assert state.errors[0].target == "A"


def test_filters(tmp_path):
    fsys = make_fs(tmp_path, {})
    ingest = PhotoIngest(DummyCatalog(), settings(
        keep_partner=False,
        keep_trashed=False,
        from_album="Trip",
        exclude_extensions=ExtensionList([".gif"]),
        date_range=DateRange.parse("2020"),
    ))
    when = datetime.datetime(2020, 5, 1, tzinfo=datetime.timezone.utc)

    def asset(**kw):
        kw.setdefault("path", "x.jpg")
        kw.setdefault("albums", ["Trip"])
        kw.setdefault("date_taken", when)
        return LocalAsset(fsys=fsys, title=kw["path"], size=1, **kw)

    assert ingest.filter_reason(asset()) is None
    assert ingest.filter_reason(asset(from_partner=True)) == "from partner"
    assert ingest.filter_reason(asset(trashed=True)) == "trashed"
    assert "not in album" in ingest.filter_reason(asset(albums=["Other"]))
    assert "excluded" in ingest.filter_reason(asset(path="x.GIF"))
    assert ingest.filter_reason(asset(date_taken=None)) == "no capture date"
    assert ingest.filter_reason(asset(date_taken=datetime.datetime(2021, 1, 1))) == "out of date range"


def test_include_list_filters_extensions(tmp_path):
    fsys = make_fs(tmp_path, {"a.jpg": b"a", "b.mp4": b"b"})
    catalog = DummyCatalog()
    state = PhotoIngest(catalog, settings(include_extensions=ExtensionList([".mp4"]))).run(fsys)
    assert [t for t, _ in catalog.uploaded] == ["b.mp4"]
    assert state.outcomes[Outcome.SKIPPED_FILTERED] == 1


def test_asset_is_closed_on_every_path(tmp_path):
    fsys = make_fs(tmp_path, {"ok.jpg": b"ok", "bad.jpg": b"bad"})
    catalog = DummyCatalog(fail_uploads={"bad.jpg"})
    ingest = PhotoIngest(catalog, settings())
    ingest.index = AssetIndex(device_id=DEVICE)

    for name in ("ok.jpg", "bad.jpg"):
        asset = LocalAsset(fsys=fsys, path=name, title=name, size=(tmp_path / name).stat().st_size)
        ingest.handle_asset(asset)
        assert asset._handle is None


def test_initial_listing_failure_is_fatal(tmp_path):
    class Broken(DummyCatalog):
        def list_all_assets(self):
            raise CatalogError("server down")

    with pytest.raises(CatalogError):
        PhotoIngest(Broken(), settings()).run(make_fs(tmp_path, {"a.jpg": b"a"}))


def test_handoff_forwards_items_and_errors():
    cancel = threading.Event()
    assert list(handoff(iter(range(10)), cancel, maxsize=2)) == list(range(10))

    def boom():
        yield 1
        raise ValueError("browse failed")

    stream = handoff(boom(), cancel, maxsize=1)
    assert next(stream) == 1
    with pytest.raises(ValueError):
        next(stream)


def test_handoff_stops_on_cancel():
    cancel = threading.Event()
    stream = handoff(iter(range(1000)), cancel, maxsize=1)
    assert next(stream) == 0
    cancel.set()
    assert list(stream) == []


def test_damaged_archive_member_fails_alone(tmp_path):
    archive = tmp_path / "photos.zip"
    payload = b"damaged member " * 8
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_STORED) as zf:
        zf.writestr("a.jpg", payload)
        zf.writestr("b.jpg", b"fine")
    raw = bytearray(archive.read_bytes())
    raw[raw.index(payload) + 3] ^= 0xFF
    archive.write_bytes(bytes(raw))

    catalog = DummyCatalog()
    with MergedFileSystem([ZipRoot(archive)]) as fsys:
        state = PhotoIngest(catalog, settings()).run(fsys)

    assert [t for t, _ in catalog.uploaded] == ["b.jpg"]
    assert state.failed == 1
    assert state.uploaded == 1
    assert not state.cancelled


def test_unusable_sidecar_timestamp_does_not_stop_the_run(tmp_path):
    fsys = make_fs(tmp_path, {
        "Trip/bad.jpg": b"bad",
        "Trip/bad.jpg.json": json.dumps({"title": "bad.jpg", "photoTakenTime": {"timestamp": "1e20"}}).encode(),
        "Trip/good.jpg": b"good",
    })
    catalog = DummyCatalog()
    state = PhotoIngest(catalog, settings(google_photos=True)).run(fsys)

    assert sorted(t for t, _ in catalog.uploaded) == ["bad.jpg", "good.jpg"]
    assert state.failed == 0


def test_make_browser_follows_source_layout(tmp_path):
    fsys = make_fs(tmp_path, {})
    folder = PhotoIngest(DummyCatalog(), settings()).make_browser(fsys)
    takeout = PhotoIngest(DummyCatalog(), settings(google_photos=True)).make_browser(fsys)
    assert isinstance(folder, LocalFolderBrowser) and isinstance(folder, Browser)
    assert isinstance(takeout, TakeoutBrowser) and isinstance(takeout, Browser)
