import enum
import logging
import queue
import threading
from collections import Counter
from contextlib import closing
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from photoingest.asset_index import AdviceKind, AssetIndex, RemoteAsset
from photoingest.assets import LocalAsset
from photoingest.browsers import Browser, LocalFolderBrowser, TakeoutBrowser
from photoingest.config import Settings
from photoingest.errors import BatchMutationFailed, CatalogError, PhotoIngestError
from photoingest.mergedfs import READ_ERRORS


log = logging.getLogger(__name__)

_DONE = object()


class Outcome(enum.Enum):
    UPLOADED = "uploaded"
    REPLACED_AND_QUEUED = "replaced"
    SKIPPED_FILTERED = "filtered"
    SKIPPED_DUPLICATE = "duplicate"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunState:
    """
    Everything one run accumulates. Pending sets are flushed once, after the
    browser is exhausted, and never on cancellation.
    """

    delete_local: List[LocalAsset] = field(default_factory=list)
    delete_server: List[RemoteAsset] = field(default_factory=list)
    album_updates: Dict[str, List[str]] = field(default_factory=dict)
    outcomes: Counter = field(default_factory=Counter)
    errors: List[BatchMutationFailed] = field(default_factory=list)
    scanned: int = 0
    cancelled: bool = False

    @property
    def uploaded(self) -> int:
        return self.outcomes[Outcome.UPLOADED] + self.outcomes[Outcome.REPLACED_AND_QUEUED]

    @property
    def skipped(self) -> int:
        return self.outcomes[Outcome.SKIPPED_FILTERED] + self.outcomes[Outcome.SKIPPED_DUPLICATE]

    @property
    def failed(self) -> int:
        return self.outcomes[Outcome.FAILED]

    def add_to_album(self, album: str, asset_id: str):
        ids = self.album_updates.setdefault(album, [])
        if asset_id not in ids:
            ids.append(asset_id)

    def forget_remote(self, asset_id: str):
        """
        Drop an id from pending album updates (it is about to be deleted).
        """
        for ids in self.album_updates.values():
            if asset_id in ids:
                ids.remove(asset_id)


def handoff(items: Iterable, cancel: threading.Event, maxsize: int = 16) -> Iterator:
    """
    Run `items` in a producer thread and yield what it produces through a
    bounded queue. Exceptions raised by the producer are re-raised here.
    Closing the generator stops the producer and closes the assets left in
    the queue.
    """
    q = queue.Queue(maxsize=maxsize)
    stop = threading.Event()

    def put(item) -> bool:
        while not stop.is_set():
            try:
                q.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def produce():
        try:
            for item in items:
                if not put(item):
                    if isinstance(item, LocalAsset):
                        item.close()
                    return
        except Exception as e:  # re-raised in the consumer thread
            put(e)
        finally:
            put(_DONE)

    producer = threading.Thread(target=produce, name="photoingest-browser", daemon=True)
    producer.start()

    def drain():
        while True:
            try:
                item = q.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, LocalAsset):
                item.close()

    try:
        while not cancel.is_set():
            try:
                item = q.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _DONE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item
    finally:
        stop.set()
        drain()
        producer.join(timeout=5)
        drain()


class PhotoIngest:
    """
    Main class orchestrating an ingest run:
     - seed the index with the server's assets
     - browse the sources, filter, and decide per asset
     - upload, and remember replacements/deletions/album changes
     - flush albums and deletions at the end
    """

    def __init__(self, catalog, settings: Settings, cancel: Optional[threading.Event] = None):
        self.catalog = catalog
        self.settings = settings
        self.cancel = cancel or threading.Event()
        self.index: Optional[AssetIndex] = None
        self.state = RunState()

        # Takeout exports are copies; their files are never deleted
        self.delete_local = settings.delete_local and not settings.google_photos
        if settings.delete_local and settings.google_photos:
            log.warning("Local deletion is disabled when importing a Takeout export")

    def load_index(self):
        log.info("Get server's assets...")
        self.index = AssetIndex.from_catalog(self.catalog, self.settings.device_uuid)
        log.info("%d assets on the server.", len(self.index))

    def make_browser(self, fsys) -> Browser:
        if self.settings.google_photos:
            log.info("Browsing Google Takeout export...")
            return TakeoutBrowser(fsys, truncated_name_length=self.settings.truncated_name_length)
        log.info("Browsing folder(s)...")
        return LocalFolderBrowser(fsys)

    # -----------------------------
    # 1) MAIN LOOP
    # -----------------------------

    def run(self, fsys) -> RunState:
        """
        Ingest everything `fsys` holds. Returns the run state; on
        cancellation, state.cancelled is set and nothing is flushed.
        """
        self.state = RunState()
        if self.index is None:
            self.load_index()

        browser = self.make_browser(fsys)
        stream = handoff(browser.browse(self.cancel), self.cancel, self.settings.queue_size)
        with closing(stream) as assets:
            for asset in assets:
                if self.cancel.is_set():
                    asset.close()
                    break
                self.handle_asset(asset)

        if self.cancel.is_set():
            self.state.cancelled = True
            log.warning(
                "Cancelled after %d uploads. Album updates and deletions are not applied.",
                self.state.uploaded,
            )
            return self.state

        self.report_progress()
        self.summarize()
        self.flush()
        return self.state

    def handle_asset(self, asset: LocalAsset) -> Outcome:
        """
        Take one candidate to a terminal outcome. The asset is always
        closed on return.
        """
        state = self.state
        state.scanned += 1
        try:
            outcome = self._decide(asset)
        finally:
            asset.close()

        state.outcomes[outcome] += 1
        if self.settings.progress_every and state.scanned % self.settings.progress_every == 0:
            self.report_progress()
        return outcome

    def filter_reason(self, asset: LocalAsset) -> Optional[str]:
        s = self.settings
        if not s.keep_partner and asset.from_partner:
            return "from partner"
        if not s.keep_trashed and asset.trashed:
            return "trashed"
        if s.from_album and s.from_album not in asset.albums:
            return f"not in album {s.from_album!r}"
        if not s.include_extensions.include(asset.ext):
            return f"extension {asset.ext} not included"
        if s.exclude_extensions.exclude(asset.ext):
            return f"extension {asset.ext} excluded"
        if s.date_range.is_set():
            if asset.date_taken is None:
                log.error("Can't get capture date of the file. File %r skipped", asset.path)
                return "no capture date"
            if not s.date_range.in_range(asset.date_taken):
                return "out of date range"
        return None

    def _decide(self, asset: LocalAsset) -> Outcome:
        reason = self.filter_reason(asset)
        if reason:
            log.debug("%s skipped: %s", asset.path, reason)
            return Outcome.SKIPPED_FILTERED

        advice = self.index.should_upload(asset)

        if advice.kind is AdviceKind.SAME_ON_SERVER:
            if advice.server_asset.just_uploaded:
                return Outcome.SKIPPED_DUPLICATE
            log.info("%s: %s", asset.title, advice.message)
            self._queue_local_deletion(asset)
            return Outcome.SKIPPED_DUPLICATE

        log.info("%s: %s", asset.title, advice.message)
        if self.cancel.is_set():
            return Outcome.CANCELLED
        if not self.upload_asset(asset):
            return Outcome.FAILED

        self._queue_local_deletion(asset)
        if advice.kind is AdviceKind.SMALLER_ON_SERVER:
            self.state.delete_server.append(advice.server_asset)
            self.state.forget_remote(advice.server_asset.id)
            return Outcome.REPLACED_AND_QUEUED
        return Outcome.UPLOADED

    def _queue_local_deletion(self, asset: LocalAsset):
        if self.delete_local:
            self.state.delete_local.append(asset)

    def upload_asset(self, asset: LocalAsset) -> Optional[str]:
        """
        Upload and, on success only, index the asset and book its albums.
        Returns the new server id, or None when the upload failed.
        """
        try:
            remote_id = self.catalog.upload(asset)
        except (CatalogError,) + READ_ERRORS as e:
            log.error("Can't upload file: %r, %s", asset.path, e)
            return None

        self.index.add_local_asset(asset, remote_id)
        log.info("%r uploaded, %d uploaded", asset.title, self.state.uploaded + 1)

        s = self.settings
        if s.into_album:
            albums = [s.into_album]
        elif s.from_album:
            albums = [s.from_album]
        elif s.create_albums:
            albums = asset.albums
        else:
            albums = []
        for album in albums:
            self.state.add_to_album(album, remote_id)
        return remote_id

    def report_progress(self):
        st = self.state
        log.info(
            "%d media scanned, %d uploaded, %d skipped, %d failed",
            st.scanned, st.uploaded, st.skipped, st.failed,
        )

    def summarize(self):
        st = self.state
        if st.delete_server:
            log.warning("%d server assets to delete:", len(st.delete_server))
            for a in st.delete_server:
                log.warning("  %s (%s)", a.title, a.id)
        if st.delete_local:
            log.warning("%d local assets to delete:", len(st.delete_local))
            for a in st.delete_local:
                log.warning("  %s", a.path)

    # -----------------------------
    # 2) END OF RUN
    # -----------------------------

    def flush(self):
        self.update_albums()
        self.delete_server_assets()
        self.delete_local_assets()
        if self.state.errors:
            log.error("%d end-of-run operations failed", len(self.state.errors))

    def _failed(self, operation: str, target: str, e: Exception):
        err = BatchMutationFailed(operation, target, e)
        log.error("%s", err)
        self.state.errors.append(err)

    def update_albums(self):
        """
        Albums existing on the server (matched by name) get the new assets,
        the others are created.
        """
        updates = {name: ids for name, ids in self.state.album_updates.items() if ids}
        if not updates or self.cancel.is_set():
            return
        try:
            server_albums = self.catalog.list_albums()
        except CatalogError as e:
            self._failed("list albums", "", e)
            return

        for name, ids in updates.items():
            if self.cancel.is_set():
                return
            matches = [a for a in server_albums if a.name == name]
            try:
                if matches:
                    for album in matches:
                        log.info("Update the album %s", name)
                        self.catalog.update_album(album.id, ids)
                else:
                    log.info("Create the album %s", name)
                    self.catalog.create_album(name, ids)
            except CatalogError as e:
                self._failed("update album" if matches else "create album", name, e)

    def delete_server_assets(self):
        ids = []
        for a in self.state.delete_server:
            if a.id not in ids:
                ids.append(a.id)
        if not ids or self.cancel.is_set():
            return
        log.warning("%d server assets to delete.", len(ids))
        try:
            self.catalog.delete_assets(ids)
        except CatalogError as e:
            self._failed("delete server assets", ",".join(ids), e)

    def delete_local_assets(self):
        if not self.state.delete_local:
            return
        log.info("%d local assets to delete.", len(self.state.delete_local))
        for asset in self.state.delete_local:
            if self.cancel.is_set():
                return
            log.warning("delete file %r", asset.path)
            try:
                asset.remove()
            except (OSError, PhotoIngestError) as e:
                self._failed("delete local file", asset.path, e)
