#!/usr/bin/env python3
"""
Entry point for the photo ingest tool.
"""

import argparse
import logging
import signal
import sys
import threading

from photoingest.config import Settings, configure_logging, load_user_config
from photoingest.errors import PhotoIngestError
from photoingest.immich_api import ImmichCatalog
from photoingest.mergedfs import MergedFileSystem
from photoingest.syncer import PhotoIngest


log = logging.getLogger("photoingest.main")

# command-line option -> config key
FLAG_KEYS = {
    "server": "server",
    "key": "key",
    "device_uuid": "device_uuid",
    "google_photos": "google_photos",
    "delete": "delete_local",
    "album": "into_album",
    "from_album": "from_album",
    "create_albums": "create_albums",
    "keep_partner": "keep_partner",
    "keep_trashed": "keep_trashed",
    "date_range": "date_range",
    "include_extensions": "include_extensions",
    "exclude_extensions": "exclude_extensions",
    "include_type": "include_type",
    "log_level": "log_level",
    "log_file": "log_file",
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="photoingest",
        description="Upload photos and videos from folders, zip archives or a Google Takeout export.",
    )
    p.add_argument("paths", nargs="+", help="Folders and/or .zip archives to import")
    p.add_argument("--config", default=None, help="JSON config file (default: upload_config.json)")
    p.add_argument("--server", default=None, help="Server URL, e.g. http://photos.local:2283")
    p.add_argument("--key", default=None, help="API key")
    p.add_argument("--device-uuid", default=None, help="Device id recorded with uploads (default: host name)")
    p.add_argument("--google-photos", action="store_true", default=None,
                   help="Sources are a Google Photos Takeout export")
    p.add_argument("--delete", action="store_true", default=None,
                   help="Delete local files once they are on the server")
    p.add_argument("--album", default=None, help="Put every uploaded asset into this album")
    p.add_argument("--from-album", default=None, help="Only import assets of this source album")
    p.add_argument("--create-albums", action="store_true", default=None,
                   help="Recreate the source albums on the server")
    p.add_argument("--keep-partner", action=argparse.BooleanOptionalAction, default=None,
                   help="Import assets shared by a partner (default: yes)")
    p.add_argument("--keep-trashed", action=argparse.BooleanOptionalAction, default=None,
                   help="Import trashed assets (default: no)")
    p.add_argument("--date-range", default=None,
                   help="Only import assets taken in this range: YYYY, YYYY-MM, YYYY-MM-DD or FROM,TO")
    p.add_argument("--include-extensions", default=None,
                   help="Comma-separated list of extensions to include, e.g. .jpg,.heic (default: all)")
    p.add_argument("--exclude-extensions", default=None,
                   help="Comma-separated list of extensions to exclude, e.g. .gif (default: none)")
    p.add_argument("--include-type", choices=["video", "picture"], default=None,
                   help="Only import this type of file. Overrides --include-extensions")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    p.add_argument("--log-file", default=None, help="Also write the log to this file")
    return p


def settings_from_args(args: argparse.Namespace) -> Settings:
    """
    Load the config file, apply the flags given on the command line.
    """
    cfg = load_user_config(args.config)
    for flag, key in FLAG_KEYS.items():
        value = getattr(args, flag)
        if value is not None:
            cfg[key] = value
    return Settings.from_config(cfg)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args)
    except (ValueError, OSError) as e:
        parser.error(str(e))
    if not settings.server or not settings.key:
        parser.error("a server URL and an API key are required (--server, --key or the config file)")

    configure_logging(settings.log_level, settings.log_file)

    cancel = threading.Event()

    def on_interrupt(signum, frame):
        print("\nCtrl+C received. Gracefully shutting down...")
        cancel.set()

    signal.signal(signal.SIGINT, on_interrupt)

    catalog = ImmichCatalog(settings.server, settings.key, settings.device_uuid)
    try:
        with MergedFileSystem.from_paths(args.paths) as fsys:
            catalog.ping()
            log.info("Server status: OK")
            user = catalog.validate_connection() or {}
            log.info("Connected, user: %s", user.get("email", "?"))

            syncer = PhotoIngest(catalog, settings, cancel)
            state = syncer.run(fsys)
    except (PhotoIngestError, OSError) as e:
        log.error("%s", e)
        return 1

    if state.cancelled:
        return 130
    if state.errors:
        log.error("Done, with %d errors.", len(state.errors))
        return 1
    log.info("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
