import json
import logging
import logging.handlers
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from photoingest.browsers import DEFAULT_TRUNCATED_NAME_LENGTH
from photoingest.filters import DateRange, ExtensionList, include_type


log = logging.getLogger(__name__)

# === PATH CONFIGURATION ===
CONFIG_FILE = Path("upload_config.json")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

DEFAULTS = {
    "server": "",
    "key": "",
    "device_uuid": "",
    "google_photos": False,
    "delete_local": False,
    "into_album": "",
    "from_album": "",
    "create_albums": False,
    "keep_partner": True,
    "keep_trashed": False,
    "date_range": "",
    "include_extensions": [],
    "exclude_extensions": [],
    "include_type": "",
    "truncated_name_length": DEFAULT_TRUNCATED_NAME_LENGTH,
    "queue_size": 16,
    "progress_every": 100,
    "log_level": "INFO",
    "log_file": "",
}


def load_user_config(path: Optional[Path] = None) -> dict:
    """
    Load the user's upload_config.json and merge it over DEFAULTS.
    Unknown keys are ignored with a warning.
    """
    path = Path(path) if path else CONFIG_FILE
    cfg = dict(DEFAULTS)
    if not path.exists():
        log.info("Config file '%s' not found. Using defaults.", path)
        return cfg

    with open(path, "r", encoding="utf-8") as f:
        user = json.load(f)
    if not isinstance(user, dict):
        raise ValueError(f"{path}: expected a JSON object")

    for key, value in user.items():
        if key not in DEFAULTS:
            log.warning("Unknown config key '%s' in %s, ignored", key, path)
            continue
        cfg[key] = value
    return cfg


def _extensions(value) -> ExtensionList:
    if isinstance(value, str):
        return ExtensionList.parse(value)
    return ExtensionList(value or [])


@dataclass
class Settings:
    """
    The validated run configuration: config file values overridden by
    command-line flags.
    """

    server: str = ""
    key: str = ""
    device_uuid: str = ""
    google_photos: bool = False
    delete_local: bool = False
    into_album: str = ""
    from_album: str = ""
    create_albums: bool = False
    keep_partner: bool = True
    keep_trashed: bool = False
    date_range: DateRange = field(default_factory=DateRange)
    include_extensions: ExtensionList = field(default_factory=ExtensionList)
    exclude_extensions: ExtensionList = field(default_factory=ExtensionList)
    truncated_name_length: int = DEFAULT_TRUNCATED_NAME_LENGTH
    queue_size: int = 16
    progress_every: int = 100
    log_level: str = "INFO"
    log_file: str = ""

    @classmethod
    def from_config(cls, cfg: dict) -> "Settings":
        """
        Build settings from a merged config dict. Raises ValueError on
        invalid values (date range, include-type, sizes).
        """
        included = _extensions(cfg.get("include_extensions"))
        if cfg.get("include_type"):
            # The type shortcut replaces any explicit list
            included = include_type(cfg["include_type"])

        settings = cls(
            server=cfg.get("server") or "",
            key=cfg.get("key") or "",
            device_uuid=cfg.get("device_uuid") or socket.gethostname(),
            google_photos=bool(cfg.get("google_photos")),
            delete_local=bool(cfg.get("delete_local")),
            into_album=cfg.get("into_album") or "",
            from_album=cfg.get("from_album") or "",
            create_albums=bool(cfg.get("create_albums")),
            keep_partner=bool(cfg.get("keep_partner", True)),
            keep_trashed=bool(cfg.get("keep_trashed")),
            date_range=DateRange.parse(cfg.get("date_range") or ""),
            include_extensions=included,
            exclude_extensions=_extensions(cfg.get("exclude_extensions")),
            truncated_name_length=int(cfg.get("truncated_name_length") or DEFAULT_TRUNCATED_NAME_LENGTH),
            queue_size=int(cfg.get("queue_size") or 16),
            progress_every=int(cfg.get("progress_every") or 100),
            log_level=str(cfg.get("log_level") or "INFO").upper(),
            log_file=cfg.get("log_file") or "",
        )
        if settings.truncated_name_length < 1:
            raise ValueError("truncated_name_length must be positive")
        if settings.queue_size < 1:
            raise ValueError("queue_size must be positive")
        return settings


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Console logging for the photoingest loggers, plus an optional rotating
    log file.
    """
    root = logging.getLogger("photoingest")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()
    root.propagate = False

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT, "%H:%M:%S"))
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)
    return root
