import logging
from pathlib import Path

from photoingest.errors import NotFound


log = logging.getLogger(__name__)


def delete_local_file(path: Path):
    """
    Delete a local file. Errors go to the caller, which reports them
    one by one.
    """
    path = Path(path)
    if not path.exists():
        raise NotFound(str(path))
    if path.is_dir():
        raise IsADirectoryError(str(path))
    path.unlink()
    log.warning("Deleted local file: %s", path)
