class PhotoIngestError(Exception):
    """
    Base class for every error raised by photoingest.
    """


class SourceUnavailable(PhotoIngestError):
    """
    A configured source (folder or archive) cannot be opened.
    Fatal: raised before browsing starts.
    """


class NotFound(PhotoIngestError, FileNotFoundError):
    """
    A path is not provided by any root of a merged file system.
    """


class MetadataUnavailable(PhotoIngestError):
    """
    A JSON sidecar is missing or cannot be parsed.
    """


class CatalogError(PhotoIngestError):
    """
    The remote catalog answered with an error, or could not be reached.
    """

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class UploadFailed(CatalogError):
    pass


class BatchMutationFailed(PhotoIngestError):
    """
    One sub-operation of the end-of-run flush failed (album update/create,
    server deletion or a local deletion).
    """

    def __init__(self, operation: str, target: str, cause: Exception):
        super().__init__(f"{operation} {target!r} failed: {cause}")
        self.operation = operation
        self.target = target
        self.cause = cause
