"""CarStore custom exception module."""


class CarStoreError(Exception):
    """Base class of every exception raised by CarStore."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class ConfigurationError(CarStoreError):
    """Custom exception thrown when credentials, a token or a bucket are missing or
    malformed. Always raised before any network activity takes place."""


class ValidationError(CarStoreError):
    """Custom exception thrown when a token metadata record or an input argument is
    malformed. `field` names the offending field when there is one."""

    def __init__(self, message, field=None, errors=None):
        super().__init__(message, errors)
        self.field = field


class EncodingError(CarStoreError):
    """Custom exception thrown when content cannot be packed into a DAG or an
    archive cannot be produced."""


class EmptyInputError(EncodingError):
    """Custom exception thrown when the content to pack has a total size of 0 bytes."""


class MixedRootsError(EncodingError):
    """Custom exception thrown when the paths of a directory do not share a single
    top-level directory (ex. `foo/bar.png` and `bla/baz.json`)."""


class ArchiveFormatError(EncodingError):
    """Custom exception thrown when an archive is truncated, malformed or contains a
    block whose bytes do not match its content identifier."""


class BlockNotFoundError(CarStoreError):
    """Custom exception thrown when a block store is asked for a cid it does not hold."""


class BlockStoreClosedError(CarStoreError):
    """Custom exception thrown when a block store is used after it has been closed."""


class ProtocolError(CarStoreError):
    """Custom exception thrown when a transport returns a value that violates its
    contract (ex. non-numeric or decreasing upload progress)."""


class UploadFailedError(CarStoreError):
    """Custom exception thrown when a part could not be uploaded after exhausting
    every allowed attempt."""


class MissingRemoteCIDError(CarStoreError):
    """Custom exception thrown when an upload succeeded but the remote store did not
    return the expected `cid` metadata tag for the object."""


class IncompleteRemoteRecordError(CarStoreError):
    """Custom exception thrown when the remote record of an object lacks its `cid`
    tag, its content length or its last modified date."""


class ObjectNotFoundError(CarStoreError):
    """Custom exception thrown when the remote store has no object for a given key."""
