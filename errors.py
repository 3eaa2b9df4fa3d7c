"""Errors raised by the catalog and the upload handler."""


class LibraryError(Exception):
    """Base class for every failure the library reports to a client."""


class StorageUnavailable(LibraryError):
    """The storage directory cannot be read."""


class StorageWriteFailed(LibraryError):
    """An upload could not be staged or moved into the storage directory."""


class UploadError(LibraryError):
    """An upload was rejected before anything was stored."""


class NoFileProvided(UploadError):
    pass


class UnsupportedType(UploadError):
    pass


class TooLarge(UploadError):
    pass
