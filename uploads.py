"""
Accepts uploaded EPUB files: validate, stage, then move into the library.

An upload is written to the staging directory first and only renamed into
the storage directory once every byte has landed, so a catalog scan never
sees a half-written book.
"""

import os
import re
import threading
import time
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional

from config import Settings
from errors import NoFileProvided, StorageWriteFailed, TooLarge, UnsupportedType

ALLOWED_EXTENSION = ".epub"
STORED_SUFFIX = ".kepub.epub"
CHUNK_SIZE = 64 * 1024  # 64KB chunks

_EPUB_SUFFIX_RE = re.compile(r"\.epub$", re.IGNORECASE)


def _now_millis() -> int:
    return int(time.time() * 1000)


class TimestampAllocator:
    """
    Hands out strictly increasing millisecond timestamps.

    Two uploads landing in the same millisecond get different stamps,
    so their stored names cannot collide within this process.
    """

    def __init__(self, clock=None):
        self._clock = clock or _now_millis
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            stamp = max(self._clock(), self._last + 1)
            self._last = stamp
            return stamp


_timestamps = TimestampAllocator()
_relocate_lock = threading.Lock()


def client_basename(filename: str) -> str:
    """Drop any directory part a client sent along with the filename."""
    return os.path.basename(filename.replace("\\", "/"))


def destination_filename(original_filename: str, timestamp: int) -> str:
    """
    Name under which an upload is stored.

    "MyBook.epub" at 1700000000000 -> "MyBook_1700000000000.kepub.epub"
    """
    base = _EPUB_SUFFIX_RE.sub("", client_basename(original_filename))
    return f"{base}_{timestamp}{STORED_SUFFIX}"


def validate_upload(
    original_filename: Optional[str], declared_size: Optional[int], max_bytes: int
) -> str:
    """Check name and size before anything touches the disk. Returns the basename."""
    name = client_basename(original_filename or "")
    if not name:
        raise NoFileProvided("No file selected")

    if os.path.splitext(name)[1].lower() != ALLOWED_EXTENSION:
        raise UnsupportedType("Only EPUB ebooks are supported!")

    if declared_size is not None and declared_size > max_bytes:
        raise TooLarge("File size is too large")

    return name


@contextmanager
def staged_file(staged_path: str) -> Iterator[str]:
    """
    Scope for a staged upload.

    The file is created exclusively before the scope opens, so a name
    already taken in the staging directory raises FileExistsError and the
    other file is left untouched. Whatever this call created is deleted on
    exit: after a successful move nothing is left, after any failure the
    partial file is.
    """
    with open(staged_path, "xb"):
        pass
    try:
        yield staged_path
    finally:
        if os.path.lexists(staged_path):
            try:
                os.remove(staged_path)
            except OSError as e:
                print(f"Error removing staged file {staged_path}: {e}")


def _write_stream(stream: BinaryIO, staged_path: str, max_bytes: int) -> int:
    written = 0
    with open(staged_path, "wb") as out:
        while True:
            data = stream.read(CHUNK_SIZE)
            if not data:
                break
            written += len(data)
            if written > max_bytes:
                raise TooLarge("File size is too large")
            out.write(data)
    return written


def _relocate(staged_path: str, stored_name: str, name: str, books_dir: str) -> str:
    """
    Rename the staged file into books_dir without replacing an existing book.

    Returns the final stored name, which only differs from stored_name when
    something outside this process already took that name.
    """
    with _relocate_lock:
        destination = os.path.join(books_dir, stored_name)
        while os.path.lexists(destination):
            stored_name = destination_filename(name, _timestamps.next())
            destination = os.path.join(books_dir, stored_name)
        os.replace(staged_path, destination)
    return stored_name


def accept_upload(
    settings: Settings,
    original_filename: Optional[str],
    stream: BinaryIO,
    declared_size: Optional[int] = None,
) -> str:
    """
    Store one uploaded EPUB and return its filename in the library.

    Raises NoFileProvided, UnsupportedType or TooLarge when the upload is
    rejected, StorageWriteFailed when it could not be written or moved.
    Nothing is left behind in either directory on failure.
    """
    name = validate_upload(original_filename, declared_size, settings.max_upload_bytes)

    stored_name = destination_filename(name, _timestamps.next())
    staged_path = os.path.join(settings.temp_dir, stored_name)

    try:
        with staged_file(staged_path):
            written = _write_stream(stream, staged_path, settings.max_upload_bytes)
            stored_name = _relocate(staged_path, stored_name, name, settings.books_dir)
    except OSError as e:
        print(f"Error saving file {stored_name}: {e}")
        raise StorageWriteFailed("Error saving file") from e

    print(f"Saved file: {os.path.join(settings.books_dir, stored_name)} ({written} bytes)")
    return stored_name
