"""
Reads the storage directory into a catalog of books that can be listed and served.
"""

import os
import re
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List

from errors import StorageUnavailable

# Longest suffix first so ".kepub.epub" is reported as one extension.
BOOK_EXTENSIONS = (".kepub.epub", ".kepub", ".epub")

EPUB_MEDIA_TYPE = "application/epub+zip"

# Millisecond epoch stamps appended by the upload handler.
_TIMESTAMP_SUFFIX_RE = re.compile(r"[0-9]{13}\Z")


# --- Data structures ---


@dataclass
class BookEntry:
    """One book file in the storage directory, recomputed on every scan."""

    filename: str  # On-disk name, unique within the directory
    size_bytes: int
    modified_at: float  # st_mtime, also the sort key

    @property
    def display_size(self) -> str:
        return format_size(self.size_bytes)

    @property
    def display_title(self) -> str:
        return derive_title(self.filename)

    @property
    def modified_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.modified_at, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape served by /api/books."""
        added = self.modified_datetime.isoformat(timespec="milliseconds")
        return {
            "name": self.filename,
            "size": self.display_size,
            "sizeBytes": self.size_bytes,
            "dateAdded": added.replace("+00:00", "Z"),
        }


# --- Utilities ---


def is_book_filename(filename: str) -> bool:
    return filename.lower().endswith(BOOK_EXTENSIONS)


def format_size(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.2f} MB"


def escape_html(text: str) -> str:
    """Escape angle brackets so a title can be embedded in markup."""
    return text.replace("<", "&lt;").replace(">", "&gt;")


def derive_title(filename: str) -> str:
    """
    Turn a stored filename into a readable, HTML-safe title.

    "Some_Book_Title_1700000000000.kepub.epub" -> "Some Book Title"
    """
    title = filename.replace(".kepub", "", 1)
    title = title.replace(".epub", "", 1)
    title = title.replace("_", " ")
    title = _TIMESTAMP_SUFFIX_RE.sub("", title)
    return escape_html(title.strip())


# --- Catalog ---


def list_books(books_dir: str, include_empty: bool = False) -> List[BookEntry]:
    """
    Scan books_dir and return its books, newest first.

    Zero-byte files are left out unless include_empty is set; they are
    usually uploads that never completed.
    """
    try:
        names = os.listdir(books_dir)
    except OSError as e:
        raise StorageUnavailable(f"Cannot read {books_dir}: {e}") from e

    books = []
    for name in names:
        if not is_book_filename(name):
            continue

        file_path = os.path.join(books_dir, name)
        try:
            stats = os.stat(file_path)
        except OSError as e:
            # Removed between listdir and stat, or a dangling link
            print(f"Warning: skipping {name}: {e}")
            continue

        if not stat.S_ISREG(stats.st_mode):
            continue
        if stats.st_size == 0 and not include_empty:
            continue

        books.append(
            BookEntry(
                filename=name,
                size_bytes=stats.st_size,
                modified_at=stats.st_mtime,
            )
        )

    # sort() is stable, so equal mtimes keep their listing order
    books.sort(key=lambda book: book.modified_at, reverse=True)
    return books


def book_path(books_dir: str, filename: str) -> str:
    """Path of a stored book, with any directory part of filename dropped."""
    return os.path.join(books_dir, os.path.basename(filename))
