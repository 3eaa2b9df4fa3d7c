"""Tests for the catalog scan and title helpers."""
from __future__ import annotations

import os

import pytest

from errors import StorageUnavailable
from library import (
    BookEntry,
    derive_title,
    escape_html,
    format_size,
    is_book_filename,
    list_books,
)


def _write(directory, name: str, data: bytes = b"PK\x03\x04", mtime: float | None = None):
    path = directory / name
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_derive_title_strips_suffixes_underscores_and_timestamp():
    assert derive_title("Some_Book_Title_1700000000000.kepub.epub") == "Some Book Title"


def test_derive_title_for_uploaded_name():
    assert derive_title("MyBook_1700000000000.kepub.epub") == "MyBook"


def test_derive_title_keeps_shorter_digit_runs():
    assert derive_title("Catch_22.epub") == "Catch 22"


def test_derive_title_handles_plain_kepub():
    assert derive_title("Notes.kepub") == "Notes"


def test_derive_title_escapes_angle_brackets():
    assert derive_title("<b>Bold</b>.epub") == "&lt;b&gt;Bold&lt;/b&gt;"


def test_derive_title_only_strips_ascii_timestamps():
    arabic_indic = "\u0661" * 13
    assert derive_title(f"Book_{arabic_indic}.epub") == f"Book {arabic_indic}"


def test_derive_title_requires_stamp_at_very_end():
    assert derive_title("Book_1700000000000\n.epub") == "Book 1700000000000"


def test_escape_html_only_touches_angle_brackets():
    assert escape_html("a < b & c > d") == "a &lt; b & c &gt; d"


def test_format_size_uses_two_decimals():
    assert format_size(0) == "0.00 MB"
    assert format_size(1536 * 1024) == "1.50 MB"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("book.epub", True),
        ("book.KEPUB.EPUB", True),
        ("book.kepub", True),
        ("book.Epub", True),
        ("book.pdf", False),
        ("epub", False),
    ],
)
def test_is_book_filename(name, expected):
    assert is_book_filename(name) is expected


def test_list_books_filters_and_sorts_newest_first(tmp_path):
    _write(tmp_path, "old.epub", mtime=1_000_000)
    _write(tmp_path, "new.KEPUB.EPUB", mtime=3_000_000)
    _write(tmp_path, "mid.kepub", mtime=2_000_000)
    _write(tmp_path, "readme.txt", mtime=4_000_000)
    (tmp_path / "folder.epub").mkdir()

    books = list_books(str(tmp_path))

    assert [b.filename for b in books] == ["new.KEPUB.EPUB", "mid.kepub", "old.epub"]
    times = [b.modified_at for b in books]
    assert times == sorted(times, reverse=True)


def test_list_books_skips_empty_files_by_default(tmp_path):
    _write(tmp_path, "full.epub")
    _write(tmp_path, "empty.epub", data=b"")

    assert [b.filename for b in list_books(str(tmp_path))] == ["full.epub"]

    names = {b.filename for b in list_books(str(tmp_path), include_empty=True)}
    assert names == {"full.epub", "empty.epub"}


def test_list_books_reports_size_and_metadata(tmp_path):
    _write(tmp_path, "A_Book_1700000000000.kepub.epub", data=b"x" * 2048, mtime=1_700_000_000)

    (book,) = list_books(str(tmp_path))

    assert book.size_bytes == 2048
    assert book.display_size == "0.00 MB"
    assert book.display_title == "A Book"
    assert book.to_dict() == {
        "name": "A_Book_1700000000000.kepub.epub",
        "size": "0.00 MB",
        "sizeBytes": 2048,
        "dateAdded": "2023-11-14T22:13:20.000Z",
    }


def test_list_books_skips_dangling_links(tmp_path, capsys):
    _write(tmp_path, "real.epub")
    os.symlink(tmp_path / "missing.epub", tmp_path / "broken.epub")

    assert [b.filename for b in list_books(str(tmp_path))] == ["real.epub"]
    assert "skipping broken.epub" in capsys.readouterr().out


def test_list_books_missing_directory_raises(tmp_path):
    with pytest.raises(StorageUnavailable):
        list_books(str(tmp_path / "nope"))


def test_book_entry_display_properties():
    entry = BookEntry(filename="x_y.epub", size_bytes=3 * 1024 * 1024, modified_at=0.0)
    assert entry.display_title == "x y"
    assert entry.display_size == "3.00 MB"
