import argparse
import os
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import (
    HTMLResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from config import Settings
from errors import StorageUnavailable, StorageWriteFailed, TooLarge, UploadError
from library import EPUB_MEDIA_TYPE, book_path, list_books
from uploads import CHUNK_SIZE, accept_upload

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

templates = Jinja2Templates(directory=TEMPLATES_DIR)

# Room for multipart boundaries and part headers around the file itself
MULTIPART_OVERHEAD = 16 * 1024


# Wire format of /api/books, kept compatible with existing clients
class BookResponse(BaseModel):
    name: str
    size: str
    sizeBytes: int
    dateAdded: str


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the web app around one Settings value."""
    settings = settings or Settings.from_env()
    settings.ensure_directories()

    app = FastAPI(title="kepub-shelf")
    app.state.settings = settings

    # --- Error handlers ---

    @app.exception_handler(UploadError)
    async def upload_rejected(request: Request, exc: UploadError):
        print(f"Upload rejected: {exc}")
        return PlainTextResponse(str(exc), status_code=400)

    @app.exception_handler(StorageWriteFailed)
    async def storage_write_failed(request: Request, exc: StorageWriteFailed):
        return PlainTextResponse(str(exc), status_code=500)

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable):
        print(f"Error reading library: {exc}")
        return PlainTextResponse("Library is unavailable", status_code=500)

    # --- Pages ---

    @app.get("/", response_class=HTMLResponse)
    async def library_view(request: Request):
        """Lists every book in the library, newest first."""
        books = await run_in_threadpool(list_books, settings.books_dir)
        return templates.TemplateResponse(
            request, "library.html", {"request": request, "books": books}
        )

    @app.get("/upload", response_class=HTMLResponse)
    async def upload_form(request: Request):
        return templates.TemplateResponse(request, "upload.html", {"request": request})

    # --- API ---

    @app.get("/api/books", response_model=List[BookResponse])
    async def get_books():
        books = await run_in_threadpool(list_books, settings.books_dir)
        return [book.to_dict() for book in books]

    @app.post("/api/upload")
    async def upload_book(request: Request):
        """
        Store an uploaded EPUB and go back to the library.
        Validation failures answer 400, storage failures 500.
        """
        # Refuse oversized bodies before the form parser spools them to disk
        if _declared_body_size(request) > settings.max_upload_bytes + MULTIPART_OVERHEAD:
            raise TooLarge("File size is too large")

        async with request.form() as form:
            epub = form.get("epub")
            if not isinstance(epub, UploadFile):
                epub = None

            filename = epub.filename if epub is not None else None
            declared_size = epub.size if epub is not None else None
            stream = epub.file if epub is not None else None

            await run_in_threadpool(
                accept_upload, settings, filename, stream, declared_size
            )
        return RedirectResponse(url="/", status_code=302)

    # --- Downloads ---

    @app.get("/books/{filename}")
    async def download_book(filename: str, request: Request):
        """
        Serve a stored book with HTTP Range support so readers can resume.
        Browsers are told not to cache it.
        """
        file_path = book_path(settings.books_dir, filename)
        if not os.path.isfile(file_path):
            raise HTTPException(status_code=404, detail="Book not found")

        _log_download(request)
        return _stream_book_file(file_path, request)

    return app


def _declared_body_size(request: Request) -> int:
    """Content-Length of the request, 0 when absent or unreadable."""
    try:
        return int(request.headers.get("content-length", "0"))
    except ValueError:
        return 0


def _log_download(request: Request) -> None:
    client = request.client.host if request.client else "unknown"
    print(">>> DOWNLOAD REQUESTED")
    print(f"   URL: {request.url.path}")
    print(f"   User-Agent: {request.headers.get('user-agent', 'unknown')}")
    print(f"   IP: {client}")
    print(f"   Content-Type: {EPUB_MEDIA_TYPE}")
    if request.headers.get("range"):
        print(f"   Range request: {request.headers['range']}")
    print("-----------------------------------")


def _parse_range(range_header: str, file_size: int) -> Optional[tuple[int, int]]:
    """
    Parse a single "bytes=start-end" range into inclusive offsets.

    Returns None when the header is malformed so the full file is sent.
    Raises HTTPException(416) when the range lies outside the file.
    """
    range_spec = range_header.strip()
    if not range_spec.startswith("bytes=") or "," in range_spec:
        return None
    range_spec = range_spec[len("bytes="):]
    if "-" not in range_spec:
        return None

    first, last = (part.strip() for part in range_spec.split("-", 1))
    try:
        if first:
            start = int(first)
            end = int(last) if last else file_size - 1
        elif last:
            # Suffix range: the final N bytes
            start = max(0, file_size - int(last))
            end = file_size - 1
        else:
            return None
    except ValueError:
        return None

    end = min(end, file_size - 1)
    if start < 0 or start > end:
        raise HTTPException(
            status_code=416,
            detail="Requested range not satisfiable",
            headers={"Content-Range": f"bytes */{file_size}"},
        )
    return start, end


def _stream_book_file(file_path: str, request: Request) -> Response:
    """Helper to stream a book file with HTTP Range support."""
    file_size = os.path.getsize(file_path)
    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": "no-cache",
    }

    range_header = request.headers.get("range")
    byte_range = _parse_range(range_header, file_size) if range_header else None

    if byte_range:
        start, end = byte_range
        content_length = end - start + 1

        def iter_file():
            with open(file_path, "rb") as f:
                f.seek(start)
                remaining = content_length
                while remaining > 0:
                    data = f.read(min(CHUNK_SIZE, remaining))
                    if not data:
                        break
                    remaining -= len(data)
                    yield data

        headers["Content-Range"] = f"bytes {start}-{end}/{file_size}"
        headers["Content-Length"] = str(content_length)
        return StreamingResponse(
            iter_file(), status_code=206, headers=headers, media_type=EPUB_MEDIA_TYPE
        )

    # No usable range header - return full file
    def iter_full_file():
        with open(file_path, "rb") as f:
            while True:
                data = f.read(CHUNK_SIZE)
                if not data:
                    break
                yield data

    headers["Content-Length"] = str(file_size)
    return StreamingResponse(
        iter_full_file(), headers=headers, media_type=EPUB_MEDIA_TYPE
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Personal EPUB library server")
    parser.add_argument("--host", help="Bind address (default: $SHELF_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port (default: $SHELF_PORT or 3001)")
    parser.add_argument("--books-dir", help="Storage directory for books")
    parser.add_argument("--temp-dir", help="Staging directory for uploads")
    return parser


def main(argv=None) -> None:
    import uvicorn

    args = build_parser().parse_args(argv)
    settings = Settings.from_env().with_overrides(
        host=args.host,
        port=args.port,
        books_dir=args.books_dir,
        temp_dir=args.temp_dir,
    )
    app = create_app(settings)

    print(f"Books: {os.path.abspath(settings.books_dir)}")
    print(f"Staging: {os.path.abspath(settings.temp_dir)}")
    print(f"\nStarting server at http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
