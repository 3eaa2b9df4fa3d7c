"""
Runtime settings for the library server.

Built once at startup from the environment (and optionally CLI flags) and
handed to the catalog, the upload handler and the web app.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001
DEFAULT_BOOKS_DIR = "books"
DEFAULT_TEMP_DIR = "temp"
DEFAULT_MAX_UPLOAD_MB = 50

ENV_PREFIX = "SHELF_"


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Where books live and how large an upload may be."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    books_dir: str = DEFAULT_BOOKS_DIR
    temp_dir: str = DEFAULT_TEMP_DIR
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * 1024 * 1024

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            host=env.get(ENV_PREFIX + "HOST") or DEFAULT_HOST,
            port=_read_int(env, "PORT", DEFAULT_PORT),
            books_dir=env.get(ENV_PREFIX + "BOOKS_DIR") or DEFAULT_BOOKS_DIR,
            temp_dir=env.get(ENV_PREFIX + "TEMP_DIR") or DEFAULT_TEMP_DIR,
            max_upload_bytes=_read_int(env, "MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)
            * 1024
            * 1024,
        )

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the non-None values in `changes` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def ensure_directories(self) -> None:
        """
        Create the storage and staging directories if they are missing.

        The final move of an upload is only atomic when both directories
        sit on the same filesystem, so a mismatch is reported.
        """
        for directory in (self.books_dir, self.temp_dir):
            os.makedirs(directory, exist_ok=True)

        if os.stat(self.books_dir).st_dev != os.stat(self.temp_dir).st_dev:
            print(
                f"Warning: {self.temp_dir} and {self.books_dir} are on different "
                "filesystems; uploads cannot be moved atomically"
            )
