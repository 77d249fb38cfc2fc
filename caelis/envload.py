"""Load a .env file from the working directory or one of its parents."""

from __future__ import annotations

import os
from pathlib import Path


def load_nearest(start: str | os.PathLike[str] | None = None) -> Path | None:
    """Load the nearest .env at or above start (default: cwd); return its path."""
    directory = Path(start).absolute() if start is not None else Path.cwd()
    for candidate_dir in (directory, *directory.parents):
        path = candidate_dir / ".env"
        if path.exists():
            load_file(path)
            return path
    return None


def load_file(path: str | os.PathLike[str]) -> None:
    """Set variables from a .env file without overriding existing ones."""
    with open(path, encoding="utf-8") as handle:
        for raw in handle:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            line = line.removeprefix("export ")
            key, sep, value = line.partition("=")
            if not sep:
                continue
            key = key.strip()
            if not key:
                continue
            value = value.strip().strip("\"'")
            if key in os.environ:
                continue
            try:
                os.environ[key] = value
            except ValueError as exc:
                raise ValueError(f"envload: set {key!r}: {exc}") from exc