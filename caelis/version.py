"""Version information, overridable at build time."""

from __future__ import annotations

VERSION = "dev"
COMMIT = "none"
DATE = "unknown"


def version_string(
    version: str | None = None,
    commit: str | None = None,
    date: str | None = None,
) -> str:
    """Return compact human-readable version info."""
    version = (VERSION if version is None else version).strip()
    commit = (COMMIT if commit is None else commit).strip()
    date = (DATE if date is None else date).strip()
    parts = []
    if version:
        parts.append(version)
    if commit:
        parts.append(f"commit={commit}")
    if date:
        parts.append(f"date={date}")
    return " ".join(parts)