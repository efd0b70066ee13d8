"""Destination stores and sub-resource sinks.

The manager only needs two things from wherever items end up: which keys are
already materialized, and a way to turn a directory of fetched sub-resources
into one finished artifact. :class:`LocalDestination` keeps one zip archive
per item in a directory; :class:`RawFileSink` writes fetched bytes as-is.
"""

from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import FrozenSet, Protocol
from urllib.parse import urlparse

from .fetch_config import DEFAULT_ARCHIVE_SUFFIX
from .fetch_utils import is_safe_key

logger = logging.getLogger(__name__)

_MAGIC_EXTENSIONS = (
    (b"\xff\xd8\xff", ".jpg"),
    (b"\x89PNG\r\n\x1a\n", ".png"),
    (b"GIF87a", ".gif"),
    (b"GIF89a", ".gif"),
)
_URL_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".bmp"}


class Destination(Protocol):
    def acquired_keys(self) -> FrozenSet[str]: ...

    def write_archive(self, key: str, source_dir: Path) -> Path: ...


class SubResourceSink(Protocol):
    def store(self, data: bytes, directory: Path, stem: str, source_url: str) -> Path: ...


def guess_extension(data: bytes, source_url: str = "") -> str:
    for magic, ext in _MAGIC_EXTENSIONS:
        if data.startswith(magic):
            return ext
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp"
    if data[4:12] in (b"ftypavif", b"ftypavis"):
        return ".avif"
    suffix = Path(urlparse(source_url).path).suffix.lower()
    if suffix in _URL_EXTENSIONS:
        return ".jpg" if suffix == ".jpeg" else suffix
    return ".bin"


class RawFileSink:
    """Writes each sub-resource unchanged, named ``<stem><ext>``."""

    def store(self, data: bytes, directory: Path, stem: str, source_url: str) -> Path:
        path = Path(directory) / f"{stem}{guess_extension(data, source_url)}"
        path.write_bytes(data)
        return path


class LocalDestination:
    """A directory of ``<key><suffix>`` zip archives."""

    def __init__(self, root: Path, suffix: str = DEFAULT_ARCHIVE_SUFFIX) -> None:
        self.root = Path(root).expanduser()
        self.suffix = suffix

    def archive_path(self, key: str) -> Path:
        if not is_safe_key(key):
            raise ValueError(f"refusing to write archive for unsafe key {key!r}")
        return self.root / f"{key}{self.suffix}"

    def acquired_keys(self) -> FrozenSet[str]:
        if not self.root.is_dir():
            return frozenset()
        return frozenset(
            p.name[: -len(self.suffix)]
            for p in self.root.iterdir()
            if p.is_file() and p.name.endswith(self.suffix)
        )

    def write_archive(self, key: str, source_dir: Path) -> Path:
        """Zip every file in ``source_dir`` (sorted by name) into the item archive.

        The archive is assembled under a temporary name and moved into place,
        so a partially written archive is never visible under the final name.
        """

        self.root.mkdir(parents=True, exist_ok=True)
        final_path = self.archive_path(key)
        members = sorted(p for p in Path(source_dir).iterdir() if p.is_file())
        temp_fd, temp_path = tempfile.mkstemp(suffix=".part", prefix=".archive_", dir=self.root)
        try:
            with os.fdopen(temp_fd, "wb") as fh:
                with zipfile.ZipFile(fh, "w", compression=zipfile.ZIP_STORED) as zf:
                    for member in members:
                        zf.write(member, arcname=member.name)
            os.replace(temp_path, final_path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.info("Wrote %s (%d files)", final_path, len(members))
        return final_path


__all__ = [
    "Destination",
    "SubResourceSink",
    "LocalDestination",
    "RawFileSink",
    "guess_extension",
]
