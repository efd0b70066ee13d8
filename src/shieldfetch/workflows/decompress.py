"""Response body decompression (gzip, deflate, brotli, zstd).

Sessions are opened with ``auto_decompress=False`` so bodies arrive exactly as
sent. Some challenge-fronted servers label brotli bodies inconsistently, so
gzip is recognized by magic bytes and brotli optionally by a first-byte
heuristic.
"""

from __future__ import annotations

import gzip
import logging
import zlib

import brotli
import zstandard as zstd

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


def _looks_like_brotli(body: bytes) -> bool:
    return 0x80 <= body[0] <= 0x8F


def decompress_body(body: bytes, content_encoding: str = "", *, sniff: bool = True) -> bytes:
    """Return ``body`` decoded according to its encoding.

    Unknown or absent encodings pass through unchanged. With ``sniff`` off only
    the declared encoding is honoured; with it on, gzip and zstd are also
    recognized by magic bytes and brotli by a first-byte heuristic. A failed
    heuristic brotli attempt leaves the body as-is; a body that claims an
    encoding but fails to decode raises ``ValueError``.
    """

    if not body:
        return body
    encoding = (content_encoding or "").strip().lower()

    if "gzip" in encoding or (sniff and body[:2] == GZIP_MAGIC):
        try:
            return gzip.decompress(body)
        except (OSError, EOFError) as exc:
            raise ValueError(f"corrupt gzip body: {exc}") from exc

    if "zstd" in encoding or (sniff and body[:4] == ZSTD_MAGIC):
        try:
            return zstd.ZstdDecompressor().decompress(body, max_output_size=64 * 1024 * 1024)
        except zstd.ZstdError as exc:
            raise ValueError(f"corrupt zstd body: {exc}") from exc

    if encoding == "br":
        try:
            return brotli.decompress(body)
        except brotli.error as exc:
            raise ValueError(f"corrupt brotli body: {exc}") from exc

    if encoding == "deflate":
        try:
            return zlib.decompress(body)
        except zlib.error:
            pass
        # Raw deflate stream without zlib header.
        try:
            return zlib.decompress(body, -zlib.MAX_WBITS)
        except zlib.error as exc:
            raise ValueError(f"corrupt deflate body: {exc}") from exc

    if sniff and not encoding and _looks_like_brotli(body):
        try:
            return brotli.decompress(body)
        except brotli.error:
            logger.debug("Body looked like brotli but did not decode; keeping as-is")
            return body

    return body


__all__ = ["decompress_body", "GZIP_MAGIC"]
