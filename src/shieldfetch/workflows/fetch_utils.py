"""Shared helper functions used by the fetch and download workflows."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_ORDINAL_RE = re.compile(r"(\d+)")
_KNOWN_SUFFIXES = (".cbz", ".zip")


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def domain_of(url: str) -> str:
    """Return the normalized host of ``url`` (empty when it has none)."""

    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return idna_normalize(host)


def normalize_cookie_domain(domain: str) -> str:
    """Return a cookie domain that also matches subdomains (leading dot).

    Empty input stays empty so callers can fall back to the request host.
    """

    d = idna_normalize((domain or "").lstrip("."))
    if not d:
        return ""
    return f".{d}"


def cookie_matches_host(cookie_domain: str, host: str) -> bool:
    """True when a cookie scoped to ``cookie_domain`` is sent to ``host``."""

    d = idna_normalize((cookie_domain or "").lstrip("."))
    h = idna_normalize(host)
    if not d or not h:
        return False
    return h == d or h.endswith(f".{d}")


def pad_key(number: float, width: int = 3) -> str:
    """Zero-pad the integral part of an item ordinal (``7`` -> ``007``).

    Fractional ordinals keep their suffix (``7.5`` -> ``007.5``) so
    lexicographic order of keys matches numeric order.
    """

    if float(number).is_integer():
        return str(int(number)).zfill(width)
    whole, _, frac = repr(float(number)).partition(".")
    return f"{whole.zfill(width)}.{frac}"


def extract_ordinal(key: str, prefix: str = "") -> int:
    """Parse the item number from a key or archive name.

    Strips ``prefix`` and any extension-like suffix, then reads the leading
    digits of the integral part: ``ch012.5`` -> 12. Returns 0 when no digits
    are present.
    """

    stem = Path(key).stem if key.endswith(tuple(_KNOWN_SUFFIXES)) else key
    if prefix and stem.lower().startswith(prefix.lower()):
        stem = stem[len(prefix):]
    integral = stem.split(".", 1)[0]
    match = _ORDINAL_RE.search(integral)
    if not match:
        return 0
    return int(match.group(1))


def sorted_keys(items: Dict[str, str]) -> List[str]:
    """Keys of an item set in acquisition order."""

    return sorted(items)


def is_safe_key(key: str) -> bool:
    """True when ``key`` can name a file directly inside the destination."""

    if not key or key in {".", ".."} or key.startswith("."):
        return False
    return not any(ch in key for ch in ("/", "\\", "\x00"))


def dedupe_first(pairs: Iterable[tuple]) -> Dict[str, str]:
    """Build a key->locator map keeping the first locator seen per key."""

    out: Dict[str, str] = {}
    for key, locator in pairs:
        if key in out:
            logger.info("Duplicate item key %s: keeping %s, ignoring %s", key, out[key], locator)
            continue
        out[key] = locator
    return out


def write_debug_snapshot(root: Path, domain: str, method: str, body) -> Optional[Path]:
    """Save fetched markup under ``root/<domain>/`` for offline inspection."""

    if isinstance(body, str):
        body = body.encode("utf-8", "ignore")
    target_dir = Path(root) / (idna_normalize(domain) or "unknown")
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%dT%H%M%S")
        path = target_dir / f"{stamp}-{time.monotonic_ns() % 1_000_000:06d}-{method}.html"
        path.write_bytes(body)
    except OSError as exc:
        logger.warning("Could not write debug snapshot for %s: %s", domain, exc)
        return None
    return path


def is_chrome_agent(user_agent: Optional[str]) -> bool:
    ua = (user_agent or "").lower()
    return "chrome" in ua or "chromium" in ua


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM.") == "example.com"
    assert normalize_cookie_domain("example.com") == ".example.com"
    assert normalize_cookie_domain(".example.com") == ".example.com"
    assert pad_key(7) == "007"
    assert extract_ordinal("ch012.5.cbz", "ch") == 12
    assert not is_safe_key("../x")


sanity_check()

__all__ = [
    "idna_normalize",
    "domain_of",
    "normalize_cookie_domain",
    "cookie_matches_host",
    "pad_key",
    "extract_ordinal",
    "sorted_keys",
    "is_safe_key",
    "dedupe_first",
    "is_chrome_agent",
    "write_debug_snapshot",
    "sanity_check",
]
