"""shieldfetch defaults (headers, timeouts, paths) and environment-driven config.

Centralizes static defaults so the fetchers carry no embedded magic strings.
``EngineConfig.from_env`` builds a config from ``SHIELDFETCH_*`` variables
(optionally loaded from a ``.env`` file); callers can also construct one
directly to override any field.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

ENV_PREFIX = "SHIELDFETCH_"

# Headers
HDR_ACCEPT = "Accept"
HDR_ACCEPT_ENCODING = "Accept-Encoding"
HDR_ACCEPT_LANGUAGE = "Accept-Language"
HDR_USER_AGENT = "User-Agent"
HDR_COOKIE = "Cookie"
HDR_REFERER = "Referer"
HDR_CONTENT_ENCODING = "Content-Encoding"
HDR_CONTENT_TYPE = "Content-Type"
HDR_SERVER = "Server"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
DEFAULT_ACCEPT_ENCODING = "gzip, deflate, br, zstd"

# Navigation headers sent alongside captured credentials so the request looks
# like the browser session the cookie was issued to.
NAVIGATION_HEADERS: Dict[str, str] = {
    HDR_ACCEPT: DEFAULT_ACCEPT,
    HDR_ACCEPT_ENCODING: DEFAULT_ACCEPT_ENCODING,
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

CLIENT_HINT_BRANDS = '"Chromium";v="124", "Not_A Brand";v="99"'

# Timeouts / retry defaults (seconds)
DEFAULT_TIMEOUT = 10.0
DEFAULT_TIMEOUT_STEP = 5.0
DEFAULT_TRANSPORT_ATTEMPTS = 5
DEFAULT_RENDER_TIMEOUT = 60.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_RATE_INTERVAL = 1.5
DEFAULT_OPERATION_TIMEOUT = 240.0
DEFAULT_OPERATION_TIMEOUT_STEP = 60.0

# Paths
DEFAULT_CREDENTIALS_DIR = Path.home() / ".config" / "shieldfetch" / "credentials"
DEFAULT_WORK_DIR = Path(os.getenv("TMPDIR", "/tmp")) / "shieldfetch"
DEFAULT_ARCHIVE_SUFFIX = ".cbz"


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.lower() not in {"0", "false", "no", "off"}


def _env_path(name: str, default: Path) -> Path:
    raw = _env(name)
    return Path(raw).expanduser() if raw else default


@dataclass
class EngineConfig:
    """Runtime knobs shared by the fetchers, retry driver and manager."""

    credentials_dir: Path = DEFAULT_CREDENTIALS_DIR
    work_dir: Path = DEFAULT_WORK_DIR
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    timeout: float = DEFAULT_TIMEOUT
    timeout_step: float = DEFAULT_TIMEOUT_STEP
    transport_attempts: int = DEFAULT_TRANSPORT_ATTEMPTS
    render_timeout: float = DEFAULT_RENDER_TIMEOUT
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    rate_interval: float = DEFAULT_RATE_INTERVAL
    # Wall-clock bound for one list/item-level attempt; grows per attempt.
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    operation_timeout_step: float = DEFAULT_OPERATION_TIMEOUT_STEP
    headed: bool = False
    # None disables the age check; the cookie's own expiry still applies.
    credential_max_age: Optional[float] = None
    handoff_enabled: bool = True
    debug_html_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, *, dotenv_path: Optional[Path] = None) -> "EngineConfig":
        load_dotenv(dotenv_path=dotenv_path, override=False)
        max_age_hours = _env_float("CREDENTIAL_MAX_AGE_HOURS", 0.0)
        debug_dir = _env("DEBUG_HTML_DIR")
        return cls(
            credentials_dir=_env_path("CREDENTIALS_DIR", DEFAULT_CREDENTIALS_DIR),
            work_dir=_env_path("WORK_DIR", DEFAULT_WORK_DIR),
            user_agent=_env("USER_AGENT") or DEFAULT_USER_AGENT,
            accept_language=_env("ACCEPT_LANGUAGE") or DEFAULT_ACCEPT_LANGUAGE,
            timeout=_env_float("TIMEOUT", DEFAULT_TIMEOUT),
            timeout_step=_env_float("TIMEOUT_STEP", DEFAULT_TIMEOUT_STEP),
            transport_attempts=max(1, _env_int("TRANSPORT_ATTEMPTS", DEFAULT_TRANSPORT_ATTEMPTS)),
            render_timeout=_env_float("RENDER_TIMEOUT", DEFAULT_RENDER_TIMEOUT),
            retry_attempts=max(1, _env_int("RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS)),
            rate_interval=max(0.0, _env_float("RATE_INTERVAL", DEFAULT_RATE_INTERVAL)),
            operation_timeout=_env_float("OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT),
            headed=_env_bool("PLAYWRIGHT_HEADED", False),
            credential_max_age=max_age_hours * 3600.0 if max_age_hours > 0 else None,
            handoff_enabled=not _env_bool("NO_HANDOFF", False),
            debug_html_dir=Path(debug_dir).expanduser() if debug_dir else None,
        )


__all__ = [
    "EngineConfig",
    "ENV_PREFIX",
    "DEFAULT_USER_AGENT",
    "DEFAULT_ACCEPT_LANGUAGE",
    "NAVIGATION_HEADERS",
    "CLIENT_HINT_BRANDS",
]
