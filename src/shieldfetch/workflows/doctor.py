from __future__ import annotations

import importlib.util
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .credentials import CredentialStore
from .fetch_config import ENV_PREFIX, EngineConfig


_SECRET_TOKENS = ("cookie", "clearance", "token", "secret")


def _looks_secret(name: str) -> bool:
    return any(token in (name or "").lower() for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    """Mask a secret, leaving ``keep`` characters visible at each end of long values."""

    text = (value or "").strip()
    if len(text) > keep * 2:
        return text[:keep] + "..." + text[-keep:]
    return "*" * len(text)


def _module_available(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


def _check_playwright_available() -> bool:
    from . import render

    return getattr(render, "async_playwright", None) is not None


def _check_writable(path: Path) -> bool:
    candidate = Path(path)
    while not candidate.exists():
        if candidate.parent == candidate:
            return False
        candidate = candidate.parent
    return candidate.is_dir() and os.access(candidate, os.W_OK)


def _shieldfetch_env() -> Dict[str, str]:
    return {k: v for k, v in sorted(os.environ.items()) if k.startswith(ENV_PREFIX)}


def build_doctor_report(config: Optional[EngineConfig] = None) -> Dict[str, Any]:
    config = config or EngineConfig.from_env()
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    report: Dict[str, Any] = {
        "generated_at": stamp,
        "ok": True,
        "checks": [],
        "environment": {},
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
    ) -> None:
        entry = {"name": name, "status": "ok" if status else "missing", "level": level, "detail": detail}
        if remedy:
            entry["remedy"] = remedy
        report["checks"].append(entry)
        # info-level checks never fail the report
        if level == "warn" and not status:
            report["ok"] = False

    playwright_ok = _check_playwright_available()
    add_check(
        "playwright",
        playwright_ok,
        detail="render fallback enabled" if playwright_ok else "render fallback disabled",
        remedy="Install Playwright and run `playwright install --with-deps chromium`.",
        level="warn",
    )

    for module, encoding in (("brotli", "br"), ("zstandard", "zstd")):
        available = _module_available(module)
        add_check(
            module,
            available,
            detail=f"{encoding} bodies decodable" if available else f"{encoding} bodies cannot be decoded",
            remedy=f"pip install {module}",
            level="warn",
        )

    creds_ok = _check_writable(config.credentials_dir)
    add_check(
        f"{ENV_PREFIX}CREDENTIALS_DIR",
        creds_ok,
        detail=str(config.credentials_dir),
        remedy=f"Create the directory or set {ENV_PREFIX}CREDENTIALS_DIR to a writable location.",
        level="warn",
    )
    if config.credentials_dir.is_dir():
        domains = CredentialStore(config.credentials_dir, max_age=config.credential_max_age).list_domains()
        add_check(
            "credentials",
            bool(domains),
            detail=", ".join(domains) if domains else "no captured credentials",
            remedy="Import a capture with `shieldfetch credentials import <file>`.",
            level="info",
        )

    work_ok = _check_writable(config.work_dir)
    add_check(
        f"{ENV_PREFIX}WORK_DIR",
        work_ok,
        detail=str(config.work_dir),
        remedy=f"Set {ENV_PREFIX}WORK_DIR to a writable location.",
        level="warn",
    )

    add_check(
        f"{ENV_PREFIX}NO_HANDOFF",
        config.handoff_enabled,
        detail="challenges open in the system browser" if config.handoff_enabled else "hand-off disabled",
        level="info",
    )

    if config.debug_html_dir is not None:
        add_check(
            f"{ENV_PREFIX}DEBUG_HTML_DIR",
            _check_writable(config.debug_html_dir),
            detail=str(config.debug_html_dir),
            level="info",
        )

    report["environment"] = {
        k: (redact_value(v) if _looks_secret(k) else v) for k, v in _shieldfetch_env().items()
    }
    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    """Render a report as plain text; remedies are shown only for failing checks."""

    out: List[str] = [
        "shieldfetch doctor",
        f"Generated: {report.get('generated_at')}",
        "Secret values are redacted.",
        "",
    ]
    for check in report.get("checks", []):
        status = check.get("status", "unknown")
        out.append(f"- [{check.get('level', 'info')}] {check.get('name', 'check')}: {status}")
        if check.get("detail"):
            out.append(f"  detail: {check['detail']}")
        if status != "ok" and check.get("remedy"):
            out.append(f"  remedy: {check['remedy']}")
    env = report.get("environment") or {}
    if env:
        out += ["", "Environment:"]
        out.extend(f"- {key}={value}" for key, value in env.items())
    return "\n".join(out) + "\n"


__all__ = ["build_doctor_report", "format_doctor_report", "redact_value"]
