"""Per-domain bypass credentials: model, JSON persistence and capture import.

A credential is the clearance cookie (plus companions) a human obtained by
solving a challenge in a real browser, together with the browser identity it
was issued to. One JSON file per domain; writes go through a temp file and
``os.replace`` so concurrent writers never leave a torn record.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.keys import (
    K_ACCEPT_LANGUAGE,
    K_AUX_COOKIES,
    K_CAP_ACCEPT_LANGUAGE,
    K_CAP_ALL_COOKIES,
    K_CAP_CAPTURED_AT,
    K_CAP_CLEARANCE,
    K_CAP_COOKIES,
    K_CAP_DOMAIN,
    K_CAP_ENTROPY,
    K_CAP_EXPIRATION,
    K_CAP_HEADERS,
    K_CAP_HTTP_ONLY,
    K_CAP_LANGUAGE,
    K_CAP_PLATFORM,
    K_CAP_SAME_SITE,
    K_CAP_URL,
    K_CAP_USER_AGENT,
    K_CAPTURED_AT,
    K_DOMAIN,
    K_EXPIRES,
    K_HTTP_ONLY,
    K_INVALIDATED_AT,
    K_NAME,
    K_PATH,
    K_PLATFORM,
    K_PRIMARY_COOKIE,
    K_SAME_SITE,
    K_SECURE,
    K_SOURCE_URL,
    K_USER_AGENT,
    K_VALUE,
    PRIMARY_COOKIE_NAME,
)
from .fetch_utils import domain_of, idna_normalize

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


@dataclass(frozen=True)
class SessionCookie:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    expires: Optional[float] = None
    same_site: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires is not None and self.expires > 0 and self.expires <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_NAME: self.name,
            K_VALUE: self.value,
            K_DOMAIN: self.domain,
            K_PATH: self.path,
            K_SECURE: self.secure,
            K_HTTP_ONLY: self.http_only,
            K_EXPIRES: self.expires,
            K_SAME_SITE: self.same_site,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionCookie":
        expires = payload.get(K_EXPIRES)
        return cls(
            name=str(payload[K_NAME]),
            value=str(payload.get(K_VALUE, "")),
            domain=str(payload.get(K_DOMAIN) or ""),
            path=str(payload.get(K_PATH) or "/"),
            secure=bool(payload.get(K_SECURE, False)),
            http_only=bool(payload.get(K_HTTP_ONLY, False)),
            expires=float(expires) if expires is not None else None,
            same_site=payload.get(K_SAME_SITE) or None,
        )


@dataclass(frozen=True)
class BypassCredentials:
    """Everything needed to replay a human-cleared browser session."""

    domain: str
    primary: SessionCookie
    user_agent: str
    platform: str = ""
    accept_language: str = ""
    aux_cookies: Tuple[SessionCookie, ...] = ()
    captured_at: float = field(default_factory=time.time)
    invalidated_at: Optional[float] = None
    source_url: str = ""

    @property
    def invalidated(self) -> bool:
        return self.invalidated_at is not None

    def is_expired(self, now: Optional[float] = None, max_age: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if self.primary.is_expired(now):
            return True
        if max_age is not None and now - self.captured_at > max_age:
            return True
        return False

    def is_usable(self, now: Optional[float] = None, max_age: Optional[float] = None) -> bool:
        return not self.invalidated and not self.is_expired(now, max_age)

    def cookies(self) -> List[SessionCookie]:
        """Primary cookie first, then auxiliaries without repeating the primary."""

        out = [self.primary]
        for cookie in self.aux_cookies:
            if cookie.name == self.primary.name:
                continue
            out.append(cookie)
        return out

    def cookie_header(self) -> str:
        return "; ".join(f"{c.name}={c.value}" for c in self.cookies())

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_DOMAIN: self.domain,
            K_PRIMARY_COOKIE: self.primary.to_dict(),
            K_AUX_COOKIES: [c.to_dict() for c in self.aux_cookies],
            K_USER_AGENT: self.user_agent,
            K_PLATFORM: self.platform,
            K_ACCEPT_LANGUAGE: self.accept_language,
            K_CAPTURED_AT: self.captured_at,
            K_INVALIDATED_AT: self.invalidated_at,
            K_SOURCE_URL: self.source_url,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BypassCredentials":
        invalidated = payload.get(K_INVALIDATED_AT)
        return cls(
            domain=str(payload[K_DOMAIN]),
            primary=SessionCookie.from_dict(payload[K_PRIMARY_COOKIE]),
            aux_cookies=tuple(SessionCookie.from_dict(c) for c in payload.get(K_AUX_COOKIES) or []),
            user_agent=str(payload.get(K_USER_AGENT) or ""),
            platform=str(payload.get(K_PLATFORM) or ""),
            accept_language=str(payload.get(K_ACCEPT_LANGUAGE) or ""),
            captured_at=float(payload.get(K_CAPTURED_AT) or 0.0),
            invalidated_at=float(invalidated) if invalidated is not None else None,
            source_url=str(payload.get(K_SOURCE_URL) or ""),
        )


def _record_name(domain: str) -> str:
    d = idna_normalize(domain)
    if not d or d.startswith(".") or "/" in d or "\\" in d or d in {".", ".."}:
        raise ValueError(f"invalid credential domain: {domain!r}")
    return f"{d}{RECORD_SUFFIX}"


class CredentialStore:
    """JSON-file credential store, one record per domain."""

    def __init__(
        self,
        root: Path,
        *,
        max_age: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self.max_age = max_age
        self._clock = clock

    def path_for(self, domain: str) -> Path:
        return self.root / _record_name(domain)

    def _read(self, domain: str) -> Optional[BypassCredentials]:
        path = self.path_for(domain)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
            return BypassCredentials.from_dict(payload)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable credential record %s: %s", path, exc)
            return None

    def _write(self, creds: BypassCredentials) -> None:
        path = self.path_for(creds.domain)
        self.root.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=".cred_", dir=self.root)
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as fh:
                json.dump(creds.to_dict(), fh, indent=2, sort_keys=True)
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def load(self, domain: str) -> Optional[BypassCredentials]:
        """Usable credentials for ``domain``; None when absent, invalidated or expired."""

        creds = self._read(domain)
        if creds is None:
            return None
        if creds.invalidated:
            logger.info("Credentials for %s were invalidated; ignoring", domain)
            return None
        if creds.is_expired(self._clock(), self.max_age):
            logger.info("Credentials for %s have expired; ignoring", domain)
            return None
        return creds

    def load_raw(self, domain: str) -> Optional[BypassCredentials]:
        """The stored record regardless of validity (inspection only)."""

        return self._read(domain)

    def save(self, domain: str, creds: BypassCredentials) -> None:
        d = idna_normalize(domain)
        if creds.domain != d:
            creds = replace(creds, domain=d)
        self._write(creds)
        logger.info("Saved credentials for %s (%d cookies)", d, len(creds.cookies()))

    def invalidate(self, domain: str) -> bool:
        creds = self._read(domain)
        if creds is None:
            return False
        if not creds.invalidated:
            self._write(replace(creds, invalidated_at=self._clock()))
        logger.info("Invalidated credentials for %s", domain)
        return True

    def delete(self, domain: str) -> bool:
        path = self.path_for(domain)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted credentials for %s", domain)
        return True

    def list_domains(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name[: -len(RECORD_SUFFIX)]
            for p in self.root.iterdir()
            if p.is_file() and p.name.endswith(RECORD_SUFFIX) and not p.name.startswith(".")
        )


def resolve_credentials(
    store: Optional[CredentialStore],
    domain: str,
    needs_bypass: bool,
    creds: Optional[BypassCredentials] = None,
    max_age: Optional[float] = None,
) -> Optional[BypassCredentials]:
    """Credentials to apply to one request, or None.

    Explicit credentials win when still usable; otherwise the store is
    consulted only for targets that expect a defense.
    """

    if creds is not None:
        if creds.is_usable(max_age=max_age):
            return creds
        logger.info("Discarding unusable credentials for %s", domain)
        return None
    if needs_bypass and store is not None:
        loaded = store.load(domain)
        if loaded is None:
            logger.info("No stored credentials for %s; proceeding without bypass", domain)
        return loaded
    return None


def _parse_expires(raw: str) -> Optional[float]:
    try:
        dt = parsedate_to_datetime(raw.strip())
    except (TypeError, ValueError, IndexError):
        logger.warning("Unparseable cookie Expires attribute: %r", raw)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def parse_set_cookie(raw: str, expected_name: str = PRIMARY_COOKIE_NAME) -> SessionCookie:
    """Parse a raw ``Set-Cookie`` style string (``name=value; Path=/; Secure``)."""

    parts = [p.strip() for p in (raw or "").split(";")]
    if not parts or "=" not in parts[0]:
        raise ValueError("cookie string is empty or malformed")
    name, _, value = parts[0].partition("=")
    name = name.strip()
    if expected_name and name != expected_name:
        raise ValueError(f"expected a {expected_name} cookie, got {name!r}")
    attrs: Dict[str, Any] = {"path": "/"}
    for part in parts[1:]:
        if not part:
            continue
        key, _, val = part.partition("=")
        lowered = key.strip().lower()
        if lowered == "httponly":
            attrs["http_only"] = True
        elif lowered == "secure":
            attrs["secure"] = True
        elif lowered == "path":
            attrs["path"] = val or "/"
        elif lowered == "domain":
            attrs["domain"] = val
        elif lowered == "expires":
            attrs["expires"] = _parse_expires(val)
        elif lowered == "samesite":
            attrs["same_site"] = val
        else:
            logger.debug("Ignoring cookie attribute %r", part)
    return SessionCookie(name=name, value=value.strip(), **attrs)


def _cookie_from_capture(entry: Mapping[str, Any]) -> SessionCookie:
    expires = entry.get(K_CAP_EXPIRATION)
    return SessionCookie(
        name=str(entry.get(K_NAME) or ""),
        value=str(entry.get(K_VALUE) or ""),
        domain=str(entry.get(K_DOMAIN) or ""),
        path=str(entry.get(K_PATH) or "/"),
        secure=bool(entry.get(K_SECURE, False)),
        http_only=bool(entry.get(K_CAP_HTTP_ONLY, False)),
        expires=float(expires) if expires else None,
        same_site=entry.get(K_CAP_SAME_SITE) or None,
    )


def _parse_captured_at(raw: Any) -> float:
    if isinstance(raw, (int, float)):
        # Browser extensions report milliseconds.
        return float(raw) / 1000.0 if raw > 1e11 else float(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable capture timestamp %r; using now", raw)
            return time.time()
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return time.time()


def parse_captured_payload(text: str) -> BypassCredentials:
    """Build credentials from the JSON a browser extension captured after a solve."""

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"capture payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("capture payload must be a JSON object")

    domain = idna_normalize(str(payload.get(K_CAP_DOMAIN) or ""))
    if not domain:
        domain = domain_of(str(payload.get(K_CAP_URL) or ""))
    if not domain:
        raise ValueError("capture payload has no domain")

    entries = payload.get(K_CAP_ALL_COOKIES) or payload.get(K_CAP_COOKIES) or []
    cookies = [_cookie_from_capture(e) for e in entries if isinstance(e, dict) and e.get(K_NAME)]

    headers = payload.get(K_CAP_HEADERS) or {}
    raw_clearance = headers.get(K_CAP_CLEARANCE) or payload.get(K_CAP_CLEARANCE) or ""
    primary: Optional[SessionCookie] = None
    if raw_clearance and "=" in str(raw_clearance):
        try:
            primary = parse_set_cookie(str(raw_clearance))
        except ValueError as exc:
            logger.warning("Could not parse captured clearance string: %s", exc)
    if primary is None:
        primary = next((c for c in cookies if c.name == PRIMARY_COOKIE_NAME), None)
    if primary is None:
        raise ValueError(f"capture payload for {domain} has no {PRIMARY_COOKIE_NAME} cookie")
    if not primary.domain:
        primary = replace(primary, domain=domain)

    entropy = payload.get(K_CAP_ENTROPY) or {}
    accept_language = headers.get(K_CAP_ACCEPT_LANGUAGE) or entropy.get(K_CAP_LANGUAGE) or ""
    return BypassCredentials(
        domain=domain,
        primary=primary,
        aux_cookies=tuple(c for c in cookies if c.name != primary.name),
        user_agent=str(entropy.get(K_CAP_USER_AGENT) or ""),
        platform=str(entropy.get(K_CAP_PLATFORM) or ""),
        accept_language=str(accept_language),
        captured_at=_parse_captured_at(payload.get(K_CAP_CAPTURED_AT)),
        source_url=str(payload.get(K_CAP_URL) or ""),
    )


__all__ = [
    "SessionCookie",
    "BypassCredentials",
    "CredentialStore",
    "resolve_credentials",
    "parse_set_cookie",
    "parse_captured_payload",
]
