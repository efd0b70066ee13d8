"""Anti-bot interstitial (challenge page) detector.

Pure heuristics over a status code, a body and optional response headers.
Signals are additive: every rule that fires appends an indicator, and a
subset of rules marks the response as a challenge.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

BODY_SNAPSHOT_CHARS = 500

CHALLENGE_STATUS_CODES = {403: "403 Forbidden", 503: "503 Service Unavailable"}
RATE_LIMIT_STATUS = 429

# Each keyword alone marks a challenge (matched case-insensitively).
CHALLENGE_KEYWORDS: Dict[str, str] = {
    "cf-browser-verification": "JS browser verification challenge",
    "cloudflare-browser-verification": "JS browser verification challenge",
    "challenge-form": "challenge form",
    "cf-chl-": "challenge token",
    "attention required": "browser integrity check",
    "checking your browser": "browser check",
    "verify you are human": "human verification",
    "cf-turnstile": "Turnstile CAPTCHA",
}

# The challenge platform script ships on ordinary pages of CDN-fronted sites,
# so it only corroborates another signal.
CORROBORATING_MARKERS: Dict[str, str] = {
    "/cdn-cgi/challenge-platform/": "challenge platform script",
}

_RE_TITLE_INTERSTITIAL = re.compile(r"<title[^>]*>[^<]*just a moment[^<]*</title>", re.I)
_RE_META_REFRESH = re.compile(
    r"<meta[^>]+http-equiv\s*=\s*[\"']?refresh[\"']?[^>]*>",
    re.I,
)
_RE_META_URL = re.compile(r"url\s*=\s*['\"]?([^\"'>;\s]+)", re.I)
_RE_FORM_ACTION = re.compile(
    r"<form[^>]+id=[\"']challenge-form[\"'][^>]*action=[\"']([^\"']+)[\"']",
    re.I,
)
_RE_CHL_TOKEN = re.compile(r"cf_chl_[a-zA-Z0-9_-]+")


@dataclass(frozen=True)
class ChallengeVerdict:
    """Outcome of inspecting a single response; recomputed per response."""

    is_challenge: bool
    status_code: int
    indicators: Tuple[str, ...] = ()
    body_snapshot: str = ""
    meta_redirect: Optional[str] = None
    form_action: Optional[str] = None
    turnstile: bool = False
    tokens: Tuple[str, ...] = field(default=(), compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_challenge": self.is_challenge,
            "status_code": self.status_code,
            "indicators": list(self.indicators),
            "meta_redirect": self.meta_redirect,
            "form_action": self.form_action,
            "turnstile": self.turnstile,
            "tokens": list(self.tokens),
            "body_snapshot": self.body_snapshot,
        }


def _as_text(body: Union[bytes, bytearray, str, None]) -> str:
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", "replace")
    return body


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers:
        return ""
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return str(value or "")
    return ""


def _meta_redirect(text: str) -> Optional[str]:
    tag = _RE_META_REFRESH.search(text)
    if not tag:
        return None
    m = _RE_META_URL.search(tag.group(0))
    if not m:
        return None
    return m.group(1).strip() or None


def detect(
    status: int,
    body: Union[bytes, bytearray, str, None],
    headers: Optional[Mapping[str, str]] = None,
) -> ChallengeVerdict:
    """Classify a response as an interstitial challenge or not.

    ``body`` is only read, never consumed. Empty or whitespace-only bodies skip
    the body rules and are not an error.
    """

    text = _as_text(body)
    indicators: List[str] = []
    challenge = False

    if status in CHALLENGE_STATUS_CODES:
        indicators.append(CHALLENGE_STATUS_CODES[status])
        challenge = True
    elif status == RATE_LIMIT_STATUS:
        indicators.append("429 Rate limit")

    if "cloudflare" in _header(headers, "Server").lower():
        indicators.append("cloudflare server header")

    meta_redirect: Optional[str] = None
    form_action: Optional[str] = None
    turnstile = False
    tokens: Tuple[str, ...] = ()

    if text.strip():
        lowered = text.lower()
        strong = False
        for keyword, reason in CHALLENGE_KEYWORDS.items():
            if keyword in lowered:
                indicators.append(f"{reason} ({keyword})")
                strong = True
        if _RE_TITLE_INTERSTITIAL.search(text):
            indicators.append("interstitial title (just a moment)")
            strong = True
        meta_redirect = _meta_redirect(text)
        if meta_redirect:
            indicators.append("meta refresh redirect")
            strong = True
        if strong or challenge:
            for marker, reason in CORROBORATING_MARKERS.items():
                if marker in lowered:
                    indicators.append(reason)
        challenge = challenge or strong

        form = _RE_FORM_ACTION.search(text)
        if form:
            form_action = form.group(1)
        turnstile = "cf-turnstile" in lowered
        tokens = tuple(dict.fromkeys(_RE_CHL_TOKEN.findall(text)))

    verdict = ChallengeVerdict(
        is_challenge=challenge,
        status_code=int(status),
        indicators=tuple(indicators),
        body_snapshot=text[:BODY_SNAPSHOT_CHARS],
        meta_redirect=meta_redirect,
        form_action=form_action,
        turnstile=turnstile,
        tokens=tokens,
    )
    if challenge:
        logger.debug("Challenge detected (status=%s): %s", status, ", ".join(indicators))
    return verdict


def challenge_url(verdict: ChallengeVerdict, original_url: str) -> str:
    """Best page to hand to a human: meta redirect, then form action, then the original."""

    if verdict.meta_redirect:
        return urljoin(original_url, verdict.meta_redirect)
    if verdict.form_action:
        return urljoin(original_url, verdict.form_action)
    return original_url


__all__ = [
    "ChallengeVerdict",
    "detect",
    "challenge_url",
    "CHALLENGE_KEYWORDS",
    "BODY_SNAPSHOT_CHARS",
    "VERSION",
]
