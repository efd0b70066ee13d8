"""Headless-browser retrieval path (Playwright) for client-rendered pages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .challenge_detector import ChallengeVerdict, detect
from .credentials import BypassCredentials, CredentialStore, resolve_credentials
from .events import EV_FETCH_ATTEMPT, EV_FETCH_RESULT, FetchObserver, LoggingObserver
from .fetch_config import EngineConfig
from .fetch_utils import normalize_cookie_domain, write_debug_snapshot
from .handoff import ChallengeResponder
from .outcomes import ChallengeDetected, FetchOutcome, Success, Target, TransientFailure
from .transport import validate_url

logger = logging.getLogger(__name__)

try:  # Playwright is optional; render fetches report a transient failure without it
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore

# A JS challenge that resolves in-page leaves the navigation status behind, so
# rendered markup is always classified as if it had been served with 200.
RENDERED_STATUS = 200

_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None"}


@dataclass
class _RenderResult:
    markup: str
    url: str
    verdict: ChallengeVerdict
    value: Any = None


def playwright_cookies(target: Target, creds: BypassCredentials) -> List[Dict[str, Any]]:
    """Convert stored cookies to ``BrowserContext.add_cookies`` entries."""

    out: List[Dict[str, Any]] = []
    for cookie in creds.cookies():
        entry: Dict[str, Any] = {
            "name": cookie.name,
            "value": cookie.value,
            "domain": normalize_cookie_domain(cookie.domain or target.domain),
            "path": cookie.path or "/",
            "secure": cookie.secure,
            "httpOnly": cookie.http_only,
        }
        if cookie.expires:
            entry["expires"] = float(cookie.expires)
        same_site = _SAME_SITE.get((cookie.same_site or "").lower())
        if same_site:
            entry["sameSite"] = same_site
        out.append(entry)
    return out


class RenderFetcher:
    """Drives one headless browser context per fetch.

    Launch, cookie injection, navigation, readiness wait, snapshot and optional
    script evaluation run as one operation bounded by a single wall-clock
    timeout; the browser is torn down on every exit path.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        store: Optional[CredentialStore] = None,
        responder: Optional[ChallengeResponder] = None,
        observer: Optional[FetchObserver] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.responder = responder
        self.observer = observer or LoggingObserver(logger)

    async def fetch(
        self,
        target: Target,
        creds: Optional[BypassCredentials] = None,
        *,
        wait_selector: Optional[str] = None,
        script: Optional[str] = None,
    ) -> FetchOutcome:
        validate_url(target.url)
        if async_playwright is None:
            return TransientFailure("playwright is not installed", None)
        creds = resolve_credentials(
            self.store, target.domain, target.needs_bypass, creds, self.config.credential_max_age
        )
        self.observer.emit(EV_FETCH_ATTEMPT, url=target.url, attempt=1, timeout=self.config.render_timeout, method="playwright")
        try:
            result = await asyncio.wait_for(
                self._render(target, creds, wait_selector, script),
                timeout=self.config.render_timeout,
            )
        except asyncio.TimeoutError:
            return TransientFailure(f"render timed out after {self.config.render_timeout:.0f}s", None)
        except Exception as exc:  # noqa: BLE001 - browser failures are transient
            logger.warning("Render failed for %s: %s", target.url, exc)
            return TransientFailure(f"render failed: {type(exc).__name__}: {exc}", None)

        self.observer.emit(
            EV_FETCH_RESULT,
            url=result.url,
            status=RENDERED_STATUS,
            size=len(result.markup),
            bypass=creds is not None,
            challenge=result.verdict.is_challenge,
            method="playwright",
        )
        if self.config.debug_html_dir is not None:
            write_debug_snapshot(self.config.debug_html_dir, target.domain, "render", result.markup)
        if result.verdict.is_challenge:
            if self.responder is not None:
                return self.responder.respond(target, result.verdict, result.url)
            return ChallengeDetected(verdict=result.verdict, resolved_url=result.url)
        body = result.value if script else result.markup
        return Success(body=body, status=RENDERED_STATUS, url=result.url, content_type="text/html", method="playwright")

    async def _render(
        self,
        target: Target,
        creds: Optional[BypassCredentials],
        wait_selector: Optional[str],
        script: Optional[str],
    ) -> _RenderResult:
        timeout_ms = int(self.config.render_timeout * 1000)
        async with async_playwright() as p:  # type: ignore[misc]
            browser = await p.chromium.launch(
                headless=not self.config.headed,
                args=["--disable-blink-features=AutomationControlled"],
            )
            context = None
            try:
                user_agent = (creds.user_agent if creds else "") or self.config.user_agent
                context = await browser.new_context(
                    user_agent=user_agent,
                    viewport={"width": 1920, "height": 1080},
                    locale="en-US",
                    java_script_enabled=True,
                )
                if creds is not None:
                    await context.add_cookies(playwright_cookies(target, creds))
                page = await context.new_page()
                if target.referer:
                    await page.set_extra_http_headers({"Referer": target.referer})
                await page.goto(target.url, timeout=timeout_ms, wait_until="domcontentloaded")
                try:
                    if wait_selector:
                        await page.wait_for_selector(wait_selector, state="visible", timeout=timeout_ms)
                    else:
                        await page.wait_for_load_state("load", timeout=timeout_ms)
                except Exception:
                    # The awaited element never shows up on an interstitial; classify
                    # what did render before reporting a plain failure.
                    markup = await page.content()
                    verdict = detect(RENDERED_STATUS, markup)
                    if verdict.is_challenge:
                        return _RenderResult(markup=markup, url=page.url, verdict=verdict)
                    raise
                markup = await page.content()
                verdict = detect(RENDERED_STATUS, markup)
                value = None
                if script and not verdict.is_challenge:
                    value = await page.evaluate(script)
                return _RenderResult(markup=markup, url=page.url, verdict=verdict, value=value)
            finally:
                if context is not None:
                    await context.close()
                await browser.close()


__all__ = ["RenderFetcher", "playwright_cookies", "RENDERED_STATUS"]
