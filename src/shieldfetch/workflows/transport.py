"""Plain HTTP retrieval path (aiohttp) with credential replay and challenge checks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from .challenge_detector import detect
from .credentials import BypassCredentials, CredentialStore, resolve_credentials
from .decompress import decompress_body
from .events import EV_FETCH_ATTEMPT, EV_FETCH_RESULT, FetchObserver, LoggingObserver
from .fetch_config import (
    CLIENT_HINT_BRANDS,
    DEFAULT_ACCEPT,
    DEFAULT_ACCEPT_ENCODING,
    HDR_ACCEPT,
    HDR_ACCEPT_ENCODING,
    HDR_ACCEPT_LANGUAGE,
    HDR_CONTENT_ENCODING,
    HDR_CONTENT_TYPE,
    HDR_COOKIE,
    HDR_REFERER,
    HDR_USER_AGENT,
    NAVIGATION_HEADERS,
    EngineConfig,
)
from .fetch_utils import is_chrome_agent, write_debug_snapshot
from .handoff import ChallengeResponder
from .outcomes import (
    ChallengeDetected,
    FetchOutcome,
    Success,
    Target,
    TerminalError,
    TransientFailure,
)

logger = logging.getLogger(__name__)

IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"

RawResponse = Tuple[int, Dict[str, str], bytes, str]


def validate_url(url: str) -> None:
    """Raise :class:`TerminalError` for targets no retry could ever fetch."""

    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise TerminalError(f"malformed URL {url!r}: {exc}") from exc
    if parsed.scheme not in {"http", "https"}:
        raise TerminalError(f"unsupported URL scheme in {url!r}")
    if not parsed.netloc:
        raise TerminalError(f"URL has no host: {url!r}")


class TransportFetcher:
    """Fetches a target over HTTP, replaying stored bypass credentials when present.

    Timeouts are retried here with a growing per-attempt timeout; every other
    failure is reported as an outcome and left to the caller's retry policy.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        store: Optional[CredentialStore] = None,
        responder: Optional[ChallengeResponder] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        observer: Optional[FetchObserver] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.responder = responder
        self.observer = observer or LoggingObserver(logger)
        self._session = session
        self._owns_session = False
        self._sleep = sleep

    async def __aenter__(self) -> "TransportFetcher":
        if self._session is None:
            self._session = aiohttp.ClientSession(auto_decompress=False)
            self._owns_session = True
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
        self._owns_session = False

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is not None:
            yield self._session
            return
        async with aiohttp.ClientSession(auto_decompress=False) as session:
            yield session

    def build_headers(
        self,
        target: Target,
        creds: Optional[BypassCredentials],
        *,
        accept: str = DEFAULT_ACCEPT,
    ) -> Dict[str, str]:
        if creds is None:
            headers = {
                HDR_USER_AGENT: self.config.user_agent,
                HDR_ACCEPT: accept,
                HDR_ACCEPT_LANGUAGE: self.config.accept_language,
                HDR_ACCEPT_ENCODING: DEFAULT_ACCEPT_ENCODING,
            }
        else:
            headers = dict(NAVIGATION_HEADERS)
            headers[HDR_ACCEPT] = accept
            headers[HDR_USER_AGENT] = creds.user_agent or self.config.user_agent
            headers[HDR_ACCEPT_LANGUAGE] = creds.accept_language or self.config.accept_language
            headers[HDR_COOKIE] = creds.cookie_header()
            if is_chrome_agent(headers[HDR_USER_AGENT]):
                headers["sec-ch-ua"] = CLIENT_HINT_BRANDS
                headers["sec-ch-ua-mobile"] = "?0"
                if creds.platform:
                    headers["sec-ch-ua-platform"] = f'"{creds.platform}"'
            if accept != DEFAULT_ACCEPT:
                headers["Sec-Fetch-Dest"] = "image"
                headers["Sec-Fetch-Mode"] = "no-cors"
                headers.pop("Sec-Fetch-User", None)
                headers.pop("Upgrade-Insecure-Requests", None)
        if target.referer:
            headers[HDR_REFERER] = target.referer
        return headers

    async def _request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Dict[str, str],
        timeout: float,
    ) -> RawResponse:
        async with session.get(
            url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
            allow_redirects=True,
        ) as resp:
            raw = await resp.read()
            return resp.status, {k: v for k, v in resp.headers.items()}, raw, str(resp.url)

    async def _request_with_timeouts(self, target: Target, headers: Dict[str, str]) -> RawResponse:
        attempts = max(1, self.config.transport_attempts)
        async with self._session_scope() as session:
            for attempt in range(1, attempts + 1):
                timeout = self.config.timeout + self.config.timeout_step * (attempt - 1)
                self.observer.emit(EV_FETCH_ATTEMPT, url=target.url, attempt=attempt, timeout=timeout)
                try:
                    return await self._request(session, target.url, headers, timeout)
                except asyncio.TimeoutError:
                    logger.warning("Timeout on attempt %d/%d for %s", attempt, attempts, target.url)
                    if attempt == attempts:
                        break
                    await self._sleep(float(2 ** (attempt - 1)))
        raise asyncio.TimeoutError(f"timed out after {attempts} attempts")

    async def _fetch(self, target: Target, creds: Optional[BypassCredentials], *, as_text: bool) -> FetchOutcome:
        validate_url(target.url)
        creds = resolve_credentials(
            self.store, target.domain, target.needs_bypass, creds, self.config.credential_max_age
        )
        headers = self.build_headers(target, creds, accept=DEFAULT_ACCEPT if as_text else IMAGE_ACCEPT)
        attempts = max(1, self.config.transport_attempts)
        try:
            status, resp_headers, raw, final_url = await self._request_with_timeouts(target, headers)
        except aiohttp.InvalidURL as exc:
            raise TerminalError(f"invalid URL {target.url!r}: {exc}") from exc
        except asyncio.TimeoutError:
            return TransientFailure(f"timeout after {attempts} attempts", None)
        except aiohttp.ClientError as exc:
            return TransientFailure(f"{type(exc).__name__}: {exc}", None)

        encoding = _header(resp_headers, HDR_CONTENT_ENCODING)
        try:
            body = decompress_body(raw, encoding, sniff=as_text)
        except ValueError as exc:
            return TransientFailure(f"undecodable body: {exc}", status)
        content_type = (_header(resp_headers, HDR_CONTENT_TYPE) or "text/html").split(";")[0].strip()

        verdict = detect(status, body, resp_headers)
        self.observer.emit(
            EV_FETCH_RESULT,
            url=final_url,
            status=status,
            size=len(body),
            bypass=creds is not None,
            challenge=verdict.is_challenge,
        )
        if as_text and self.config.debug_html_dir is not None:
            write_debug_snapshot(self.config.debug_html_dir, target.domain, "transport", body)
        if verdict.is_challenge:
            if self.responder is not None:
                return self.responder.respond(target, verdict, final_url)
            return ChallengeDetected(verdict=verdict, resolved_url=final_url)
        if not 200 <= status < 300:
            return TransientFailure(f"HTTP {status}", status)
        payload = body.decode("utf-8", "ignore") if as_text else body
        return Success(body=payload, status=status, url=final_url, content_type=content_type, method="aiohttp")

    async def fetch(self, target: Target, creds: Optional[BypassCredentials] = None) -> FetchOutcome:
        """Fetch markup; ``Success.body`` is text."""

        return await self._fetch(target, creds, as_text=True)

    async def fetch_bytes(self, target: Target, creds: Optional[BypassCredentials] = None) -> FetchOutcome:
        """Fetch a binary sub-resource; ``Success.body`` is bytes."""

        return await self._fetch(target, creds, as_text=False)


def _header(headers: Dict[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value or ""
    return ""


__all__ = ["TransportFetcher", "validate_url", "IMAGE_ACCEPT"]
