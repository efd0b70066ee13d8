import asyncio
import gzip
from pathlib import Path

import aiohttp
import pytest

from shieldfetch.workflows.credentials import BypassCredentials, CredentialStore, SessionCookie
from shieldfetch.workflows.events import RecordingObserver
from shieldfetch.workflows.fetch_config import EngineConfig
from shieldfetch.workflows.handoff import ChallengeResponder
from shieldfetch.workflows.outcomes import ChallengeDetected, Success, Target, TerminalError, TransientFailure
from shieldfetch.workflows.transport import TransportFetcher


CHALLENGE_PAGE = "<html><head><title>Just a moment...</title></head><body>Checking your browser</body></html>"


def _creds(domain: str = "example.com") -> BypassCredentials:
    return BypassCredentials(
        domain=domain,
        primary=SessionCookie("cf_clearance", "tok", domain=f".{domain}"),
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Chrome/124.0 Safari/537.36",
        platform="Linux",
        accept_language="en-GB",
        aux_cookies=(SessionCookie("__cf_bm", "bm"),),
    )


class _Sleeps:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _fetcher(tmp_path: Path, responses, *, store=None, responder=None, observer=None, sleep=None):
    """TransportFetcher whose network layer replays ``responses`` in order."""

    calls = []
    fetcher = TransportFetcher(
        EngineConfig(credentials_dir=tmp_path / "creds", work_dir=tmp_path / "work"),
        store=store,
        responder=responder,
        session=object(),
        sleep=sleep or _Sleeps(),
        observer=observer or RecordingObserver(),
    )

    async def fake_request(session, url, headers, timeout):
        calls.append({"url": url, "headers": dict(headers), "timeout": timeout})
        item = responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    fetcher._request = fake_request
    return fetcher, calls


def test_success_returns_text(tmp_path: Path) -> None:
    body = gzip.compress(b"<html>chapter list</html>")
    fetcher, calls = _fetcher(
        tmp_path,
        [(200, {"Content-Type": "text/html; charset=utf-8", "Content-Encoding": "gzip"}, body, "https://example.com/list")],
    )

    outcome = asyncio.run(fetcher.fetch(Target.for_url("https://example.com/list")))

    assert isinstance(outcome, Success)
    assert outcome.body == "<html>chapter list</html>"
    assert outcome.content_type == "text/html"
    assert "Cookie" not in calls[0]["headers"]


def test_credentials_are_replayed_with_client_hints(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "creds")
    store.save("example.com", _creds())
    fetcher, calls = _fetcher(tmp_path, [(200, {}, b"<html>ok</html>", "https://example.com/a")], store=store)

    target = Target(url="https://example.com/a", domain="example.com", needs_bypass=True, referer="https://example.com/")
    asyncio.run(fetcher.fetch(target))

    headers = calls[0]["headers"]
    assert headers["Cookie"] == "cf_clearance=tok; __cf_bm=bm"
    assert headers["User-Agent"].endswith("Chrome/124.0 Safari/537.36")
    assert headers["Accept-Language"] == "en-GB"
    assert headers["sec-ch-ua-platform"] == '"Linux"'
    assert headers["Referer"] == "https://example.com/"


def test_image_fetch_uses_image_headers_and_keeps_bytes(tmp_path: Path) -> None:
    png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
    fetcher, calls = _fetcher(tmp_path, [(200, {"Content-Type": "image/png"}, png, "https://img.example.com/1.png")])

    outcome = asyncio.run(fetcher.fetch_bytes(Target.for_url("https://img.example.com/1.png"), creds=_creds("img.example.com")))

    assert isinstance(outcome, Success)
    assert outcome.body == png
    assert calls[0]["headers"]["Sec-Fetch-Dest"] == "image"


def test_timeouts_retried_with_growing_timeout_and_backoff(tmp_path: Path) -> None:
    sleeps = _Sleeps()
    responses = [asyncio.TimeoutError(), asyncio.TimeoutError(), (200, {}, b"<html>late</html>", "https://example.com/")]
    fetcher, calls = _fetcher(tmp_path, responses, sleep=sleeps)

    outcome = asyncio.run(fetcher.fetch(Target.for_url("https://example.com/")))

    assert isinstance(outcome, Success)
    assert [c["timeout"] for c in calls] == [10.0, 15.0, 20.0]
    assert sleeps.delays == [1.0, 2.0]


def test_timeouts_exhausted_become_transient(tmp_path: Path) -> None:
    sleeps = _Sleeps()
    fetcher, calls = _fetcher(tmp_path, [asyncio.TimeoutError() for _ in range(5)], sleep=sleeps)

    outcome = asyncio.run(fetcher.fetch(Target.for_url("https://example.com/")))

    assert isinstance(outcome, TransientFailure)
    assert "timeout" in outcome.cause
    assert len(calls) == 5
    assert sleeps.delays == [1.0, 2.0, 4.0, 8.0]


def test_connection_errors_are_not_retried_here(tmp_path: Path) -> None:
    fetcher, calls = _fetcher(tmp_path, [aiohttp.ClientConnectionError("reset")])

    outcome = asyncio.run(fetcher.fetch(Target.for_url("https://example.com/")))

    assert isinstance(outcome, TransientFailure)
    assert len(calls) == 1


def test_non_2xx_without_challenge_is_transient(tmp_path: Path) -> None:
    fetcher, _ = _fetcher(tmp_path, [(500, {}, b"<html>oops</html>", "https://example.com/")])

    outcome = asyncio.run(fetcher.fetch(Target.for_url("https://example.com/")))

    assert isinstance(outcome, TransientFailure)
    assert outcome.status == 500


def test_challenge_retires_credentials_and_hands_off_once(tmp_path: Path) -> None:
    store = CredentialStore(tmp_path / "creds")
    store.save("example.com", _creds())
    opened = []
    observer = RecordingObserver()
    responder = ChallengeResponder(store, handoff=opened.append, observer=observer)
    fetcher, _ = _fetcher(
        tmp_path,
        [(503, {"Server": "cloudflare"}, CHALLENGE_PAGE.encode(), "https://example.com/list")],
        store=store,
        responder=responder,
    )

    target = Target(url="https://example.com/list", domain="example.com", needs_bypass=True)
    outcome = asyncio.run(fetcher.fetch(target))

    assert isinstance(outcome, ChallengeDetected)
    assert outcome.verdict.status_code == 503
    assert opened == ["https://example.com/list"]
    assert store.load_raw("example.com") is None
    assert observer.kinds() == ["challenge", "credentials_invalidated", "handoff"]


def test_handoff_failure_does_not_change_outcome(tmp_path: Path) -> None:
    def broken(url: str) -> None:
        raise RuntimeError("no display")

    responder = ChallengeResponder(None, handoff=broken)
    fetcher, _ = _fetcher(tmp_path, [(403, {}, b"", "https://example.com/")], responder=responder)

    outcome = asyncio.run(fetcher.fetch(Target.for_url("https://example.com/")))

    assert isinstance(outcome, ChallengeDetected)


def test_malformed_target_is_terminal(tmp_path: Path) -> None:
    fetcher, calls = _fetcher(tmp_path, [])
    with pytest.raises(TerminalError):
        asyncio.run(fetcher.fetch(Target(url="ftp://example.com/file", domain="example.com")))
    with pytest.raises(TerminalError):
        asyncio.run(fetcher.fetch(Target(url="https:///nohost", domain="")))
    assert calls == []
