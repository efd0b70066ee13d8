import asyncio
from pathlib import Path

from shieldfetch.workflows import render as render_module
from shieldfetch.workflows.credentials import BypassCredentials, SessionCookie
from shieldfetch.workflows.fetch_config import EngineConfig
from shieldfetch.workflows.outcomes import ChallengeDetected, Success, Target, TransientFailure
from shieldfetch.workflows.render import RenderFetcher, playwright_cookies


class FakePage:
    def __init__(self, browser: "FakeBrowser") -> None:
        self._browser = browser
        self.url = ""

    async def set_extra_http_headers(self, headers):
        self._browser.log.append(("headers", headers))

    async def goto(self, url, timeout=None, wait_until=None):
        self._browser.log.append(("goto", url, wait_until))
        self.url = url

    async def wait_for_selector(self, selector, state=None, timeout=None):
        self._browser.log.append(("wait_for_selector", selector, state))
        if self._browser.selector_fails:
            raise TimeoutError("selector never appeared")

    async def wait_for_load_state(self, state, timeout=None):
        self._browser.log.append(("load_state", state))

    async def content(self):
        return self._browser.markup

    async def evaluate(self, script):
        self._browser.log.append(("evaluate", script))
        return self._browser.script_value


class FakeContext:
    def __init__(self, browser: "FakeBrowser") -> None:
        self._browser = browser

    async def add_cookies(self, cookies):
        self._browser.cookies.extend(cookies)

    async def new_page(self):
        return FakePage(self._browser)

    async def close(self):
        self._browser.log.append(("context_closed",))


class FakeBrowser:
    def __init__(self, markup: str, *, selector_fails: bool = False, script_value=None) -> None:
        self.markup = markup
        self.selector_fails = selector_fails
        self.script_value = script_value
        self.cookies = []
        self.log = []
        self.context_kwargs = {}

    async def new_context(self, **kwargs):
        self.context_kwargs = kwargs
        return FakeContext(self)

    async def close(self):
        self.log.append(("browser_closed",))


class FakeChromium:
    def __init__(self, browser: FakeBrowser) -> None:
        self._browser = browser

    async def launch(self, **kwargs):
        return self._browser


class FakePlaywright:
    def __init__(self, browser: FakeBrowser) -> None:
        self.chromium = FakeChromium(browser)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


def _install(monkeypatch, browser: FakeBrowser) -> None:
    monkeypatch.setattr(render_module, "async_playwright", lambda: FakePlaywright(browser))


def _config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(credentials_dir=tmp_path / "creds", work_dir=tmp_path / "work", render_timeout=5)


def test_render_returns_markup_and_closes_browser(monkeypatch, tmp_path: Path) -> None:
    browser = FakeBrowser("<html><div class='chapter'>1</div></html>")
    _install(monkeypatch, browser)
    fetcher = RenderFetcher(_config(tmp_path))

    target = Target(url="https://example.com/list", domain="example.com", referer="https://example.com/")
    outcome = asyncio.run(fetcher.fetch(target, wait_selector=".chapter"))

    assert isinstance(outcome, Success)
    assert outcome.method == "playwright"
    assert "chapter" in outcome.body
    assert ("goto", "https://example.com/list", "domcontentloaded") in browser.log
    assert ("wait_for_selector", ".chapter", "visible") in browser.log
    assert ("headers", {"Referer": "https://example.com/"}) in browser.log
    assert browser.log[-2:] == [("context_closed",), ("browser_closed",)]
    assert browser.context_kwargs["viewport"] == {"width": 1920, "height": 1080}


def test_render_injects_credentials_and_uses_their_agent(monkeypatch, tmp_path: Path) -> None:
    browser = FakeBrowser("<html>ok</html>")
    _install(monkeypatch, browser)
    creds = BypassCredentials(
        domain="example.com",
        primary=SessionCookie("cf_clearance", "tok", domain="example.com", same_site="lax", secure=True),
        user_agent="Mozilla/5.0 Captured/1.0",
    )

    outcome = asyncio.run(RenderFetcher(_config(tmp_path)).fetch(Target.for_url("https://example.com/"), creds))

    assert isinstance(outcome, Success)
    assert browser.context_kwargs["user_agent"] == "Mozilla/5.0 Captured/1.0"
    assert browser.cookies == [
        {
            "name": "cf_clearance",
            "value": "tok",
            "domain": ".example.com",
            "path": "/",
            "secure": True,
            "httpOnly": False,
            "sameSite": "Lax",
        }
    ]


def test_script_result_is_the_body(monkeypatch, tmp_path: Path) -> None:
    browser = FakeBrowser("<html>ok</html>", script_value=[{"url": "/c/1", "text": "Chapter 1"}])
    _install(monkeypatch, browser)

    outcome = asyncio.run(
        RenderFetcher(_config(tmp_path)).fetch(Target.for_url("https://example.com/"), script="() => []")
    )

    assert isinstance(outcome, Success)
    assert outcome.body == [{"url": "/c/1", "text": "Chapter 1"}]


def test_interstitial_behind_missing_selector_is_a_challenge(monkeypatch, tmp_path: Path) -> None:
    browser = FakeBrowser("<title>Just a moment...</title>", selector_fails=True)
    _install(monkeypatch, browser)

    outcome = asyncio.run(
        RenderFetcher(_config(tmp_path)).fetch(Target.for_url("https://example.com/"), wait_selector=".chapter", script="1")
    )

    assert isinstance(outcome, ChallengeDetected)
    assert outcome.verdict.status_code == 200
    assert not any(entry[0] == "evaluate" for entry in browser.log)
    assert ("browser_closed",) in browser.log


def test_missing_selector_on_normal_page_is_transient(monkeypatch, tmp_path: Path) -> None:
    browser = FakeBrowser("<html>empty</html>", selector_fails=True)
    _install(monkeypatch, browser)

    outcome = asyncio.run(RenderFetcher(_config(tmp_path)).fetch(Target.for_url("https://example.com/"), wait_selector=".x"))

    assert isinstance(outcome, TransientFailure)
    assert ("browser_closed",) in browser.log


def test_without_playwright_render_is_transient(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(render_module, "async_playwright", None)

    outcome = asyncio.run(RenderFetcher(_config(tmp_path)).fetch(Target.for_url("https://example.com/")))

    assert isinstance(outcome, TransientFailure)


def test_playwright_cookies_fall_back_to_target_domain() -> None:
    creds = BypassCredentials(
        domain="example.com",
        primary=SessionCookie("cf_clearance", "tok", expires=1_900_000_000.0),
        user_agent="ua",
    )
    [cookie] = playwright_cookies(Target.for_url("https://example.com/"), creds)
    assert cookie["domain"] == ".example.com"
    assert cookie["expires"] == 1_900_000_000.0
