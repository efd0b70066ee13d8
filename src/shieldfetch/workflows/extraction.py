"""Site descriptors and the extraction strategies the engine executes for them.

A site says *how* its item list and each item's sub-resources are found
(script evaluation in a rendered page, a CSS selector over fetched markup, a
custom parser, or calls to a JSON API); the :class:`Extractor` performs the
fetches and hands back normalized ``key -> locator`` maps and locator lists.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .executor import RequestExecutor
from .fetch_utils import dedupe_first, is_safe_key, pad_key
from .outcomes import FetchError, Target, TerminalError
from .render import RenderFetcher
from .transport import TransportFetcher

logger = logging.getLogger(__name__)

MaybeAwaitable = Union[Any, Awaitable[Any]]

_RE_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")


class ExtractionKind(str, Enum):
    SCRIPT = "javascript"
    SELECTOR = "html_selector"
    CUSTOM = "custom"
    API = "api"


@dataclass(frozen=True)
class ExtractionMethod:
    """One extraction strategy; exactly the fields its kind needs must be set."""

    kind: ExtractionKind
    script: Optional[str] = None
    selector: Optional[str] = None
    attribute: str = "src"
    wait_selector: Optional[str] = None
    parser: Optional[Callable[[str], Any]] = None
    api: Optional[Callable[..., MaybeAwaitable]] = None

    def __post_init__(self) -> None:
        kind = ExtractionKind(self.kind)
        object.__setattr__(self, "kind", kind)
        if kind is ExtractionKind.SCRIPT and not (self.script or "").strip():
            raise ValueError("script extraction requires script code")
        if kind is ExtractionKind.SELECTOR and not (self.selector or "").strip():
            raise ValueError("selector extraction requires a selector")
        if kind is ExtractionKind.CUSTOM and self.parser is None:
            raise ValueError("custom extraction requires a parser")
        if kind is ExtractionKind.API and self.api is None:
            raise ValueError("api extraction requires an api function")

    @classmethod
    def javascript(cls, script: str, wait_selector: Optional[str] = None) -> "ExtractionMethod":
        return cls(ExtractionKind.SCRIPT, script=script, wait_selector=wait_selector)

    @classmethod
    def html_selector(
        cls, selector: str, attribute: str = "src", wait_selector: Optional[str] = None
    ) -> "ExtractionMethod":
        return cls(ExtractionKind.SELECTOR, selector=selector, attribute=attribute, wait_selector=wait_selector)

    @classmethod
    def custom(cls, parser: Callable[[str], Any], wait_selector: Optional[str] = None) -> "ExtractionMethod":
        return cls(ExtractionKind.CUSTOM, parser=parser, wait_selector=wait_selector)

    @classmethod
    def api_call(cls, api: Callable[..., MaybeAwaitable]) -> "ExtractionMethod":
        """Call ``api(locator, client)``: records (or a key mapping) for a list, locators for an item."""

        return cls(ExtractionKind.API, api=api)


def key_from_text(prefix: str = "ch", width: int = 3) -> Callable[[Mapping[str, str]], str]:
    """Key normalizer reading the first number in a record's text (or url).

    ``{"text": "Chapter 7.5"}`` -> ``ch007.5``. Records without a number give
    an empty key and are skipped by the extractor.
    """

    def _normalize(record: Mapping[str, str]) -> str:
        for source in (record.get("number"), record.get("text"), record.get("url")):
            if not source:
                continue
            m = _RE_NUMBER.search(str(source))
            if m:
                return f"{prefix}{pad_key(float(m.group(1)), width)}"
        return ""

    return _normalize


def join_locator(raw: str, base_url: str) -> str:
    return urljoin(base_url, (raw or "").strip())


@dataclass(frozen=True)
class SiteDescriptor:
    name: str
    domain: str
    item_list: ExtractionMethod
    sub_resources: ExtractionMethod
    needs_bypass: bool = False
    normalize_key: Callable[[Mapping[str, str]], str] = field(default_factory=key_from_text)
    normalize_locator: Callable[[str, str], str] = join_locator

    def target(self, url: str, referer: Optional[str] = None) -> Target:
        return Target(url=url, domain=self.domain, needs_bypass=self.needs_bypass, referer=referer)


class ApiClient:
    """JSON/raw API access with the site's credentials and challenge handling."""

    def __init__(self, transport: TransportFetcher, domain: str, needs_bypass: bool = False) -> None:
        self.transport = transport
        self.domain = domain
        self.needs_bypass = needs_bypass

    def _target(self, url: str) -> Target:
        return Target(url=url, domain=self.domain, needs_bypass=self.needs_bypass)

    async def fetch_raw(self, url: str) -> bytes:
        outcome = await self.transport.fetch_bytes(self._target(url))
        return outcome.unwrap()

    async def fetch_text(self, url: str) -> str:
        outcome = await self.transport.fetch(self._target(url))
        return outcome.unwrap()

    async def fetch_json(self, url: str) -> Any:
        text = await self.fetch_text(url)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise TerminalError(f"API response from {url} is not JSON: {exc}") from exc


async def _resolve(value: MaybeAwaitable) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Extractor:
    """Executes a site's extraction methods, dispatching once per call on the kind.

    Site-supplied code (parsers, API functions, key and locator normalizers)
    runs through :meth:`_call_site`: fetch errors it raises pass through
    unchanged, anything else ends the call as a :class:`TerminalError` so a
    broken parser costs one item, not the run.
    """

    def __init__(
        self,
        site: SiteDescriptor,
        executor: RequestExecutor,
        render: Optional[RenderFetcher] = None,
        api_client: Optional[ApiClient] = None,
    ) -> None:
        self.site = site
        self.executor = executor
        self.render = render if render is not None else executor.render
        self.api_client = api_client or ApiClient(executor.transport, site.domain, site.needs_bypass)

    async def _call_site(self, what: str, fn: Callable[..., MaybeAwaitable], *args: Any) -> Any:
        try:
            return await _resolve(fn(*args))
        except FetchError:
            raise
        except Exception as exc:
            raise TerminalError(f"{what} for site {self.site.name} failed: {type(exc).__name__}: {exc}") from exc

    async def _markup(self, url: str, wait_selector: Optional[str]) -> str:
        outcome = await self.executor.fetch(self.site.target(url), wait_selector=wait_selector)
        body = outcome.unwrap()
        return body if isinstance(body, str) else str(body)

    async def _script(self, url: str, method: ExtractionMethod) -> Any:
        if self.render is None:
            raise TerminalError(f"site {self.site.name} needs a browser for script extraction")
        outcome = await self.render.fetch(self.site.target(url), wait_selector=method.wait_selector, script=method.script)
        return outcome.unwrap()

    async def _records_to_items(self, records: Any, base_url: str) -> Dict[str, str]:
        if isinstance(records, Mapping):
            # key -> locator mapping; the key doubles as the number source
            records = [
                {"key": str(k), "number": str(k), "url": "" if v is None else str(v)}
                for k, v in records.items()
            ]
        if not isinstance(records, list):
            raise TerminalError(f"item list for {base_url} is not a list of records or a key mapping")
        pairs = []
        for record in records:
            if not isinstance(record, Mapping):
                logger.debug("Skipping non-record item entry %r", record)
                continue
            key = str(await self._call_site("key normalizer", self.site.normalize_key, record) or "")
            raw = str(record.get("url") or "")
            if not key or not raw:
                logger.debug("Skipping item record without key or url: %r", record)
                continue
            if not is_safe_key(key):
                logger.warning("Skipping item with unsafe key %r (%s)", key, raw)
                continue
            locator = await self._call_site("locator normalizer", self.site.normalize_locator, raw, base_url)
            pairs.append((key, str(locator)))
        return dedupe_first(pairs)

    async def fetch_item_set(self, list_url: str) -> Dict[str, str]:
        """Fetch the list resource and return ``normalized key -> locator``."""

        method = self.site.item_list
        kind = method.kind
        if kind is ExtractionKind.SCRIPT:
            records: Any = await self._script(list_url, method)
        elif kind is ExtractionKind.SELECTOR:
            markup = await self._markup(list_url, method.wait_selector)
            soup = BeautifulSoup(markup, "lxml")
            records = []
            for el in soup.select(method.selector or ""):
                href = el.get("href")
                if not href:
                    continue
                records.append({"url": str(href), "text": el.get_text(" ", strip=True)})
        elif kind is ExtractionKind.CUSTOM:
            markup = await self._markup(list_url, method.wait_selector)
            records = await self._call_site("item list parser", method.parser, markup)
        else:
            records = await self._call_site("item list api", method.api, list_url, self.api_client)
        return await self._records_to_items(records, list_url)

    async def fetch_sub_resources(self, item_url: str) -> List[str]:
        """Fetch an item page and return its ordered sub-resource locators."""

        method = self.site.sub_resources
        kind = method.kind
        if kind is ExtractionKind.SCRIPT:
            raw = await self._script(item_url, method)
        elif kind is ExtractionKind.SELECTOR:
            markup = await self._markup(item_url, method.wait_selector)
            soup = BeautifulSoup(markup, "lxml")
            raw = []
            for el in soup.select(method.selector or ""):
                value = el.get(method.attribute) or el.get("data-src")
                if value:
                    raw.append(str(value))
        elif kind is ExtractionKind.CUSTOM:
            markup = await self._markup(item_url, method.wait_selector)
            raw = await self._call_site("sub-resource parser", method.parser, markup)
        else:
            raw = await self._call_site("sub-resource api", method.api, item_url, self.api_client)
        if not isinstance(raw, list):
            raise TerminalError(f"sub-resource list for {item_url} is not a list")
        locators: List[str] = []
        seen = set()
        for value in raw:
            if not value:
                continue
            locator = str(await self._call_site("locator normalizer", self.site.normalize_locator, str(value), item_url))
            if locator in seen:
                continue
            seen.add(locator)
            locators.append(locator)
        return locators


__all__ = [
    "ExtractionKind",
    "ExtractionMethod",
    "SiteDescriptor",
    "ApiClient",
    "Extractor",
    "key_from_text",
    "join_locator",
]
