from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from .core import K_AUX_COOKIES, K_PRIMARY_COOKIE, K_VALUE
from .workflows.cancel import CancelToken
from .workflows.credentials import CredentialStore, parse_captured_payload
from .workflows.destination import LocalDestination
from .workflows.doctor import build_doctor_report, format_doctor_report, redact_value
from .workflows.executor import RequestExecutor
from .workflows.extraction import ExtractionMethod, Extractor, SiteDescriptor, key_from_text
from .workflows.fetch_config import EngineConfig
from .workflows.fetch_utils import domain_of
from .workflows.handoff import ChallengeResponder, no_handoff, open_in_browser
from .workflows.manager import DownloadManager
from .workflows.outcomes import (
    ChallengeDetected,
    ChallengeError,
    DownloadCancelled,
    FetchError,
    Success,
    Target,
    TerminalError,
)
from .workflows.render import RenderFetcher
from .workflows.transport import TransportFetcher

EXIT_OK = 0
EXIT_CHALLENGE = 1
EXIT_INVALID = 2
EXIT_FATAL = 3
EXIT_CANCELLED = 130

app = typer.Typer(no_args_is_help=True, help="Fetch orchestration for challenge-protected sites.")
credentials_app = typer.Typer(no_args_is_help=True, help="Manage captured bypass credentials.")
app.add_typer(credentials_app, name="credentials")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config() -> EngineConfig:
    return EngineConfig.from_env()


def _store(config: EngineConfig) -> CredentialStore:
    return CredentialStore(config.credentials_dir, max_age=config.credential_max_age)


def _responder(config: EngineConfig, store: CredentialStore) -> ChallengeResponder:
    return ChallengeResponder(store, handoff=open_in_browser if config.handoff_enabled else no_handoff)


@app.command("doctor")
def doctor_cmd() -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report(_load_config())
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=EXIT_OK if report.get("ok", True) else EXIT_INVALID)


@credentials_app.command("import")
def credentials_import(
    path_or_dash: str = typer.Argument(..., help="Capture JSON file or '-' for stdin."),
) -> None:
    """Parse a browser capture and store it as the domain's credentials."""
    config = _load_config()
    try:
        text = sys.stdin.read() if path_or_dash == "-" else Path(path_or_dash).read_text(encoding="utf-8")
        creds = parse_captured_payload(text)
    except (OSError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_INVALID)
    _store(config).save(creds.domain, creds)
    typer.echo(f"Stored credentials for {creds.domain} ({len(creds.cookies())} cookies)")


@credentials_app.command("list")
def credentials_list() -> None:
    """List domains with stored credentials."""
    config = _load_config()
    store = _store(config)
    for domain in store.list_domains():
        creds = store.load_raw(domain)
        if creds is None:
            continue
        state = "usable" if creds.is_usable(max_age=config.credential_max_age) else "stale"
        typer.echo(f"{domain}\t{state}")


@credentials_app.command("show")
def credentials_show(domain: str = typer.Argument(..., help="Domain to show.")) -> None:
    """Show one stored record with cookie values redacted."""
    store = _store(_load_config())
    creds = store.load_raw(domain)
    if creds is None:
        typer.echo(f"error: no credentials stored for {domain}", err=True)
        raise typer.Exit(code=EXIT_INVALID)
    payload = creds.to_dict()
    for cookie in [payload.get(K_PRIMARY_COOKIE) or {}] + list(payload.get(K_AUX_COOKIES) or []):
        if cookie.get(K_VALUE):
            cookie[K_VALUE] = redact_value(str(cookie[K_VALUE]))
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@credentials_app.command("delete")
def credentials_delete(domain: str = typer.Argument(..., help="Domain to forget.")) -> None:
    """Delete a stored record."""
    if not _store(_load_config()).delete(domain):
        typer.echo(f"error: no credentials stored for {domain}", err=True)
        raise typer.Exit(code=EXIT_INVALID)
    typer.echo(f"Deleted credentials for {domain}")


async def _probe(config: EngineConfig, target: Target, wait: Optional[str]):
    store = _store(config)
    responder = _responder(config, store)
    async with TransportFetcher(config, store=store, responder=responder) as transport:
        render = RenderFetcher(config, store=store, responder=responder)
        return await RequestExecutor(transport, render).fetch(target, wait_selector=wait)


@app.command("probe")
def probe_cmd(
    url: str = typer.Argument(..., help="URL to fetch once."),
    bypass: bool = typer.Option(False, "--bypass", help="Replay stored credentials for the host."),
    wait: Optional[str] = typer.Option(None, "--wait", help="Selector to wait for when rendering."),
    json_out: bool = typer.Option(False, "--json", help="Print the outcome as JSON."),
) -> None:
    """Fetch one URL (transport first, render fallback) and report the outcome."""
    config = _load_config()
    try:
        outcome = asyncio.run(_probe(config, Target.for_url(url, needs_bypass=bypass), wait))
    except TerminalError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_INVALID)

    if isinstance(outcome, Success):
        summary = {"outcome": "success", "status": outcome.status, "url": outcome.url,
                   "method": outcome.method, "size": len(outcome.text)}
        code = EXIT_OK
    elif isinstance(outcome, ChallengeDetected):
        summary = {"outcome": "challenge", "url": outcome.resolved_url, "verdict": outcome.verdict.to_dict()}
        code = EXIT_CHALLENGE
    else:
        summary = {"outcome": "transient", "cause": outcome.cause, "status": outcome.status}
        code = EXIT_FATAL
    if json_out:
        sys.stdout.write(json.dumps(summary, ensure_ascii=False) + "\n")
    else:
        for key, value in summary.items():
            typer.echo(f"{key}: {value}")
    raise typer.Exit(code=code)


def _console_progress(message: str, fraction: float, ordinal: int, index: int, total: int) -> None:
    suffix = f" [{index}/{total}]" if index else ""
    typer.echo(f"{fraction * 100:5.1f}% {message}{suffix}")


async def _download(config: EngineConfig, site: SiteDescriptor, list_url: str, dest: Path, token: CancelToken):
    token.bind_loop(asyncio.get_running_loop())
    store = _store(config)
    responder = _responder(config, store)
    async with TransportFetcher(config, store=store, responder=responder) as transport:
        render = RenderFetcher(config, store=store, responder=responder)
        extractor = Extractor(site, RequestExecutor(transport, render), render=render)
        manager = DownloadManager(
            site,
            extractor,
            transport,
            LocalDestination(dest),
            config=config,
            progress=_console_progress,
            cancel=token,
        )
        return await manager.run(list_url)


@app.command("download")
def download_cmd(
    list_url: str = typer.Argument(..., help="URL of the page listing the items."),
    dest: Path = typer.Option(..., "--dest", help="Directory receiving one archive per item."),
    item_selector: str = typer.Option(..., "--item-selector", help="CSS selector for item links on the list page."),
    page_selector: str = typer.Option(..., "--page-selector", help="CSS selector for sub-resources on an item page."),
    attr: str = typer.Option("src", "--attr", help="Attribute holding the sub-resource URL."),
    bypass: bool = typer.Option(False, "--bypass", help="Replay stored credentials for the host."),
    prefix: str = typer.Option("ch", "--prefix", help="Key prefix for archive names."),
    width: int = typer.Option(3, "--width", help="Zero-padding width of item numbers."),
    json_out: bool = typer.Option(False, "--json", help="Print the run report as JSON."),
) -> None:
    """Download every item of a list page not yet present in --dest."""
    config = _load_config()
    try:
        domain = domain_of(list_url)
        if not domain:
            raise ValueError(f"URL has no host: {list_url!r}")
        site = SiteDescriptor(
            name=domain,
            domain=domain,
            item_list=ExtractionMethod.html_selector(item_selector, attribute="href"),
            sub_resources=ExtractionMethod.html_selector(page_selector, attribute=attr),
            needs_bypass=bypass,
            normalize_key=key_from_text(prefix, width),
        )
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_INVALID)

    token = CancelToken()
    try:
        report = asyncio.run(_download(config, site, list_url, dest, token))
    except ChallengeError as exc:
        typer.echo(f"challenge: {exc}; clear it in the browser, re-import credentials and rerun", err=True)
        raise typer.Exit(code=EXIT_CHALLENGE)
    except (DownloadCancelled, KeyboardInterrupt):
        typer.echo("cancelled", err=True)
        raise typer.Exit(code=EXIT_CANCELLED)
    except TerminalError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_INVALID)
    except FetchError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=EXIT_FATAL)

    if json_out:
        sys.stdout.write(json.dumps(report.to_dict(), ensure_ascii=False) + "\n")
    else:
        typer.echo(f"Completed {len(report.completed)} of {report.new_items} new items ({report.total_found} found)")
        for key, reason in report.failed.items():
            typer.echo(f"  failed {key}: {reason}")
    raise typer.Exit(code=EXIT_OK)


__all__ = ["app"]
