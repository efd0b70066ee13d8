import asyncio

from shieldfetch.workflows.challenge_detector import detect
from shieldfetch.workflows.events import RecordingObserver
from shieldfetch.workflows.executor import RequestExecutor
from shieldfetch.workflows.outcomes import ChallengeDetected, Success, Target, TransientFailure


class StubFetcher:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.calls = []

    async def fetch(self, target, creds=None, *, wait_selector=None, script=None):
        self.calls.append({"url": target.url, "wait_selector": wait_selector})
        return self.outcome


TARGET = Target.for_url("https://example.com/list")


def test_transport_success_skips_render() -> None:
    transport = StubFetcher(Success(body="<html>ok</html>"))
    render = StubFetcher(Success(body="<html>rendered</html>", method="playwright"))

    outcome = asyncio.run(RequestExecutor(transport, render).fetch(TARGET))

    assert outcome.body == "<html>ok</html>"
    assert render.calls == []


def test_transient_failure_falls_back_to_render_once() -> None:
    transport = StubFetcher(TransientFailure("HTTP 500", 500))
    render = StubFetcher(Success(body="<html>rendered</html>", method="playwright"))
    observer = RecordingObserver()

    outcome = asyncio.run(RequestExecutor(transport, render, observer).fetch(TARGET, wait_selector=".chapter"))

    assert isinstance(outcome, Success)
    assert outcome.method == "playwright"
    assert render.calls == [{"url": TARGET.url, "wait_selector": ".chapter"}]
    assert observer.kinds() == ["render_fallback"]


def test_challenge_is_returned_without_render() -> None:
    challenge = ChallengeDetected(verdict=detect(503, ""), resolved_url=TARGET.url)
    transport = StubFetcher(challenge)
    render = StubFetcher(Success(body="never"))

    outcome = asyncio.run(RequestExecutor(transport, render).fetch(TARGET))

    assert outcome is challenge
    assert render.calls == []


def test_render_failure_is_returned_as_is() -> None:
    transport = StubFetcher(TransientFailure("timeout after 5 attempts"))
    render = StubFetcher(TransientFailure("render timed out after 60s"))

    outcome = asyncio.run(RequestExecutor(transport, render).fetch(TARGET))

    assert isinstance(outcome, TransientFailure)
    assert outcome.cause == "render timed out after 60s"
    assert len(transport.calls) == 1
    assert len(render.calls) == 1


def test_without_render_transient_is_returned() -> None:
    transport = StubFetcher(TransientFailure("HTTP 502", 502))

    outcome = asyncio.run(RequestExecutor(transport).fetch(TARGET))

    assert isinstance(outcome, TransientFailure)
