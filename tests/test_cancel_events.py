import asyncio
import logging

import pytest

from shieldfetch.workflows.cancel import CancelToken, maybe_guard
from shieldfetch.workflows.events import EV_CHALLENGE, EV_RETRY, LoggingObserver, RecordingObserver
from shieldfetch.workflows.outcomes import DownloadCancelled


def test_check_raises_after_cancel() -> None:
    token = CancelToken()
    token.check()

    token.cancel("user stop")
    token.cancel("second reason ignored")

    assert token.cancelled
    with pytest.raises(DownloadCancelled) as excinfo:
        token.check()
    assert "user stop" in str(excinfo.value)


def test_guard_returns_result_when_not_cancelled() -> None:
    async def scenario():
        token = CancelToken()

        async def work():
            return 42

        return await token.guard(work()), await maybe_guard(None, work())

    assert asyncio.run(scenario()) == (42, 42)


def test_guard_interrupts_in_flight_await() -> None:
    async def scenario():
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop now")
        await token.sleep(3600)

    with pytest.raises(DownloadCancelled):
        asyncio.run(scenario())


def test_cancel_threadsafe_without_loop_cancels_directly() -> None:
    token = CancelToken()

    token.cancel_threadsafe("from ui")

    assert token.cancelled and token.reason == "from ui"


def test_recording_observer_filters_by_kind() -> None:
    observer = RecordingObserver()
    observer.emit(EV_RETRY, attempt=1)
    observer.emit(EV_CHALLENGE, url="https://example.com")

    assert observer.kinds() == [EV_RETRY, EV_CHALLENGE]
    assert observer.of(EV_CHALLENGE)[0].data == {"url": "https://example.com"}


def test_logging_observer_warns_on_challenges(caplog) -> None:
    observer = LoggingObserver(logging.getLogger("shieldfetch.test"))

    with caplog.at_level(logging.DEBUG, logger="shieldfetch.test"):
        observer.emit(EV_CHALLENGE, url="https://example.com")
        observer.emit(EV_RETRY, attempt=2)

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels[0] == (logging.WARNING, "challenge url=https://example.com")
    assert levels[1] == (logging.DEBUG, "retry attempt=2")
