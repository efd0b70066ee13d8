"""High-level exports for the shieldfetch workflows."""

from .challenge_detector import ChallengeVerdict, challenge_url, detect
from .credentials import BypassCredentials, CredentialStore, SessionCookie, parse_captured_payload
from .destination import LocalDestination, RawFileSink
from .executor import RequestExecutor
from .extraction import ApiClient, ExtractionKind, ExtractionMethod, Extractor, SiteDescriptor
from .fetch_config import EngineConfig
from .handoff import ChallengeResponder, open_in_browser
from .manager import DownloadManager, RunReport, RunState
from .outcomes import (
    ChallengeDetected,
    ChallengeError,
    DownloadCancelled,
    FetchError,
    RetryExhaustedError,
    Success,
    Target,
    TerminalError,
    TransientError,
    TransientFailure,
)
from .queue import DownloadQueue, DownloadTask, TaskStatus
from .rate_limit import IntervalLimiter
from .render import RenderFetcher
from .retry import RetryPolicy, with_retry
from .transport import TransportFetcher

__all__ = [
    "ApiClient",
    "BypassCredentials",
    "ChallengeDetected",
    "ChallengeError",
    "ChallengeResponder",
    "ChallengeVerdict",
    "CredentialStore",
    "DownloadCancelled",
    "DownloadManager",
    "DownloadQueue",
    "DownloadTask",
    "EngineConfig",
    "ExtractionKind",
    "ExtractionMethod",
    "Extractor",
    "FetchError",
    "IntervalLimiter",
    "LocalDestination",
    "RawFileSink",
    "RenderFetcher",
    "RequestExecutor",
    "RetryExhaustedError",
    "RetryPolicy",
    "RunReport",
    "RunState",
    "SessionCookie",
    "SiteDescriptor",
    "Success",
    "Target",
    "TaskStatus",
    "TerminalError",
    "TransientError",
    "TransientFailure",
    "TransportFetcher",
    "challenge_url",
    "detect",
    "open_in_browser",
    "parse_captured_payload",
    "with_retry",
]
