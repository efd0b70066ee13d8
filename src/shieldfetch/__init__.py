"""Anti-bot aware fetch orchestration (transport, render, credentials, downloads)."""

__version__ = "0.1.0"
