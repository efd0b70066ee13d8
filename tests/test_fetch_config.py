import os
from pathlib import Path

from shieldfetch.workflows.fetch_config import DEFAULT_RATE_INTERVAL, DEFAULT_TIMEOUT, EngineConfig


def _clear(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("SHIELDFETCH_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults_without_environment(monkeypatch, tmp_path: Path) -> None:
    _clear(monkeypatch)
    config = EngineConfig.from_env(dotenv_path=tmp_path / "missing.env")

    assert config.timeout == DEFAULT_TIMEOUT
    assert config.rate_interval == DEFAULT_RATE_INTERVAL
    assert config.transport_attempts == 5
    assert config.retry_attempts == 3
    assert config.credential_max_age is None
    assert config.handoff_enabled is True


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv("SHIELDFETCH_CREDENTIALS_DIR", str(tmp_path / "c"))
    monkeypatch.setenv("SHIELDFETCH_TIMEOUT", "3.5")
    monkeypatch.setenv("SHIELDFETCH_RETRY_ATTEMPTS", "0")
    monkeypatch.setenv("SHIELDFETCH_RATE_INTERVAL", "not-a-number")
    monkeypatch.setenv("SHIELDFETCH_CREDENTIAL_MAX_AGE_HOURS", "2")
    monkeypatch.setenv("SHIELDFETCH_PLAYWRIGHT_HEADED", "yes")
    monkeypatch.setenv("SHIELDFETCH_NO_HANDOFF", "1")

    config = EngineConfig.from_env(dotenv_path=tmp_path / "missing.env")

    assert config.credentials_dir == tmp_path / "c"
    assert config.timeout == 3.5
    assert config.retry_attempts == 1
    assert config.rate_interval == DEFAULT_RATE_INTERVAL
    assert config.credential_max_age == 7200.0
    assert config.headed is True
    assert config.handoff_enabled is False


def test_dotenv_file_does_not_override_real_environment(monkeypatch, tmp_path: Path) -> None:
    _clear(monkeypatch)
    env_file = tmp_path / ".env"
    env_file.write_text("SHIELDFETCH_TIMEOUT=7\nSHIELDFETCH_USER_AGENT=FromFile/1.0\n", encoding="utf-8")
    monkeypatch.setenv("SHIELDFETCH_TIMEOUT", "12")

    config = EngineConfig.from_env(dotenv_path=env_file)

    assert config.timeout == 12.0
    assert config.user_agent == "FromFile/1.0"
    # load_dotenv writes straight into os.environ
    os.environ.pop("SHIELDFETCH_USER_AGENT", None)
