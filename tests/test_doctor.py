from pathlib import Path

from shieldfetch.workflows import doctor, render
from shieldfetch.workflows.fetch_config import EngineConfig


def _config(tmp_path: Path) -> EngineConfig:
    creds = tmp_path / "creds"
    creds.mkdir()
    return EngineConfig(credentials_dir=creds, work_dir=tmp_path / "work")


def _check(report, name):
    return next(c for c in report["checks"] if c["name"] == name)


def test_redact_value() -> None:
    assert doctor.redact_value("") == ""
    assert doctor.redact_value("short") == "*****"
    assert doctor.redact_value("cf_clearance_value_1234") == "cf_c...1234"


def test_report_flags_missing_playwright(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(render, "async_playwright", None)

    report = doctor.build_doctor_report(_config(tmp_path))

    assert report["ok"] is False
    assert _check(report, "playwright")["status"] == "missing"
    assert _check(report, "SHIELDFETCH_CREDENTIALS_DIR")["status"] == "ok"
    assert _check(report, "SHIELDFETCH_WORK_DIR")["status"] == "ok"


def test_report_ok_when_everything_present(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(render, "async_playwright", object())
    monkeypatch.setenv("SHIELDFETCH_USER_AGENT", "Mozilla/5.0 Test")

    report = doctor.build_doctor_report(_config(tmp_path))
    text = doctor.format_doctor_report(report)

    assert report["ok"] is True
    assert report["environment"]["SHIELDFETCH_USER_AGENT"] == "Mozilla/5.0 Test"
    assert text.startswith("shieldfetch doctor\n")
    assert "- [warn] brotli: ok" in text
    assert "SHIELDFETCH_USER_AGENT=Mozilla/5.0 Test" in text


def test_unwritable_work_dir_is_reported(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(render, "async_playwright", object())
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    config = _config(tmp_path)
    config.work_dir = blocker / "work"

    report = doctor.build_doctor_report(config)

    assert _check(report, "SHIELDFETCH_WORK_DIR")["status"] == "missing"
    assert report["ok"] is False
