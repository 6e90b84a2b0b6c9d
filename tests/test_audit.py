import asyncio
import json
import logging
import threading
import time
from pathlib import Path

from opswatch.audit import AuditEntry, AuditRecorder


def _entry(path: str = "/alerts", user: str = "anonymous") -> AuditEntry:
    return AuditEntry.now(
        user=user,
        method="GET",
        path=path,
        client_address="10.1.2.3",
        user_agent="curl/8.0",
    )


def test_append_writes_one_json_line_per_entry(tmp_path: Path):
    recorder = AuditRecorder(tmp_path / "audit.log")
    try:
        assert asyncio.run(recorder.append(_entry("/alerts")))
        assert asyncio.run(recorder.append(_entry("/logs/audit", user="alice")))
    finally:
        recorder.close()

    lines = (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first, second = (json.loads(line) for line in lines)
    assert set(first) == {"timestamp", "user", "method", "path", "client_address", "user_agent"}
    assert first["path"] == "/alerts"
    assert second["user"] == "alice"
    assert second["client_address"] == "10.1.2.3"


def test_append_creates_missing_log_dir(tmp_path: Path):
    recorder = AuditRecorder(tmp_path / "nested" / "audit.log")
    try:
        assert recorder.append_sync(_entry())
    finally:
        recorder.close()
    assert (tmp_path / "nested" / "audit.log").exists()


def test_append_failure_is_logged_not_raised(tmp_path: Path, caplog):
    target = tmp_path / "audit.log"
    target.mkdir()
    recorder = AuditRecorder(target)
    try:
        with caplog.at_level(logging.WARNING, logger="opswatch.server"):
            assert asyncio.run(recorder.append(_entry())) is False
    finally:
        recorder.close()
    assert any("Audit append failed" in record.getMessage() for record in caplog.records)


def test_slow_sink_is_bounded(tmp_path: Path, monkeypatch, caplog):
    recorder = AuditRecorder(tmp_path / "audit.log", timeout_sec=0.01)

    def _slow_write(line: str) -> None:
        time.sleep(0.3)

    monkeypatch.setattr(recorder, "_write_line", _slow_write)
    try:
        started = time.perf_counter()
        with caplog.at_level(logging.WARNING, logger="opswatch.server"):
            result = asyncio.run(recorder.append(_entry()))
        elapsed = time.perf_counter() - started
    finally:
        recorder.close()

    assert result is False
    assert elapsed < 0.25
    assert any("exceeded" in record.getMessage() for record in caplog.records)


def test_close_does_not_wait_for_hung_write(tmp_path: Path, monkeypatch):
    recorder = AuditRecorder(tmp_path / "audit.log", timeout_sec=0.01)
    release = threading.Event()

    def _hung_write(line: str) -> None:
        release.wait(2.0)

    monkeypatch.setattr(recorder, "_write_line", _hung_write)
    try:
        assert asyncio.run(recorder.append(_entry())) is False
        started = time.perf_counter()
        recorder.close()
        assert time.perf_counter() - started < 0.5
    finally:
        release.set()
