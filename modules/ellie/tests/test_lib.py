"""Tests for the small shared helpers in lib/."""

import logging
import os
import sys
import threading
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from lib.config import get_db_path, get_ellie_home, get_ollama_url, get_tuning_audit_path
from lib.database import get_connection
from lib.errors import ConfigurationError
from lib.fail_policy import is_fail_hard_enabled
from lib.log_setup import configure_logging
from lib.normalize import (
    clamp_unit,
    dedupe_trimmed,
    format_rfc3339,
    format_timestamp,
    is_finite_number,
    parse_timestamp,
    truncate,
)
from lib.polling import PollingWorker, run_polling_loop


class TestNormalize:
    def test_clamp_unit(self):
        assert clamp_unit(1.5) == 1.0
        assert clamp_unit(-2) == 0.0
        assert clamp_unit(float("nan")) == 0.0
        assert clamp_unit(float("inf")) == 0.0
        assert clamp_unit("0.25") == 0.25
        assert clamp_unit(None) == 0.0

    def test_is_finite_number(self):
        assert is_finite_number(3)
        assert is_finite_number("2.5")
        assert not is_finite_number(True)
        assert not is_finite_number(float("nan"))
        assert not is_finite_number("abc")

    def test_dedupe_trimmed_keeps_first_order(self):
        assert dedupe_trimmed([" b", "a", "b ", "", None, "a"]) == ["b", "a"]
        assert dedupe_trimmed(None) == []

    def test_truncate(self):
        assert truncate("abcdef", 3) == "abc"
        assert truncate("abc", 0) == "abc"

    def test_parse_timestamp_zulu_and_naive(self):
        assert parse_timestamp("2026-01-02T03:04:05Z") == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        naive = parse_timestamp(datetime(2026, 1, 2))
        assert naive.tzinfo == timezone.utc
        assert parse_timestamp("not a date") is None
        assert parse_timestamp("") is None

    def test_parse_timestamp_converts_offsets(self):
        parsed = parse_timestamp("2026-01-02T05:00:00+02:00")
        assert parsed == datetime(2026, 1, 2, 3, 0, tzinfo=timezone.utc)

    def test_format_timestamp_sorts_lexically(self):
        a = datetime(2026, 1, 1, 0, 0, 0, 5, tzinfo=timezone.utc)
        b = a + timedelta(microseconds=10)
        assert format_timestamp(a) < format_timestamp(b)
        assert format_timestamp(a) == "2026-01-01T00:00:00.000005Z"
        assert format_timestamp(None) == ""

    def test_format_rfc3339(self):
        assert format_rfc3339(datetime(2026, 3, 4, 5, 6, 7, 999)) == "2026-03-04T05:06:07Z"


class TestPaths:
    def test_home_and_db_from_env(self, ellie_home):
        assert get_ellie_home() == ellie_home
        assert get_db_path() == ellie_home / "data" / "ellie.db"

    def test_db_path_from_config(self, monkeypatch, write_config, ellie_home):
        monkeypatch.delenv("ELLIE_DB_PATH")
        write_config({"database": {"path": "store/mem.db"}})
        assert get_db_path() == ellie_home / "store" / "mem.db"

    def test_absolute_audit_path(self, write_config, tmp_path):
        target = tmp_path / "audit.jsonl"
        write_config({"tuner": {"auditPath": str(target)}})
        assert get_tuning_audit_path() == target

    def test_ollama_url_env_override(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_URL", "http://gpu:11434")
        assert get_ollama_url() == "http://gpu:11434"


class TestDatabase:
    def test_commits_on_success(self, tmp_path):
        path = tmp_path / "t.db"
        with get_connection(path) as conn:
            conn.execute("CREATE TABLE t (x INTEGER)")
            conn.execute("INSERT INTO t VALUES (1)")
        with get_connection(path) as conn:
            assert conn.execute("SELECT COUNT(*) AS n FROM t").fetchone()["n"] == 1

    def test_rolls_back_on_error(self, tmp_path):
        path = tmp_path / "t.db"
        with get_connection(path) as conn:
            conn.execute("CREATE TABLE t (x INTEGER)")
        with pytest.raises(RuntimeError):
            with get_connection(path) as conn:
                conn.execute("INSERT INTO t VALUES (1)")
                raise RuntimeError("boom")
        with get_connection(path) as conn:
            assert conn.execute("SELECT COUNT(*) AS n FROM t").fetchone()["n"] == 0


class TestFailPolicy:
    def test_default_enabled(self):
        assert is_fail_hard_enabled() is True

    def test_disabled_by_config(self, write_config):
        write_config({"retrieval": {"fail_hard": False}})
        assert is_fail_hard_enabled() is False


class TestLogSetup:
    def test_sets_level(self):
        root = logging.getLogger()
        old = root.level
        try:
            configure_logging("debug")
            assert root.level == logging.DEBUG
            configure_logging("nonsense")
            assert root.level == logging.INFO
        finally:
            root.setLevel(old)


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class TestRunPollingLoop:
    def test_drains_without_sleeping_then_idles(self):
        stop = threading.Event()
        batches = [3, 2, 0]
        calls = []

        def run_once():
            calls.append(1)
            if not batches:
                stop.set()
                return 0
            value = batches.pop(0)
            if value == 0:
                stop.set()
            return value

        total = run_polling_loop("test", run_once, stop, poll_interval=0.01)
        assert total == 5
        assert len(calls) == 3

    def test_errors_do_not_kill_loop(self, caplog):
        stop = threading.Event()
        state = {"n": 0}

        def run_once():
            state["n"] += 1
            if state["n"] == 1:
                raise RuntimeError("store down")
            stop.set()
            return 0

        with caplog.at_level(logging.ERROR):
            run_polling_loop("flaky", run_once, stop, poll_interval=0.0, error_interval=0.0)
        assert state["n"] == 2
        assert "store down" in caplog.text

    def test_configuration_error_ends_loop(self):
        stop = threading.Event()
        calls = []

        def run_once():
            calls.append(1)
            raise ConfigurationError("store is required")

        with pytest.raises(ConfigurationError):
            run_polling_loop("broken", run_once, stop, poll_interval=0.0, error_interval=0.0)
        assert len(calls) == 1
        assert not stop.is_set()

    def test_stop_interrupts_idle_wait(self):
        stop = threading.Event()

        class Idle(PollingWorker):
            name = "idle"
            poll_interval = 30.0

            def _run_batch(self):
                return 0

        thread = Idle().start_in_thread(stop)
        stop.set()
        thread.join(timeout=2.0)
        assert not thread.is_alive()
