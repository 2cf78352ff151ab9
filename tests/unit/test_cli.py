"""Unit tests for the command line: ``capbot state ...`` and :func:`capbot.__main__.main`."""

from __future__ import annotations

import argparse
import json
import os
import time
from pathlib import Path

import pytest

from capbot.__main__ import main
from capbot.core.settings import Settings
from capbot.storage.cli import add_state_parser, parse_bool, run_state_command
from capbot.storage.file_store import FileStateStore
from capbot.storage.state import (
    FailureRecord,
    LimitRecord,
    RotationLogEntry,
    State,
    StateRecord,
)


@pytest.fixture()
def settings(clean_env: None, tmp_path: Path) -> Settings:
    return Settings(state_dir=str(tmp_path / "state"))


@pytest.fixture()
def store(settings: Settings) -> FileStateStore:
    return FileStateStore(settings.state_path)


def _state(argv: list[str], settings: Settings) -> int:
    parser = argparse.ArgumentParser(prog="capbot")
    add_state_parser(parser.add_subparsers(dest="command", required=True))
    return run_state_command(parser.parse_args(["state", *argv]), settings)


def _seed(store: FileStateStore) -> None:
    state = State.empty()
    state.records["a1-flex-sg"] = StateRecord(
        request_id="a1-flex-sg", resource_id="ocid1.instance.a", target_used="AD-2"
    )
    for key, count in (("VM.Standard.A1.Flex:AD-1", 3), ("VM.Standard.E2.1.Micro:AD-3", 1)):
        state.failures[key] = FailureRecord(key=key, count=count, last_failure=int(time.time()))
    state.limits["VM.Standard.A1.Flex"] = LimitRecord(reached=True)
    state.limits["VM.Standard.E2.1.Micro"] = LimitRecord(
        reached=True, updated=int(time.time()) - 72 * 3600
    )
    state.log_rotation(
        RotationLogEntry(shape_class="VM.Standard.E2.1.Micro", attempted=1, succeeded=1)
    )
    store.save(state)


class TestParseBool:
    @pytest.mark.parametrize("value", ["true", "YES", "1", " on "])
    def test_true(self, value: str) -> None:
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "No", "0", "off"])
    def test_false(self, value: str) -> None:
        assert parse_bool(value) is False

    def test_invalid(self) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            parse_bool("maybe")


class TestInitHealthPrint:
    def test_init_creates_file(
        self, settings: Settings, store: FileStateStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert _state(["init"], settings) == 0
        assert store.exists()
        assert "Initialised" in capsys.readouterr().out

    def test_init_keeps_existing(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        assert _state(["init"], settings) == 0
        assert "a1-flex-sg" in store.load().records

    def test_health_ok(
        self, settings: Settings, store: FileStateStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed(store)
        assert _state(["health"], settings) == 0
        out = capsys.readouterr().out
        assert "permissions: 0o600" in out
        assert "records=1 failures=2 limits=2 rotations=1" in out

    def test_health_missing(self, settings: Settings) -> None:
        assert _state(["health"], settings) == 1

    def test_health_corrupt_file_is_not_moved(
        self, settings: Settings, store: FileStateStore
    ) -> None:
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{oops")
        assert _state(["health"], settings) == 1
        assert store.path.read_text() == "{oops"

    def test_health_open_permissions(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        os.chmod(store.path, 0o644)
        assert _state(["health"], settings) == 1

    def test_print(
        self, settings: Settings, store: FileStateStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed(store)
        assert _state(["print"], settings) == 0
        document = json.loads(capsys.readouterr().out)
        assert document["records"]["a1-flex-sg"]["resource_id"] == "ocid1.instance.a"

    def test_print_missing_is_empty_state(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert _state(["print"], settings) == 0
        assert json.loads(capsys.readouterr().out)["records"] == {}


class TestStats:
    def test_stats(
        self, settings: Settings, store: FileStateStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed(store)
        assert _state(["stats"], settings) == 0
        out = capsys.readouterr().out
        assert "a1-flex-sg: ocid1.instance.a in AD-2 (unverified)" in out
        assert "Tracked targets (shape:target): 2" in out
        assert "VM.Standard.A1.Flex:AD-1: 3 failure(s), OPEN" in out
        assert "VM.Standard.E2.1.Micro:AD-3: 1 failure(s), closed" in out
        assert "1/1 retired" in out


class TestLimits:
    def test_limit_status_marks_stale(
        self, settings: Settings, store: FileStateStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed(store)
        assert _state(["limit-status"], settings) == 0
        lines = capsys.readouterr().out.splitlines()
        micro = next(line for line in lines if line.startswith("VM.Standard.E2.1.Micro"))
        flex = next(line for line in lines if line.startswith("VM.Standard.A1.Flex"))
        assert micro.endswith("(stale)")
        assert not flex.endswith("(stale)")

    def test_check_limit(
        self, settings: Settings, store: FileStateStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed(store)
        _state(["check-limit", "VM.Standard.A1.Flex"], settings)
        _state(["check-limit", "VM.Standard.E2.1.Micro"], settings)
        _state(["check-limit", "VM.Unknown"], settings)
        assert capsys.readouterr().out.split() == ["true", "false", "false"]

    def test_set_and_clear(self, settings: Settings, store: FileStateStore) -> None:
        assert _state(["set-limit", "VM.Standard.A1.Flex", "yes"], settings) == 0
        assert store.load().limits["VM.Standard.A1.Flex"].reached

        assert _state(["set-limit", "VM.Standard.A1.Flex", "false"], settings) == 0
        assert not store.load().limits["VM.Standard.A1.Flex"].reached

        assert _state(["clear-limits"], settings) == 0
        assert store.load().limits == {}

    def test_set_limit_rejects_bad_bool(self, settings: Settings) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _state(["set-limit", "VM.Standard.A1.Flex", "maybe"], settings)
        assert exc_info.value.code == 2


class TestRecords:
    def test_reset(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        assert _state(["reset", "a1-flex-sg"], settings) == 0
        assert "a1-flex-sg" not in store.load().records

    def test_reset_unknown(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        assert _state(["reset", "nope"], settings) == 1

    def test_verify(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        assert _state(["verify", "a1-flex-sg"], settings) == 0
        assert store.load().records["a1-flex-sg"].verified

    def test_verify_unknown(self, settings: Settings) -> None:
        assert _state(["verify", "nope"], settings) == 1


class TestPurge:
    def test_needs_confirm(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        assert _state(["purge"], settings) == 1
        assert store.exists()

    def test_purge(self, settings: Settings, store: FileStateStore) -> None:
        _seed(store)
        assert _state(["purge", "--confirm"], settings) == 0
        assert not store.exists()


# ---------------------------------------------------------------------------
# Process entry-point
# ---------------------------------------------------------------------------


class TestMain:
    def test_state_command_exit_code(
        self, clean_env: None, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        with pytest.raises(SystemExit) as exc_info:
            main(["state", "init"])
        assert exc_info.value.code == 0
        assert (tmp_path / "instance-state.json").is_file()

    def test_invalid_settings_exit_3(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CIRCUIT_BREAKER_THRESHOLD", "zero")
        with pytest.raises(SystemExit) as exc_info:
            main(["state", "stats"])
        assert exc_info.value.code == 3

    def test_run_without_oci_config_exit_3(self, clean_env: None) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["run", "--dry-run"])
        assert exc_info.value.code == 3

    def test_unknown_command(self, clean_env: None) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["explode"])
        assert exc_info.value.code == 2
