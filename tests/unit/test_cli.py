import os
import random
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from objloadtest.__main__ import build_parser, main
from objloadtest.cli import cmd_cleanup, cmd_init, cmd_run
from objloadtest.cli.common import prepare
from objloadtest.logging_setup import get_logger
from objloadtest.scheduler import TestScheduler
from tests.mocks import FakeResponse, MockProvider, ScriptedPool

MB = 1024 * 1024
ARGS = SimpleNamespace(log_level="ERROR", log_file=None)


def _scheduler(**results):
    scheduler = MagicMock()
    scheduler.container = "objtest0"
    for name, value in results.items():
        getattr(scheduler, name).return_value = value
    return scheduler


# --------------------------------------------------------------------------- #
# Entry point
# --------------------------------------------------------------------------- #
def test_parser_accepts_commands():
    args = build_parser().parse_args(["run", "--log-level", "DEBUG"])
    assert args.command == "run"
    assert args.log_level == "DEBUG"


def test_main_without_command_prints_help(capsys):
    assert main([]) == 0
    assert "objloadtest" in capsys.readouterr().out


def test_main_rejects_unknown_command():
    with pytest.raises(SystemExit):
        main(["start"])


@patch("objloadtest.cli.cmd_run", side_effect=KeyboardInterrupt)
def test_main_interrupted(mock_run):
    assert main(["run"]) == 130


@patch("objloadtest.cli.cmd_cleanup", return_value=3)
def test_main_returns_command_exit_code(mock_cleanup):
    assert main(["cleanup"]) == 3


# --------------------------------------------------------------------------- #
# Shared setup
# --------------------------------------------------------------------------- #
def test_prepare_reports_invalid_configuration(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ, {"OBJLOADTEST_DURATION": "forever"}):
        scheduler, _ = prepare(ARGS, "run")
    assert scheduler is None


def test_prepare_reports_unknown_api(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ, {"OBJLOADTEST_API": "tape"}):
        scheduler, _ = prepare(ARGS, "init")
    assert scheduler is None


# --------------------------------------------------------------------------- #
# Commands
# --------------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "results, expected",
    [
        ({"validate": False}, 1),
        ({"validate": True, "init_container": False}, 2),
        ({"validate": True, "init_container": True, "init_objects": False}, 3),
        ({"validate": True, "init_container": True, "init_objects": True}, 0),
    ],
)
def test_init_exit_codes(results, expected):
    scheduler = _scheduler(**results)
    with patch("objloadtest.cli.init.prepare", return_value=(scheduler, get_logger())):
        assert cmd_init(ARGS) == expected


def test_init_without_configuration():
    with patch("objloadtest.cli.init.prepare", return_value=(None, get_logger())):
        assert cmd_init(ARGS) == 1


@pytest.mark.parametrize(
    "results, expected",
    [
        ({"cleanup_objects": False}, 2),
        ({"cleanup_objects": True, "cleanup_container": False}, 3),
        ({"cleanup_objects": True, "cleanup_container": True}, 0),
    ],
)
def test_cleanup_exit_codes(results, expected):
    scheduler = _scheduler(**results)
    with patch("objloadtest.cli.cleanup.prepare", return_value=(scheduler, get_logger())):
        assert cmd_cleanup(ARGS) == expected


def test_run_prints_results(make_config, clock, capsys):
    config = make_config(sizes={"1MB": MB, "10MB": 10 * MB})
    provider = MockProvider(
        config, objects={"test1mb.bin": MB, "test10mb.bin": 10 * MB},
    )

    def handler(*args):
        clock.advance(1)
        return FakeResponse(200, body=b"x" * 4)

    scheduler = TestScheduler(
        config,
        provider,
        pool=ScriptedPool(handler),
        clock=clock,
        sleep=clock.sleep,
        rng=random.Random(1),
    )
    with patch("objloadtest.cli.run.prepare", return_value=(scheduler, get_logger())):
        assert cmd_run(ARGS) == 0

    lines = capsys.readouterr().out.splitlines()
    assert "[results]" in lines
    assert "ops=5" in lines
    assert "ops_pull=5" in lines
    assert "status_codes=200/5" in lines


def test_run_fails_when_objects_cannot_be_initialized():
    scheduler = _scheduler(validate=True, init_objects=False)
    with patch("objloadtest.cli.run.prepare", return_value=(scheduler, get_logger())):
        assert cmd_run(ARGS) == 1
    scheduler.run.assert_not_called()


def test_run_fails_when_aborted_before_measurement():
    scheduler = _scheduler(validate=True, init_objects=True, run=None)
    with patch("objloadtest.cli.run.prepare", return_value=(scheduler, get_logger())):
        assert cmd_run(ARGS) == 1
