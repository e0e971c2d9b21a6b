"""Tests for the command-line worker."""

import re

import pytest

from cart_automation.models import RunStatus
from cart_automation.runs.lifecycle import RunLifecycle
from cart_automation.runs.store import JsonFileRunStore
from cart_automation.worker import main

RUN_ID = re.compile(r"run_[0-9a-f]+_[0-9a-f]{12}")


@pytest.fixture
def state_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name, value in {
        "SLACK_BOT_TOKEN": "",
        "SLACK_CHANNEL_ID": "",
        "RETAILER_USERNAME": "",
        "RETAILER_PASSWORD": "",
        "AUTOMATION_BACKEND": "simulated",
        "SIMULATED_SUCCESS_RATE": "1.0",
        "SIMULATED_MIN_DELAY": "0",
        "SIMULATED_MAX_DELAY": "0",
        "CARD_NUMBER": "4111111111111111",
        "CARD_EXPIRATION": "12/30",
        "CARD_CVV": "123",
        "COMPLETE_ORDER": "false",
    }.items():
        monkeypatch.setenv(name, value)
    return tmp_path / "runs.json"


def _lifecycle(state_file):
    return RunLifecycle(JsonFileRunStore(state_file))


def _printed_run_id(capsys):
    lines = capsys.readouterr().out.splitlines()
    return next(line for line in lines if RUN_ID.fullmatch(line))


class TestWorker:
    def test_create_and_process(self, state_file, capsys):
        code = main(["--state-file", str(state_file), "create", "milk", "bread", "--process"])

        assert code == 0
        run_id = _printed_run_id(capsys)
        run = _lifecycle(state_file).get_run(run_id)
        assert run.status == RunStatus.CART_READY
        assert run.success_count == 2

    def test_create_only(self, state_file, capsys):
        assert main(["--state-file", str(state_file), "create", "milk"]) == 0
        run_id = _printed_run_id(capsys)
        assert _lifecycle(state_file).get_run(run_id).status == RunStatus.PENDING

    def test_checkout_ready_run(self, state_file):
        lifecycle = _lifecycle(state_file)
        run_id = lifecycle.create_run([{"name": "milk"}])
        lifecycle.update_status(run_id, RunStatus.RUNNING)
        lifecycle.update_status(run_id, RunStatus.CART_READY)

        assert main(["--state-file", str(state_file), "checkout", run_id]) == 0
        assert lifecycle.get_run(run_id).status == RunStatus.CHECKOUT_COMPLETE

    def test_checkout_refuses_pending_run(self, state_file):
        lifecycle = _lifecycle(state_file)
        run_id = lifecycle.create_run([{"name": "milk"}])

        assert main(["--state-file", str(state_file), "checkout", run_id]) == 1
        assert lifecycle.get_run(run_id).status == RunStatus.PENDING

    def test_unknown_run(self, state_file):
        assert main(["--state-file", str(state_file), "process", "run_missing"]) == 1
        assert main(["--state-file", str(state_file), "checkout", "run_missing"]) == 1

    def test_process_refuses_finished_run(self, state_file):
        lifecycle = _lifecycle(state_file)
        run_id = lifecycle.create_run([{"name": "milk"}])
        for status in (RunStatus.RUNNING, RunStatus.CART_READY, RunStatus.CHECKOUT_STARTED):
            lifecycle.update_status(run_id, status)
        lifecycle.update_status(run_id, RunStatus.CHECKOUT_COMPLETE)

        assert main(["--state-file", str(state_file), "process", run_id]) == 1
        run = lifecycle.get_run(run_id)
        assert run.status == RunStatus.CHECKOUT_COMPLETE
        assert run.success_count == 0
