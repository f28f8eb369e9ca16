from __future__ import annotations

import sys
import threading
from collections import Counter

import pytest

from instance_recovery.dispatch.cancel import CommandEntityRunner, DispatchState, cancel_with_retry, dispatch_cancellations
from instance_recovery.utils.commands import CommandFailedError


class ScriptedRunner:
    """Fails the first ``failures[key]`` attempts for each key."""

    def __init__(self, failures):
        self.failures = dict(failures)
        self.attempts = Counter()
        self._lock = threading.Lock()

    def cancel(self, key: int) -> None:
        with self._lock:
            self.attempts[key] += 1
            attempt = self.attempts[key]
        if attempt <= self.failures.get(key, 0):
            raise CommandFailedError(["cancel", str(key)], 1, "NOT_FOUND")


def test_succeeds_on_third_attempt():
    runner = ScriptedRunner({1: 2})
    outcome = cancel_with_retry(1, runner, max_attempts=3)
    assert outcome.state is DispatchState.SUCCESS
    assert outcome.attempts == 3
    assert runner.attempts[1] == 3


def test_fails_after_max_attempts_and_stops():
    runner = ScriptedRunner({1: 100})
    outcome = cancel_with_retry(1, runner, max_attempts=3)
    assert outcome.state is DispatchState.FAILED
    assert outcome.attempts == 3
    assert runner.attempts[1] == 3
    assert "NOT_FOUND" in outcome.last_error


def test_first_attempt_success():
    outcome = cancel_with_retry(5, ScriptedRunner({}))
    assert outcome.state is DispatchState.SUCCESS
    assert outcome.attempts == 1


def test_failed_keys_do_not_block_others():
    keys = list(range(1, 31))
    runner = ScriptedRunner({3: 100, 7: 1, 20: 100})
    result = dispatch_cancellations(keys, runner, workers=10, max_attempts=3)

    assert [o.key for o in result.outcomes] == keys
    assert result.failed == [3, 20]
    assert len(result.succeeded) == 28
    assert runner.attempts[7] == 2
    assert runner.attempts[3] == 3


def test_command_runner_uses_exit_code():
    ok = CommandEntityRunner([sys.executable, "-c", "import sys; sys.exit(0)", "{key}"])
    ok.cancel(42)

    failing = CommandEntityRunner(
        [sys.executable, "-c", "import sys; sys.stderr.write('no such instance ' + sys.argv[1]); sys.exit(1)", "{key}"]
    )
    with pytest.raises(CommandFailedError, match="no such instance 42"):
        failing.cancel(42)
