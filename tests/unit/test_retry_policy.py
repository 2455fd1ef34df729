"""Unit tests for engine/retry_policy.py."""

import pytest

from specforge.engine.retry_policy import RetryPolicy
from specforge.enums import AttemptOutcome, Decision
from specforge.models.domain import Task, TaskAttempt


def finished(attempt_number: int, outcome: AttemptOutcome, task_id: str = "t") -> TaskAttempt:
    attempt = TaskAttempt(task_id=task_id, attempt_number=attempt_number)
    attempt.finish(outcome)
    return attempt


@pytest.fixture
def task() -> Task:
    return Task(id="t", phase_name="p", max_attempts=3)


class TestDecide:
    """Tests for RetryPolicy.decide."""

    def test_success_is_done(self, task):
        assert RetryPolicy().decide(task, finished(1, AttemptOutcome.SUCCESS)) is Decision.DONE

    @pytest.mark.parametrize("max_attempts", [1, 3, 10])
    def test_fatal_escalates_on_first_attempt(self, max_attempts):
        task = Task(id="t", phase_name="p", max_attempts=max_attempts)

        decision = RetryPolicy().decide(task, finished(1, AttemptOutcome.FATAL_FAILURE))

        assert decision is Decision.ESCALATE

    def test_transient_below_limit_retries(self, task):
        policy = RetryPolicy()

        assert policy.decide(task, finished(1, AttemptOutcome.TRANSIENT_FAILURE)) is Decision.RETRY
        assert policy.decide(task, finished(2, AttemptOutcome.TRANSIENT_FAILURE)) is Decision.RETRY

    def test_transient_at_limit_escalates(self, task):
        decision = RetryPolicy().decide(task, finished(3, AttemptOutcome.TRANSIENT_FAILURE))

        assert decision is Decision.ESCALATE

    def test_unfinished_attempt_is_rejected(self, task):
        with pytest.raises(ValueError, match="not finished"):
            RetryPolicy().decide(task, TaskAttempt(task_id="t", attempt_number=1))

    def test_attempt_of_other_task_is_rejected(self, task):
        with pytest.raises(ValueError):
            RetryPolicy().decide(task, finished(1, AttemptOutcome.SUCCESS, task_id="other"))


class TestBackoff:
    """Tests for the delay between attempts."""

    def test_default_retries_immediately(self):
        policy = RetryPolicy()

        assert [policy.delay_before(n) for n in range(1, 5)] == [0.0, 0.0, 0.0, 0.0]

    def test_exponential_delay(self):
        policy = RetryPolicy(backoff_factor=2.0)

        assert policy.delay_before(1) == 0.0
        assert policy.delay_before(2) == 2.0
        assert policy.delay_before(3) == 4.0
        assert policy.delay_before(4) == 8.0

    def test_delay_is_capped(self):
        assert RetryPolicy(backoff_factor=10.0, max_delay=30.0).delay_before(5) == 30.0

    def test_negative_factor_is_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(backoff_factor=-1)
