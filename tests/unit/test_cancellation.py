"""
Unit tests for cancellation checks (zesty_backup/utils/cancellation.py).
"""

import pytest

from zesty_backup.errors import CycleTimeout, ExitCode
from zesty_backup.utils.cancellation import Deadline, command_timeout


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestDeadline:
    """Test Deadline budget tracking."""

    def test_remaining_and_expiry(self):
        clock = FakeClock(100.0)
        deadline = Deadline(60, clock=clock)

        assert deadline.remaining == 60
        assert not deadline.expired
        deadline()

        clock.now = 130.0
        assert deadline.remaining == 30

        clock.now = 170.0
        assert deadline.remaining == 0
        assert deadline.expired

    def test_raises_cycle_timeout(self):
        clock = FakeClock()
        deadline = Deadline(10, label='upload cycle', clock=clock)
        clock.now = 10.0

        with pytest.raises(CycleTimeout) as exc_info:
            deadline()
        assert 'upload cycle' in str(exc_info.value)
        assert exc_info.value.exit_code == ExitCode.TIMEOUT

    def test_no_budget_never_expires(self):
        deadline = Deadline(None, clock=FakeClock(1e9))

        assert deadline.remaining is None
        assert not deadline.expired
        deadline()


class TestCommandTimeout:
    def test_without_check(self):
        assert command_timeout(300) == 300

    def test_capped_by_deadline(self):
        clock = FakeClock()
        deadline = Deadline(120, clock=clock)
        clock.now = 100.0

        assert command_timeout(300, deadline) == 20
        assert command_timeout(5, deadline) == 5

    def test_unbounded_deadline(self):
        assert command_timeout(300, Deadline(None)) == 300

    def test_plain_check_is_called(self):
        def stopped():
            raise CycleTimeout("shutting down")

        with pytest.raises(CycleTimeout):
            command_timeout(300, stopped)

    def test_expired_deadline_raises(self):
        clock = FakeClock()
        deadline = Deadline(1, clock=clock)
        clock.now = 2.0

        with pytest.raises(CycleTimeout):
            command_timeout(300, deadline)
