import threading
from unittest.mock import MagicMock

import pytest

from pgbulk.deadline import Deadline


def test_expiry_runs_callback_and_marks_expired():
    fired = threading.Event()
    deadline = Deadline(0.01, fired.set)

    deadline.start()

    assert fired.wait(2)
    assert deadline.expired
    assert deadline.settle() is True


def test_settle_before_expiry_wins_and_cancels_timer():
    on_expire = MagicMock()
    deadline = Deadline(0.05, on_expire)

    with deadline:
        pass

    assert deadline.settle() is False
    assert deadline._timer is not None
    deadline._timer.join(1)
    assert not deadline._timer.is_alive()
    on_expire.assert_not_called()
    assert not deadline.expired


def test_late_timer_after_settle_is_ignored():
    on_expire = MagicMock()
    deadline = Deadline(10, on_expire)

    deadline.settle()
    deadline._fire()

    on_expire.assert_not_called()
    assert not deadline.expired


def test_context_manager_settles_on_exception():
    on_expire = MagicMock()
    deadline = Deadline(10, on_expire)

    try:
        with deadline:
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert deadline._timer.finished.is_set()
    deadline._fire()
    on_expire.assert_not_called()


def test_settle_waits_for_teardown_when_timer_won():
    entered = threading.Event()
    release = threading.Event()
    finished = []

    def on_expire():
        entered.set()
        release.wait(2)
        finished.append(True)

    deadline = Deadline(0.01, on_expire)
    deadline.start()
    assert entered.wait(2)

    threading.Timer(0.05, release.set).start()
    assert deadline.settle() is True
    assert finished == [True]


def test_overrun_runs_when_operation_outlives_grace():
    overrun = threading.Event()
    deadline = Deadline(0.01, MagicMock(), on_overrun=overrun.set, grace=0.02)

    deadline.start()

    assert overrun.wait(2)
    assert deadline.settle() is True


def test_overrun_skipped_when_operation_settles_in_grace():
    on_overrun = MagicMock()
    deadline = Deadline(0.01, MagicMock(), on_overrun=on_overrun, grace=0.2)

    deadline.start()
    deadline._timer.join(2)
    deadline.settle()
    deadline._grace_timer.join(2)

    on_overrun.assert_not_called()


def test_seconds_are_coerced_up_front():
    assert Deadline("10", MagicMock()).seconds == 10.0
    with pytest.raises(ValueError):
        Deadline("ten", MagicMock())
