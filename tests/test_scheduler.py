# tests/test_scheduler.py
import signal
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

from main import Scheduler
from monitor import PriceHistory, run_cycle


def test_trigger_runs_job_and_schedules_next():
    """Should run the job and set the next check relative to completion"""
    finished = []

    def job():
        finished.append(datetime.now())

    scheduler = Scheduler(job, interval_seconds=1800)

    assert scheduler.trigger() is True
    assert len(finished) == 1
    assert scheduler.next_check_at >= finished[0] + timedelta(seconds=1800)
    assert scheduler.next_check_at <= datetime.now() + timedelta(seconds=1800)


def test_trigger_during_cycle_is_skipped():
    """Should skip a trigger while a cycle is still running"""
    nested = []
    scheduler = Scheduler(lambda: nested.append(scheduler.trigger()), 60)

    assert scheduler.trigger() is True
    assert nested == [False]


def test_failing_job_still_advances():
    scheduler = Scheduler(Mock(side_effect=RuntimeError("boom")), 60)

    assert scheduler.trigger() is True
    assert scheduler.next_check_at is not None
    # the guard is released after a failure
    assert scheduler.trigger() is True


def test_run_repeats_until_stopped():
    """Should run immediately and then once per interval until stop()"""
    calls = []
    scheduler = Scheduler(lambda: None, 0)

    def job():
        calls.append(1)
        if len(calls) == 3:
            scheduler.stop()

    scheduler.job = job
    scheduler.run()

    assert len(calls) == 3
    assert scheduler.stopped


def test_run_once():
    job = Mock()
    scheduler = Scheduler(job, 3600)

    scheduler.run(run_once=True)

    job.assert_called_once()


def test_fetch_timeouts_skip_evaluation_but_advance(cfg):
    """Should log the failure, not evaluate, and still schedule the next cycle"""
    notifier = Mock()
    scheduler = Scheduler(lambda: run_cycle(cfg, PriceHistory(), notifier), 1800)

    with patch("monitor.urllib.request.urlopen") as mock_open, patch(
        "monitor.time.sleep"
    ), patch("monitor.evaluate") as mock_evaluate:
        mock_open.side_effect = TimeoutError("timed out")

        assert scheduler.trigger() is True

        assert mock_open.call_count == cfg.max_attempts
        mock_evaluate.assert_not_called()
        assert scheduler.next_check_at is not None
        notifier.notify.assert_called_once()
        assert notifier.notify.call_args[0][1] == "error"


def test_signal_handler_ends_run_without_waiting():
    """Should leave the loop right after the current cycle on SIGTERM"""
    from main import _install_signal_handlers

    handlers = {}
    scheduler = Scheduler(
        lambda: handlers[signal.SIGTERM](signal.SIGTERM, None), interval_seconds=3600
    )

    with patch("main.signal.signal", side_effect=lambda sig, h: handlers.update({sig: h})), patch(
        "monitor.time.sleep"
    ) as mock_sleep:
        _install_signal_handlers(scheduler)
        scheduler.run()

    assert scheduler.stopped
    assert set(handlers) == {signal.SIGINT, signal.SIGTERM}
    mock_sleep.assert_not_called()


def test_wait_between_cycles_polls_stop_flag():
    """Should wake from the interval wait once stop() is called"""
    calls = []
    scheduler = Scheduler(lambda: calls.append(1), interval_seconds=3600)

    def sleep_then_stop(seconds):
        assert seconds <= 0.5
        scheduler.stop()

    with patch("monitor.time.sleep", side_effect=sleep_then_stop) as mock_sleep:
        scheduler.run()

    assert calls == [1]
    mock_sleep.assert_called_once()
