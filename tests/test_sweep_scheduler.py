from datetime import timedelta

import schedule

from conftest import NOW, SUBJECT
from sweep_scheduler import SweepScheduler
from verification_models import EpisodeStatus, SweepReport


class ExplodingEngine:
    def sweep_resolve(self, now=None):
        raise RuntimeError("database unavailable")


def test_run_now_resolves_due_episodes(engine, subject):
    engine.schedule(SUBJECT, NOW - timedelta(days=31), 30)
    report = SweepScheduler(engine).run_now()
    assert isinstance(report, SweepReport)
    assert len(report.resolved) == 1
    assert engine.get_status(SUBJECT).status == EpisodeStatus.VERIFIED


def test_run_now_logs_engine_errors():
    assert SweepScheduler(ExplodingEngine()).run_now() is None


def test_start_registers_daily_job_and_stop_clears_it(engine):
    scheduler = SweepScheduler(engine, at_time="03:30", poll_seconds=0.01)
    scheduler.start()
    try:
        assert scheduler.is_running
        job = scheduler.scheduler.jobs[0]
        assert job.unit == 'days'
        assert str(job.at_time) == '03:30:00'
        assert scheduler.next_run() is not None
        # Private scheduler; the library's default one stays empty
        assert schedule.jobs == []
    finally:
        scheduler.stop()
    assert not scheduler.is_running
    assert scheduler.scheduler.jobs == []


def test_start_twice_keeps_one_thread(engine):
    scheduler = SweepScheduler(engine, poll_seconds=0.01)
    scheduler.start()
    thread = scheduler._thread
    scheduler.start()
    assert scheduler._thread is thread
    assert len(scheduler.scheduler.jobs) == 1
    scheduler.stop()
