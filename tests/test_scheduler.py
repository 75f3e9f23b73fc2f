import threading
from unittest.mock import MagicMock

from baseleague.domain.models import RunSummary
from baseleague.services.scheduler import JOB_ID, SettlementScheduler


class BlockingOrchestrator:
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.stops = []

    def run_once(self, stop=None):
        self.stops.append(stop)
        self.entered.set()
        self.release.wait(timeout=5)
        return RunSummary(processed=1, settled=1)


def test_run_pending_single_flight():
    orch = BlockingOrchestrator()
    sched = SettlementScheduler(orch, scheduler=MagicMock(running=False))
    results = []
    worker = threading.Thread(target=lambda: results.append(sched.run_pending()))
    worker.start()
    assert orch.entered.wait(timeout=5)

    assert sched.busy
    assert sched.run_pending() is None   # overlapping trigger skipped

    orch.release.set()
    worker.join(timeout=5)
    assert results[0].settled == 1
    assert not sched.busy
    assert len(orch.stops) == 1


def test_stop_token_is_passed_and_blocks_new_passes():
    orch = MagicMock()
    orch.run_once.return_value = RunSummary()
    sched = SettlementScheduler(orch, scheduler=MagicMock(running=False))
    sched.run_pending()
    stop = orch.run_once.call_args.kwargs["stop"]
    assert not stop.is_set()

    sched.shutdown()
    assert stop.is_set()
    assert sched.run_pending() is None
    assert orch.run_once.call_count == 1


def test_crashed_pass_releases_guard():
    orch = MagicMock()
    orch.run_once.side_effect = RuntimeError("boom")
    sched = SettlementScheduler(orch, scheduler=MagicMock(running=False))
    assert sched.run_pending() is None
    assert not sched.busy


def test_start_registers_cron_and_startup_jobs():
    backend = MagicMock(running=False)
    sched = SettlementScheduler(MagicMock(), "*/10 * * * *", run_on_startup=True, scheduler=backend)
    sched.start()

    assert backend.add_job.call_count == 2
    cron_call, startup_call = backend.add_job.call_args_list
    assert cron_call.kwargs["id"] == JOB_ID
    assert cron_call.kwargs["max_instances"] == 1
    assert "trigger" not in startup_call.kwargs
    backend.start.assert_called_once()


def test_shutdown_stops_running_backend():
    backend = MagicMock(running=True)
    sched = SettlementScheduler(MagicMock(), scheduler=backend)
    sched.shutdown()
    backend.shutdown.assert_called_once_with(wait=True)
