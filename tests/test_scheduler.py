import logging
import threading
import time
from unittest.mock import MagicMock

import pytest

from rsfc_pipeline.ledger import get_ledger
from rsfc_pipeline.pipeline import PipelineOutcome, PipelineState
from rsfc_pipeline.scheduler import RunSummary, Scheduler, UnitOutcome, compute_max_parallel, run_unit
from rsfc_pipeline.sessions import SubjectSession


def outcome(unit, pipeline="fmri", ok=True, failed_step=None):
    state = PipelineState.COMPLETED if ok else PipelineState.FAILED
    return PipelineOutcome(unit, pipeline, state, failed_step=failed_step)


class StubPipelineRunner:
    """Records calls and tracks how many units run at the same time."""

    def __init__(self, fail=(), crash=(), delay=0.0):
        self.fail = set(fail)
        self.crash = set(crash)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def run(self, pipeline, unit):
        with self._lock:
            self.calls.append((pipeline, unit.label))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.delay)
            if unit.label in self.crash or (pipeline, unit.label) in self.crash:
                raise RuntimeError("worker blew up")
            if (pipeline, unit.label) in self.fail:
                return outcome(unit, pipeline, ok=False, failed_step="functional")
            return outcome(unit, pipeline)
        finally:
            with self._lock:
                self.active -= 1


UNITS = [SubjectSession(f"sub-{i:02d}") for i in range(6)]


# ---------------------------------------------------------------------------
# compute_max_parallel
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "cores, threads, expected",
    [(8, 3, 2), (12, 6, 2), (6, 6, 1), (64, 6, 10), (8, 16, 1), (None, 2, 1)],
)
def test_compute_max_parallel(cores, threads, expected):
    assert compute_max_parallel(cores, threads) == expected


def test_compute_max_parallel_warns_when_clamped(caplog):
    with caplog.at_level(logging.WARNING, logger="rsfc_pipeline"):
        assert compute_max_parallel(8, 16) == 1
    assert "1 unit at a time" in caplog.text


def test_compute_max_parallel_silent_when_enough_cores(caplog):
    with caplog.at_level(logging.WARNING, logger="rsfc_pipeline"):
        compute_max_parallel(8, 3)
    assert caplog.text == ""


# ---------------------------------------------------------------------------
# run_unit
# ---------------------------------------------------------------------------


def test_run_unit_runs_pipelines_in_order():
    runner = StubPipelineRunner()
    unit = SubjectSession("sub-01")
    result = run_unit(runner, unit, ["fmri", "dti"])
    assert result.ok
    assert runner.calls == [("fmri", "sub-01"), ("dti", "sub-01")]


def test_run_unit_stops_after_failed_pipeline():
    runner = StubPipelineRunner(fail=[("fmri", "sub-01")])
    result = run_unit(runner, SubjectSession("sub-01"), ["fmri", "dti"])
    assert not result.ok
    assert result.failed_step == "functional"
    assert runner.calls == [("fmri", "sub-01")]


def test_run_unit_returns_exception_with_raising_pipeline():
    runner = StubPipelineRunner(crash=[("dti", "sub-01")])
    result = run_unit(runner, SubjectSession("sub-01"), ["fmri", "dti"])
    assert not result.ok
    assert result.error == "RuntimeError: worker blew up"
    assert result.error_pipeline == "dti"
    assert [p.pipeline for p in result.pipelines] == ["fmri"]
    assert result.failed_step == "worker"


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


def test_parallelism_bounded_by_core_budget(cfg):
    runner = StubPipelineRunner(delay=0.05)
    scheduler = Scheduler(runner, get_ledger(cfg), ["fmri"], threads_per_subject=3, total_cores=8)
    summary = scheduler.run(UNITS)
    assert summary.total == len(UNITS)
    assert len(summary.outcomes) == len(UNITS)
    assert 1 <= runner.peak <= 2


def test_single_worker_when_threads_exceed_cores(cfg, caplog):
    runner = StubPipelineRunner(delay=0.02)
    scheduler = Scheduler(runner, get_ledger(cfg), ["fmri"], threads_per_subject=16, total_cores=8)
    with caplog.at_level(logging.WARNING, logger="rsfc_pipeline"):
        scheduler.run(UNITS[:3])
    assert runner.peak == 1
    assert "1 unit at a time" in caplog.text


def test_failures_do_not_stop_other_units(cfg):
    runner = StubPipelineRunner(fail=[("fmri", "sub-02")])
    summary = Scheduler(runner, get_ledger(cfg), ["fmri"], 1, total_cores=4).run(UNITS)
    assert len(summary.outcomes) == len(UNITS)
    assert [o.unit.label for o in summary.failed] == ["sub-02"]
    assert len(summary.succeeded) == len(UNITS) - 1
    assert not summary.ok
    assert summary.failed_steps == {"functional": 1}


def test_worker_crash_is_recorded_and_drained(cfg):
    runner = StubPipelineRunner(crash=["sub-03"])
    ledger = get_ledger(cfg)
    summary = Scheduler(runner, ledger, ["fmri"], 1, total_cores=4).run(UNITS)
    assert len(summary.outcomes) == len(UNITS)
    crashed = [o for o in summary.outcomes if o.error is not None]
    assert [o.unit.label for o in crashed] == ["sub-03"]
    assert crashed[0].failed_step == "worker"
    entry = ledger.entries()[0]
    assert entry.key == ("sub-03", "fmri", "worker", 1)
    assert "worker blew up" in entry.message
    assert summary.ledger_entries == ledger.entries()


def test_worker_crash_attributed_to_raising_pipeline(cfg):
    runner = StubPipelineRunner(crash=[("dti", "sub-01")])
    ledger = get_ledger(cfg)
    summary = Scheduler(runner, ledger, ["fmri", "dti"], 1, total_cores=2).run([SubjectSession("sub-01")])
    assert runner.calls == [("fmri", "sub-01"), ("dti", "sub-01")]
    (crashed,) = summary.outcomes
    assert crashed.error_pipeline == "dti"
    assert [e.key for e in ledger.entries()] == [("sub-01", "dti", "worker", 1)]


def test_dry_run_crash_is_logged_not_recorded(cfg, caplog):
    runner = StubPipelineRunner(crash=["sub-01"])
    ledger = get_ledger(cfg)
    scheduler = Scheduler(runner, ledger, ["fmri"], 1, total_cores=2, dry_run=True)
    with caplog.at_level(logging.INFO, logger="rsfc_pipeline"):
        summary = scheduler.run([SubjectSession("sub-01")])
    assert not summary.ok
    assert summary.ledger_entries == []
    assert "Would record failure sub-01|fmri|worker|1" in caplog.text
    assert not ledger.ledger_file.exists()
    assert not cfg.output_root.exists()


def test_dry_run_summary_skips_ledger_read(cfg):
    ledger = MagicMock()
    Scheduler(StubPipelineRunner(), ledger, ["fmri"], 1, total_cores=2, dry_run=True).run(UNITS[:2])
    ledger.entries.assert_not_called()
    ledger.record.assert_not_called()


def test_empty_unit_list(cfg):
    runner = MagicMock()
    summary = Scheduler(runner, get_ledger(cfg), ["fmri"], 6, total_cores=12).run([])
    assert summary.total == 0
    assert summary.ok
    runner.run.assert_not_called()


def test_default_cores_from_os(cfg, monkeypatch):
    monkeypatch.setattr("os.cpu_count", lambda: 24)
    scheduler = Scheduler(MagicMock(), get_ledger(cfg), ["fmri"], 6)
    assert scheduler.max_parallel == 4


# ---------------------------------------------------------------------------
# RunSummary / UnitOutcome
# ---------------------------------------------------------------------------


def test_run_summary_properties():
    ok = UnitOutcome(SubjectSession("sub-01"), (outcome(SubjectSession("sub-01")),))
    bad = UnitOutcome(
        SubjectSession("sub-02"),
        (outcome(SubjectSession("sub-02"), ok=False, failed_step="recon_all"),),
    )
    summary = RunSummary(total=2, outcomes=[ok, bad])
    assert summary.succeeded == [ok]
    assert summary.failed == [bad]
    assert summary.failed_steps["recon_all"] == 1
    assert ok.failed_step is None
