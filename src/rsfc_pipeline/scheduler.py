from __future__ import annotations

__all__ = ["compute_max_parallel", "UnitOutcome", "run_unit", "RunSummary", "Scheduler"]

import logging
import os
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable

from rsfc_pipeline.ledger import ErrorLedger, LedgerEntry
from rsfc_pipeline.log import DRY_RUN
from rsfc_pipeline.pipeline import PipelineOutcome, PipelineRunner
from rsfc_pipeline.sessions import SubjectSession

logger = logging.getLogger(__name__)

#: Pseudo step id recorded when a worker raises unexpectedly.
WORKER_STEP = "worker"


def compute_max_parallel(total_cores: int | None, threads_per_subject: int) -> int:
    """Return how many units may run at once.

    Each unit is budgeted *threads_per_subject* cores; at least one unit
    always runs even when the machine has fewer cores than the budget.
    """
    cores = total_cores or 1
    if cores < threads_per_subject:
        logger.warning(
            "Only %d core(s) available but %d threads requested per subject; running 1 unit at a time",
            cores, threads_per_subject,
        )
    return max(1, cores // threads_per_subject)


@dataclass(frozen=True)
class UnitOutcome:
    """Result of all pipelines for one unit."""

    unit: SubjectSession
    pipelines: tuple[PipelineOutcome, ...] = ()
    error: str | None = None
    error_pipeline: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(p.ok for p in self.pipelines)

    @property
    def failed_step(self) -> str | None:
        if self.error is not None:
            return WORKER_STEP
        for outcome in self.pipelines:
            if not outcome.ok:
                return outcome.failed_step
        return None


def run_unit(pipeline_runner: PipelineRunner, unit: SubjectSession, pipelines: Iterable[str]) -> UnitOutcome:
    """Run *pipelines* for *unit* in order, stopping at the first failed one.

    An exception escaping a pipeline also ends the unit.  It is returned as
    the outcome's ``error`` together with the pipeline that raised it.
    """
    outcomes = []
    for pipeline in pipelines:
        try:
            outcome = pipeline_runner.run(pipeline, unit)
        except Exception as exc:
            return UnitOutcome(
                unit, tuple(outcomes),
                error=f"{type(exc).__name__}: {exc}", error_pipeline=pipeline,
            )
        outcomes.append(outcome)
        if not outcome.ok:
            break
    return UnitOutcome(unit, tuple(outcomes))


@dataclass
class RunSummary:
    """Aggregate of one scheduler run."""

    total: int
    outcomes: list[UnitOutcome] = field(default_factory=list)
    ledger_entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def failed(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_steps(self) -> Counter:
        return Counter(o.failed_step for o in self.failed)


class Scheduler:
    """Runs every unit's pipelines on a bounded thread pool.

    Work is external processes, so threads are enough: the GIL is released
    while a worker waits on its child.  Failures never escape a worker;
    they end up in the ledger and in the returned :class:`RunSummary`.
    With *dry_run* set the ledger is neither written nor read.
    """

    def __init__(
        self,
        pipeline_runner: PipelineRunner,
        ledger: ErrorLedger,
        pipelines: Iterable[str],
        threads_per_subject: int,
        total_cores: int | None = None,
        dry_run: bool = False,
    ) -> None:
        self.pipeline_runner = pipeline_runner
        self.ledger = ledger
        self.pipelines = tuple(pipelines)
        self.threads_per_subject = threads_per_subject
        self.total_cores = total_cores if total_cores is not None else os.cpu_count()
        self.dry_run = dry_run

    @property
    def max_parallel(self) -> int:
        return compute_max_parallel(self.total_cores, self.threads_per_subject)

    def run(self, units: list[SubjectSession]) -> RunSummary:
        summary = RunSummary(total=len(units))
        if not units:
            return summary

        max_workers = self.max_parallel
        logger.info(
            "Processing %d unit(s), up to %d in parallel (%d threads each)",
            len(units), max_workers, self.threads_per_subject,
        )

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(run_unit, self.pipeline_runner, unit, self.pipelines): unit
                for unit in units
            }
            for future in as_completed(futures):
                unit = futures[future]
                outcome = future.result()
                if outcome.error is not None:
                    logger.error(
                        "Unexpected error while processing %s in pipeline %s: %s",
                        unit.display, outcome.error_pipeline, outcome.error,
                    )
                    self._record_crash(outcome)
                summary.outcomes.append(outcome)

                done = len(summary.outcomes)
                if outcome.ok:
                    logger.info("[%d/%d] %s finished", done, len(units), unit.display)
                else:
                    logger.error("[%d/%d] %s failed at %s", done, len(units), unit.display, outcome.failed_step)

        if not self.dry_run:
            summary.ledger_entries = self.ledger.entries()
        logger.info(
            "Done: %d succeeded, %d failed", len(summary.succeeded), len(summary.failed)
        )
        return summary

    def _record_crash(self, outcome: UnitOutcome) -> None:
        unit = outcome.unit
        if self.dry_run:
            logger.log(
                DRY_RUN, "Would record failure %s|%s|%s|%s",
                unit.label, outcome.error_pipeline, WORKER_STEP, 1,
            )
            return
        try:
            self.ledger.record(unit.label, outcome.error_pipeline, WORKER_STEP, 1, outcome.error)
        except OSError as exc:
            logger.error("Could not record worker failure for %s: %s", unit.display, exc)
