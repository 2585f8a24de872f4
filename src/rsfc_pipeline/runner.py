from __future__ import annotations

__all__ = ["StepResult", "StepRunner", "output_indicates_failure", "tail"]

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from typing import Iterable, Mapping

from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.ledger import ErrorLedger
from rsfc_pipeline.log import DRY_RUN, SUCCESS
from rsfc_pipeline.registry import StepDescriptor, StepKind
from rsfc_pipeline.sessions import SubjectSession

logger = logging.getLogger(__name__)

#: Number of trailing output lines kept as the failure message.
TAIL_LINES = 5


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step (or sub-step) for one unit."""

    ok: bool
    code: int = 0
    message: str = ""
    skipped: bool = False

    @classmethod
    def success(cls) -> "StepResult":
        return cls(ok=True)

    @classmethod
    def skipped_result(cls) -> "StepResult":
        return cls(ok=True, skipped=True)

    @classmethod
    def failure(cls, code: int, message: str) -> "StepResult":
        return cls(ok=False, code=code, message=message)


def output_indicates_failure(text: str, patterns: Iterable[str]) -> bool:
    """Return True if *text* mentions any of *patterns* (case-insensitive).

    Several wrapped tools report failures on stdout while exiting 0, so this
    substring check backs up the exit status.  Benign output that happens to
    contain one of the words is misclassified as a failure; steps whose tools
    are known to print such words can opt out with ``scan_output=False``.
    """
    patterns = [p for p in patterns if p]
    if not patterns or not text:
        return False
    regex = re.compile("|".join(re.escape(p) for p in patterns), re.IGNORECASE)
    return regex.search(text) is not None


def tail(text: str, n: int = TAIL_LINES) -> str:
    """Return the last *n* lines of *text*."""
    return "\n".join(text.rstrip("\n").splitlines()[-n:])


class StepRunner:
    """Executes steps for a unit and reports every failure to the ledger.

    Parameters
    ----------
    config:
        Run configuration (skip/dry-run/verbose flags, log locations,
        failure patterns).
    ledger:
        Error ledger receiving one record per failure.
    """

    def __init__(self, config: RunConfig, ledger: ErrorLedger) -> None:
        self.config = config
        self.ledger = ledger

    def execute(self, step: StepDescriptor, unit: SubjectSession) -> StepResult:
        """Run *step* for *unit*, skipping it when its outputs already exist."""
        if self.config.skip_existing and step.is_complete is not None and step.is_complete(unit):
            logger.info("Skipping %s for %s (output exists)", step.label, unit.display)
            return StepResult.skipped_result()

        logger.info("Starting %s for %s...", step.label, unit.display)

        if step.kind is StepKind.CUSTOM_ROUTINE:
            return step.executor(self, step, unit)

        if step.kind is StepKind.DIRECT_COMMAND:
            cmd = step.executor(unit)
            if not cmd:
                builder = getattr(step.executor, "__name__", repr(step.executor))
                return self.fail(
                    step.pipeline, step.step_id, unit, 1,
                    f"Command builder {builder} produced no command for {unit.display}",
                )
            return self.run_command(
                step.pipeline, step.step_id, step.label, unit, cmd,
                scan_output=step.scan_output,
            )

        return self.fail(
            step.pipeline, step.step_id, unit, 1,
            f"Unknown execution kind {step.kind!r} for step {step.step_id}",
        )

    def run_command(
        self,
        pipeline: str,
        step_id: str,
        label: str,
        unit: SubjectSession,
        cmd: list[str],
        *,
        scan_output: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> StepResult:
        """Execute *cmd*, classify the outcome and report it.

        Success requires a zero exit status and, when *scan_output* is set,
        combined stdout/stderr free of the configured failure patterns.
        *env* entries are added to the inherited environment.
        """
        printable = shlex.join(cmd)
        if env:
            assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
            printable = f"{assignments} {printable}"
        if self.config.dry_run:
            logger.log(DRY_RUN, "Would execute: %s", printable)
            return StepResult.success()

        logger.debug("Executing: %s", printable)
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env={**os.environ, **env} if env else None,
            )
        except OSError as exc:
            return self.fail(pipeline, step_id, unit, 127, f"Could not execute {cmd[0]}: {exc}")

        output = proc.stdout or ""
        self._save_output(unit, step_id, printable, output)

        failed = proc.returncode != 0 or (
            scan_output and output_indicates_failure(output, self.config.failure_patterns)
        )
        if failed:
            code = proc.returncode if proc.returncode != 0 else 1
            message = tail(output) or f"{label} exited with status {proc.returncode}"
            return self.fail(pipeline, step_id, unit, code, message)

        logger.log(SUCCESS, "%s completed for %s", label, unit.display)
        return StepResult.success()

    def fail(
        self,
        pipeline: str,
        step_id: str,
        unit: SubjectSession,
        code: int,
        message: str,
    ) -> StepResult:
        """Record a failure in the ledger, log it and return the failed result.

        Dry runs leave the ledger untouched so nothing under the output root
        is written.
        """
        if self.config.dry_run:
            logger.log(DRY_RUN, "Would record failure %s|%s|%s|%s", unit.label, pipeline, step_id, code)
        else:
            self.ledger.record(unit.label, pipeline, step_id, code, message)
        logger.error("%s failed for %s (code %s): %s", step_id, unit.display, code, message)
        return StepResult.failure(code, message)

    def _save_output(self, unit: SubjectSession, step_id: str, printable: str, output: str) -> None:
        if self.config.verbose and output:
            logger.debug("%s output for %s:\n%s", step_id, unit.label, output.rstrip())
        log_file = self.config.log_root / unit.label / f"{step_id}.log"
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with log_file.open("a") as fh:
                fh.write(f"$ {printable}\n{output}\n")
        except OSError as exc:
            logger.warning("Could not write step output to %s: %s", log_file, exc)
