"""ledger.py — deduplicated, lock-protected record of step failures.

Each failure is written to three files under the error-log directory:

``failed_subjects_<stamp>.txt``
    The ledger proper: one pipe-delimited line per unique
    ``(subject-session, pipeline, step, code)``::

        sub-01_ses-A|fmri|functional|2|2024-05-01 10:00:00|last lines of output

``errors_<stamp>.log``
    A multi-line, human-readable entry for every recorded failure.

``error_summary_<stamp>.log``
    Rewritten after each record: last error time, total entries and the
    number of distinct failing subject-sessions.

All writes happen under an exclusive ``flock`` on ``.lock`` (separate
processes) and a per-directory :class:`threading.Lock` (threads of this
process), so concurrent workers never interleave partial lines.

Typical usage::

    from rsfc_pipeline.ledger import get_ledger

    ledger = get_ledger(config)
    ledger.record("sub-01_ses-A", "fmri", "functional", 2, "bet: image not found")
"""
from __future__ import annotations

__all__ = ["LedgerEntry", "ErrorLedger", "get_ledger"]

import fcntl
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator

import pandas as pd

from rsfc_pipeline.config import RunConfig

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = ["subject_session", "pipeline", "step", "code", "timestamp", "message"]

_THREAD_LOCKS: dict[Path, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def _thread_lock(path: Path) -> threading.Lock:
    with _THREAD_LOCKS_GUARD:
        return _THREAD_LOCKS.setdefault(path, threading.Lock())


def _one_line(text: str) -> str:
    """Flatten *text* so it fits in a single pipe-delimited field."""
    lines = [line.strip() for line in str(text).splitlines() if line.strip()]
    return " / ".join(lines).replace("|", "/")


@dataclass(frozen=True)
class LedgerEntry:
    """One failure signature recorded in the ledger."""

    subject_session: str
    pipeline: str
    step: str
    code: int
    timestamp: str
    message: str

    @property
    def key(self) -> tuple[str, str, str, int]:
        return (self.subject_session, self.pipeline, self.step, self.code)

    def to_line(self) -> str:
        return "|".join(
            [self.subject_session, self.pipeline, self.step, str(self.code),
             self.timestamp, _one_line(self.message)]
        )

    @classmethod
    def from_line(cls, line: str) -> "LedgerEntry":
        parts = line.rstrip("\n").split("|", 5)
        if len(parts) < 4:
            raise ValueError(f"Malformed ledger line: {line!r}")
        parts += [""] * (6 - len(parts))
        return cls(parts[0], parts[1], parts[2], int(parts[3]), parts[4], parts[5])


class ErrorLedger:
    """Failure ledger for one run.

    Parameters
    ----------
    error_log_dir:
        Directory holding the ledger, detail log, summary and lock file.
        Created on the first write.
    run_stamp:
        ``YYYYMMDD`` stamp included in every file name.
    """

    def __init__(self, error_log_dir: Path, run_stamp: str) -> None:
        self.error_log_dir = Path(error_log_dir)
        self.run_stamp = run_stamp

    @property
    def ledger_file(self) -> Path:
        return self.error_log_dir / f"failed_subjects_{self.run_stamp}.txt"

    @property
    def detail_file(self) -> Path:
        return self.error_log_dir / f"errors_{self.run_stamp}.log"

    @property
    def summary_file(self) -> Path:
        return self.error_log_dir / f"error_summary_{self.run_stamp}.log"

    @property
    def lock_file(self) -> Path:
        return self.error_log_dir / ".lock"

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the ledger lock for the duration of the block."""
        self.error_log_dir.mkdir(parents=True, exist_ok=True)
        with _thread_lock(self.error_log_dir.resolve()):
            with self.lock_file.open("a") as lock_fh:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)

    def record(
        self,
        subject_session: str,
        pipeline: str,
        step: str,
        code: int,
        message: str,
    ) -> bool:
        """Record a failure; return True if it added a new ledger line.

        The detail log receives every call.  The ledger receives a line only
        for a ``(subject_session, pipeline, step, code)`` not seen before.
        """
        entry = LedgerEntry(
            subject_session=subject_session,
            pipeline=pipeline,
            step=step,
            code=int(code),
            timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            message=message,
        )
        with self.locked():
            with self.detail_file.open("a") as fh:
                fh.write(
                    f"[{entry.timestamp}] [ERROR CODE {entry.code}]\n"
                    f"    Subject: {subject_session}\n"
                    f"    Pipeline: {pipeline}\n"
                    f"    Step: {step}\n"
                    f"    Error: {message}\n"
                    "    ----------------------------------------\n"
                )

            existing = self._read_unlocked()
            is_new = entry.key not in {e.key for e in existing}
            if is_new:
                with self.ledger_file.open("a") as fh:
                    fh.write(entry.to_line() + "\n")
                existing.append(entry)

            self._write_summary_unlocked(existing, entry.timestamp)

        logger.debug(
            "ledger %s: %s/%s/%s code=%s", "add" if is_new else "dup",
            subject_session, pipeline, step, code,
        )
        return is_new

    def entries(self) -> list[LedgerEntry]:
        """Return all ledger entries in file order."""
        if not self.ledger_file.exists():
            return []
        with self.locked():
            return self._read_unlocked()

    def to_frame(self) -> pd.DataFrame:
        """Return the ledger as a DataFrame with :data:`LEDGER_COLUMNS`."""
        entries = self.entries()
        if not entries:
            return pd.DataFrame(columns=LEDGER_COLUMNS)
        return pd.DataFrame(
            [
                {
                    "subject_session": e.subject_session,
                    "pipeline": e.pipeline,
                    "step": e.step,
                    "code": e.code,
                    "timestamp": e.timestamp,
                    "message": e.message,
                }
                for e in entries
            ],
            columns=LEDGER_COLUMNS,
        )

    def reset(self) -> None:
        """Truncate the ledger at the start of a run."""
        with self.locked():
            self.ledger_file.write_text("")

    def _read_unlocked(self) -> list[LedgerEntry]:
        if not self.ledger_file.exists():
            return []
        entries = []
        for line in self.ledger_file.read_text().splitlines():
            if not line.strip():
                continue
            try:
                entries.append(LedgerEntry.from_line(line))
            except ValueError:
                logger.warning("Ignoring malformed ledger line in %s: %r", self.ledger_file, line)
        return entries

    def _write_summary_unlocked(self, entries: list[LedgerEntry], last_error: str) -> None:
        unique_units = {e.subject_session for e in entries}
        self.summary_file.write_text(
            f"Last Error: {last_error}\n"
            f"Total Errors: {len(entries)}\n"
            f"Unique Subjects with Errors: {len(unique_units)}\n"
        )


def get_ledger(config: RunConfig) -> ErrorLedger:
    """Return the :class:`ErrorLedger` for *config*."""
    return ErrorLedger(config.error_log_root, config.run_stamp)
