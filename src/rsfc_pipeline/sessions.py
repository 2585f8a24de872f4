from __future__ import annotations

__all__ = [
    "SubjectSession",
    "discover_units",
    "parse_target_filter",
    "units_to_frame",
    "unit_input_dir",
    "find_input",
]

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

from rsfc_pipeline.config import DEFAULT_TARGET_SUBJECT

if TYPE_CHECKING:
    from rsfc_pipeline.config import RunConfig

logger = logging.getLogger(__name__)

ANAT_DIR = "anat"
FUNC_DIR = "func"


@dataclass(frozen=True)
class SubjectSession:
    """One unit of work: a subject and, for longitudinal datasets, a session.

    ``session`` is ``None`` for session-less subjects.  An empty string is
    normalised to ``None`` so the two can never diverge downstream.
    """

    subject: str
    session: str | None = None

    def __post_init__(self) -> None:
        if not self.subject:
            raise ValueError("subject must be a non-empty string")
        if self.session is not None and not self.session.strip():
            object.__setattr__(self, "session", None)

    @property
    def label(self) -> str:
        """Filesystem-safe identifier, e.g. ``sub-01`` or ``sub-01_ses-A``."""
        if self.session is None:
            return self.subject
        return f"{self.subject}_{self.session}"

    @property
    def display(self) -> str:
        """Human-readable form used in log messages."""
        if self.session is None:
            return self.subject
        return f"{self.subject} session {self.session}"

    def __str__(self) -> str:
        return self.label


def parse_target_filter(value: str | None) -> set[str] | None:
    """Turn a target-subject filter string into an allow-list.

    Returns ``None`` for ``"all"`` (accept everything).  An empty filter
    selects the smoke-test subject only.  Otherwise the value is split on
    commas and whitespace and matched by exact string equality.
    """
    if value is None or not value.strip():
        return {DEFAULT_TARGET_SUBJECT}
    if value.strip().lower() == "all":
        return None
    return {token for token in re.split(r"[,\s]+", value.strip()) if token}


def discover_units(
    input_root: Path,
    target_filter: str | None = "all",
    subject_pattern: str = r"^sub-[A-Za-z0-9]+$",
) -> list[SubjectSession]:
    """Return every unit of work under *input_root*.

    A subject directory containing ``anat/`` directly is a session-less
    unit.  Otherwise each of its immediate subdirectories that itself
    contains ``anat/`` is a session unit; sessions without an anatomical
    directory are skipped.  Directories are visited in sorted order so the
    result is deterministic for a given filesystem state.
    """
    input_root = Path(input_root)
    if not input_root.is_dir():
        logger.warning("Input directory does not exist: %s", input_root)
        return []

    allowed = parse_target_filter(target_filter)
    pattern = re.compile(subject_pattern)

    units: list[SubjectSession] = []
    for subject_dir in sorted(input_root.iterdir()):
        if not subject_dir.is_dir() or not pattern.match(subject_dir.name):
            continue
        if allowed is not None and subject_dir.name not in allowed:
            continue

        if (subject_dir / ANAT_DIR).is_dir():
            units.append(SubjectSession(subject_dir.name))
            continue

        for session_dir in sorted(subject_dir.iterdir()):
            if not session_dir.is_dir():
                continue
            if not (session_dir / ANAT_DIR).is_dir():
                logger.debug(
                    "Skipping %s/%s: no %s directory",
                    subject_dir.name, session_dir.name, ANAT_DIR,
                )
                continue
            units.append(SubjectSession(subject_dir.name, session_dir.name))

    if allowed is not None:
        missing = allowed - {u.subject for u in units}
        for subject in sorted(missing):
            logger.warning("Target subject %s not found under %s", subject, input_root)

    return units


def units_to_frame(units: list[SubjectSession]) -> pd.DataFrame:
    """Return *units* as a DataFrame with ``subject``, ``session`` and ``label`` columns."""
    if not units:
        return pd.DataFrame(columns=["subject", "session", "label"])
    return pd.DataFrame(
        [{"subject": u.subject, "session": u.session or "", "label": u.label} for u in units]
    )


def unit_input_dir(config: RunConfig, unit: SubjectSession) -> Path:
    """Return the raw-data directory of *unit* under ``config.input_root``."""
    path = config.input_root / unit.subject
    if unit.session is not None:
        path = path / unit.session
    return path


def find_input(config: RunConfig, unit: SubjectSession, modality: str, pattern: str) -> Path | None:
    """Return the first (sorted) file matching *pattern* in the unit's *modality* dir.

    Parameters
    ----------
    modality:
        ``"anat"``, ``"func"`` or ``"dwi"``.
    pattern:
        Glob such as ``config.anat_pattern``.
    """
    candidates = sorted(
        p for p in (unit_input_dir(config, unit) / modality).glob(pattern) if p.is_file()
    )
    return candidates[0] if candidates else None
