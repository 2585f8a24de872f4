from __future__ import annotations

__all__ = ["build_manifest", "outcomes_to_state", "load_state", "save_state"]

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import pandas as pd

from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.registry import StepRegistry
from rsfc_pipeline.sessions import SubjectSession

if TYPE_CHECKING:
    from rsfc_pipeline.scheduler import UnitOutcome

_MANIFEST_COLUMNS = ["subject", "session", "pipeline", "order", "step", "complete"]

# Columns and dtypes for the state parquet file
_STATE_COLUMNS = {
    "subject": "object",
    "session": "object",
    "pipeline": "object",
    "status": "object",
    "failed_step": "object",
    "finished_at": "datetime64[ns]",
}


def build_manifest(
    units: list[SubjectSession],
    registry: StepRegistry,
    pipelines: Iterable[str],
) -> pd.DataFrame:
    """Evaluate every step's output probe for every unit without running anything.

    Returns a DataFrame with columns:
        subject, session, pipeline, order, step, complete

    Steps registered without a probe are reported as ``complete=False``.
    Session is ``""`` for session-less units.
    """
    rows = []
    for unit in units:
        for pipeline in pipelines:
            for step in registry.steps_for(pipeline):
                complete = bool(step.is_complete(unit)) if step.is_complete is not None else False
                rows.append({
                    "subject": unit.subject,
                    "session": unit.session or "",
                    "pipeline": pipeline,
                    "order": step.order,
                    "step": step.step_id,
                    "complete": complete,
                })

    if not rows:
        return pd.DataFrame(columns=_MANIFEST_COLUMNS)
    return pd.DataFrame(rows, columns=_MANIFEST_COLUMNS)


def outcomes_to_state(outcomes: list[UnitOutcome], finished_at: datetime | None = None) -> pd.DataFrame:
    """Flatten unit outcomes into one state row per (unit, pipeline).

    Pipelines that never started because an earlier one failed get no row.
    A crash is recorded as ``failed`` at step ``worker`` for the pipeline
    that raised it, after the rows of the pipelines that finished before it.
    """
    finished_at = finished_at or datetime.now()
    rows = []
    for outcome in outcomes:
        subject = outcome.unit.subject
        session = outcome.unit.session or ""
        for pipeline in outcome.pipelines:
            rows.append({
                "subject": subject,
                "session": session,
                "pipeline": pipeline.pipeline,
                "status": pipeline.state.value,
                "failed_step": pipeline.failed_step or "",
                "finished_at": finished_at,
            })
        if outcome.error is not None:
            rows.append({
                "subject": subject, "session": session, "pipeline": outcome.error_pipeline or "",
                "status": "failed", "failed_step": "worker", "finished_at": finished_at,
            })

    if not rows:
        return _empty_state()
    state = pd.DataFrame(rows, columns=list(_STATE_COLUMNS))
    state["finished_at"] = pd.to_datetime(state["finished_at"])
    return state


def load_state(config: RunConfig) -> pd.DataFrame:
    """Load the state parquet file.

    Returns an empty DataFrame with the correct schema if the file does not exist.
    """
    if not Path(config.state_path).exists():
        return _empty_state()
    return pd.read_parquet(config.state_path)


def save_state(state: pd.DataFrame, config: RunConfig) -> None:
    """Persist the state DataFrame to the parquet state file."""
    Path(config.state_path).parent.mkdir(parents=True, exist_ok=True)
    state.to_parquet(config.state_path, index=False)


def _empty_state() -> pd.DataFrame:
    """Return an empty DataFrame with the correct state schema and dtypes."""
    return pd.DataFrame(
        {col: pd.Series(dtype=dtype) for col, dtype in _STATE_COLUMNS.items()}
    )
