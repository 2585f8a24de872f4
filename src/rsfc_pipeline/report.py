from __future__ import annotations

__all__ = ["report_path", "render_report", "generate_report"]

import logging
from datetime import datetime
from pathlib import Path

from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.ledger import ErrorLedger
from rsfc_pipeline.log import DRY_RUN
from rsfc_pipeline.scheduler import RunSummary

logger = logging.getLogger(__name__)

_RULE = "-" * 25


def report_path(config: RunConfig) -> Path:
    return config.output_root / f"processing_report_{config.run_stamp}.txt"


def render_report(
    config: RunConfig,
    summary: RunSummary,
    ledger: ErrorLedger,
    now: datetime | None = None,
) -> str:
    """Render the end-of-run report from the summary and the ledger.

    A dry run records no failures, so the ledger is not consulted: it may
    still hold the failures of an earlier run.
    """
    now = now or datetime.now()

    lines = [
        "===== Processing Report =====",
        f"Date: {now:%Y-%m-%d %H:%M:%S}",
        f"Input Directory: {config.input_root}",
        f"Output Directory: {config.output_root}",
        _RULE,
        f"Total Subjects Processed: {summary.total}",
        f"Succeeded: {len(summary.succeeded)}",
        f"Failed: {len(summary.failed)}",
    ]

    errors = None if config.dry_run else ledger.to_frame()
    if errors is None:
        lines.append("Dry run: failures were logged, not recorded")
    elif errors.empty:
        lines.append("No errors encountered during processing")
    else:
        lines += [
            "Failed Subjects Summary:",
            _RULE,
            f"Total Errors: {len(errors)}",
            f"Unique Subjects with Errors: {errors['subject_session'].nunique()}",
            "Errors by Step:",
            _RULE,
        ]
        for step, count in errors["step"].value_counts().sort_index().items():
            lines.append(f"  {step}: {count} errors")
        lines += [_RULE, "Failed Subjects Details:"]
        for row in errors.itertuples(index=False):
            lines += [
                f"  Subject: {row.subject_session}",
                f"    - Pipeline: {row.pipeline}",
                f"    - Failed at step: {row.step}",
                f"    - Error code: {row.code}",
            ]
            if row.message:
                lines.append(f"    - Message: {row.message}")

    lines += [
        _RULE,
        f"FSF Types Processed: {' '.join(config.fsf_types)}",
        "Processing Parameters:",
    ]
    lines += [f"  - {name}: {value}" for name, value in config.parameters().items()]
    return "\n".join(lines) + "\n"


def generate_report(config: RunConfig, summary: RunSummary, ledger: ErrorLedger) -> Path | None:
    """Write the processing report and return its path.

    In dry-run mode nothing is written; the report is logged and ``None``
    is returned.
    """
    text = render_report(config, summary, ledger)
    if config.dry_run:
        logger.log(DRY_RUN, "Would write processing report:\n%s", text.rstrip())
        return None

    path = report_path(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    logger.info("Processing report generated: %s", path)
    return path
