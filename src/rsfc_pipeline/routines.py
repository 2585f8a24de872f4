"""routines.py — custom steps that issue more than one external command.

The ``fmri`` routines iterate over the configured regression flavors and run
one command per flavor as its own sub-step (``<step>-<flavor>``), so the
ledger and logs show which flavor failed.  The ``dti`` routines run a fixed
sequence of tools, each as sub-step ``<step>-<tool>``.  Either way a step
succeeds only when every sub-step succeeds, and the first failure ends it.
"""
from __future__ import annotations

__all__ = ["fsf_processing", "timeseries", "mean_b0", "fod", "five_tt", "parcellation"]

import logging
from typing import TYPE_CHECKING, Mapping

from rsfc_pipeline import diffusion, layout
from rsfc_pipeline.commands import build_fsf_command, build_timeseries_command
from rsfc_pipeline.log import DRY_RUN, SUCCESS
from rsfc_pipeline.probes import file_ready, mask_is_valid
from rsfc_pipeline.runner import StepResult

if TYPE_CHECKING:
    from rsfc_pipeline.registry import StepDescriptor
    from rsfc_pipeline.runner import StepRunner
    from rsfc_pipeline.sessions import SubjectSession

logger = logging.getLogger(__name__)


def fsf_processing(runner: StepRunner, step: StepDescriptor, unit: SubjectSession) -> StepResult:
    """Nuisance regression, once per FSF flavor.

    The global, CSF and white-matter masks must all be valid before any
    flavor runs; an invalid mask fails the whole step.
    """
    config = runner.config

    if config.dry_run:
        logger.log(DRY_RUN, "Would validate %s masks for %s", ", ".join(layout.MASK_NAMES), unit.display)
    else:
        for mask in layout.MASK_NAMES:
            path = layout.mask_file(config, unit, mask)
            if not mask_is_valid(path):
                return runner.fail(
                    step.pipeline, step.step_id, unit, 1,
                    f"Invalid or empty {mask} mask: {path}",
                )

    for flavor in config.fsf_types:
        if config.skip_existing and file_ready(layout.residuals(config, unit, flavor)):
            logger.info("Skipping FSF type %s for %s (output exists)", flavor, unit.display)
            continue
        logger.info("Processing FSF type %s for %s", flavor, unit.display)
        result = runner.run_command(
            step.pipeline,
            f"{step.step_id}-{flavor}",
            f"{step.label} ({flavor})",
            unit,
            build_fsf_command(config, unit, flavor),
            scan_output=step.scan_output,
        )
        if not result.ok:
            return result

    logger.log(SUCCESS, "All FSF types completed for %s", unit.display)
    return StepResult.success()


def timeseries(runner: StepRunner, step: StepDescriptor, unit: SubjectSession) -> StepResult:
    """Extract atlas-region mean time series from each flavor's residuals."""
    config = runner.config

    if not config.dry_run and not config.atlas_file.is_file():
        return runner.fail(
            step.pipeline, step.step_id, unit, 1,
            f"Atlas not found: {config.atlas_file}",
        )

    for flavor in config.fsf_types:
        sub_step = f"{step.step_id}-{flavor}"
        if config.skip_existing and file_ready(layout.timeseries_file(config, unit, flavor)):
            logger.info("Skipping time series %s for %s (output exists)", flavor, unit.display)
            continue
        source = layout.residuals(config, unit, flavor)
        if not config.dry_run and not file_ready(source):
            return runner.fail(
                step.pipeline, sub_step, unit, 1,
                f"Nuisance-regressed input not found: {source}",
            )
        result = runner.run_command(
            step.pipeline,
            sub_step,
            f"{step.label} ({flavor})",
            unit,
            build_timeseries_command(config, unit, flavor),
            scan_output=step.scan_output,
        )
        if not result.ok:
            return result

    return StepResult.success()


# ---------------------------------------------------------------------------
# dti
# ---------------------------------------------------------------------------


def _run_sequence(
    runner: StepRunner,
    step: StepDescriptor,
    unit: SubjectSession,
    commands: diffusion.CommandSequence,
    env: Mapping[str, str] | None = None,
) -> StepResult:
    for name, cmd in commands:
        result = runner.run_command(
            step.pipeline,
            f"{step.step_id}-{name}",
            f"{step.label} ({name})",
            unit,
            cmd,
            scan_output=step.scan_output,
            env=env,
        )
        if not result.ok:
            return result
    return StepResult.success()


def mean_b0(runner: StepRunner, step: StepDescriptor, unit: SubjectSession) -> StepResult:
    """Average the b=0 volumes into a reference image."""
    return _run_sequence(runner, step, unit, diffusion.mean_b0_commands(runner.config, unit))


def fod(runner: StepRunner, step: StepDescriptor, unit: SubjectSession) -> StepResult:
    """Brain mask, white-matter response and constrained spherical deconvolution."""
    return _run_sequence(runner, step, unit, diffusion.fod_commands(runner.config, unit))


def five_tt(runner: StepRunner, step: StepDescriptor, unit: SubjectSession) -> StepResult:
    """Five-tissue-type image from the recon-all brain, for anatomically constrained tracking."""
    config = runner.config
    brain = layout.recon_brain(config, unit)
    if not config.dry_run and not file_ready(brain):
        return runner.fail(
            step.pipeline, step.step_id, unit, 1,
            f"recon-all brain not found: {brain}",
        )
    return _run_sequence(runner, step, unit, diffusion.five_tt_commands(config, unit))


def parcellation(runner: StepRunner, step: StepDescriptor, unit: SubjectSession) -> StepResult:
    config = runner.config
    return _run_sequence(
        runner, step, unit,
        diffusion.parcellation_commands(config, unit),
        env=diffusion.freesurfer_env(config),
    )
