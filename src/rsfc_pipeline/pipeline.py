from __future__ import annotations

__all__ = [
    "FMRI_PIPELINE",
    "DTI_PIPELINE",
    "PipelineState",
    "PipelineOutcome",
    "PipelineRunner",
    "register_fmri_pipeline",
    "register_dti_pipeline",
    "build_registry",
    "default_scaffolds",
]

import enum
import logging
import stat
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable

from rsfc_pipeline import layout, routines
from rsfc_pipeline.commands import make_script_builder, make_structural_preproc_builder
from rsfc_pipeline.config import DTI_PIPELINE, FMRI_PIPELINE, RunConfig
from rsfc_pipeline.diffusion import make_diffusion_builder
from rsfc_pipeline.freesurfer import make_recon_all_builder
from rsfc_pipeline.log import DRY_RUN, SUCCESS
from rsfc_pipeline.probes import probe_for
from rsfc_pipeline.registry import StepKind, StepRegistry
from rsfc_pipeline.runner import StepResult, StepRunner
from rsfc_pipeline.sessions import SubjectSession

logger = logging.getLogger(__name__)

#: Pseudo step id used when directory scaffolding fails.
PREPARE_STEP = "prepare"

# Type alias: directories a pipeline needs before its first step
Scaffold = Callable[[SubjectSession], list[Path]]


class PipelineState(enum.Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineOutcome:
    """Terminal state of one pipeline for one unit."""

    unit: SubjectSession
    pipeline: str
    state: PipelineState
    failed_step: str | None = None
    failed_index: int | None = None
    step_results: tuple[tuple[str, StepResult], ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.COMPLETED


class PipelineRunner:
    """Runs a pipeline's ordered steps for one unit, stopping at the first failure.

    Parameters
    ----------
    config:
        Run configuration.
    registry:
        Frozen step registry.
    step_runner:
        Executes individual steps.
    scaffolds:
        Maps pipeline name → function returning the directories to create
        before the pipeline's first step.  Pipelines without an entry need
        no scaffolding.
    """

    def __init__(
        self,
        config: RunConfig,
        registry: StepRegistry,
        step_runner: StepRunner,
        scaffolds: dict[str, Scaffold] | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.step_runner = step_runner
        self.scaffolds = scaffolds or {}

    def run(self, pipeline: str, unit: SubjectSession) -> PipelineOutcome:
        """Run *pipeline* for *unit* and return its terminal outcome."""
        steps = self.registry.steps_for(pipeline)
        if not steps:
            logger.warning("Pipeline %r has no registered steps; nothing to do for %s", pipeline, unit.display)
            return PipelineOutcome(unit, pipeline, PipelineState.COMPLETED)

        logger.debug("%s/%s: %s -> %s", pipeline, unit.label, PipelineState.PENDING.value, PipelineState.PREPARING.value)
        try:
            self._prepare(pipeline, unit)
        except OSError as exc:
            self.step_runner.fail(pipeline, PREPARE_STEP, unit, 1, f"Could not prepare directories: {exc}")
            return PipelineOutcome(unit, pipeline, PipelineState.FAILED, failed_step=PREPARE_STEP)

        results: list[tuple[str, StepResult]] = []
        for index, step in enumerate(steps):
            logger.debug("%s/%s: %s(%d) %s", pipeline, unit.label, PipelineState.RUNNING.value, index, step.step_id)
            result = self.step_runner.execute(step, unit)
            results.append((step.step_id, result))
            if not result.ok:
                logger.error(
                    "Pipeline %s stopped at %s for %s", pipeline, step.step_id, unit.display
                )
                return PipelineOutcome(
                    unit, pipeline, PipelineState.FAILED,
                    failed_step=step.step_id, failed_index=index, step_results=tuple(results),
                )

        logger.log(SUCCESS, "All %s steps completed for %s", pipeline, unit.display)
        return PipelineOutcome(unit, pipeline, PipelineState.COMPLETED, step_results=tuple(results))

    def _prepare(self, pipeline: str, unit: SubjectSession) -> None:
        scaffold = self.scaffolds.get(pipeline)
        if scaffold is None:
            return
        for directory in scaffold(unit):
            if self.config.dry_run:
                logger.log(DRY_RUN, "Would create directory: %s", directory)
                continue
            directory.mkdir(parents=True, exist_ok=True)
            mode = directory.stat().st_mode
            if not mode & stat.S_IWGRP:
                directory.chmod(mode | stat.S_IWGRP)


# ---------------------------------------------------------------------------
# Pipeline definitions
# ---------------------------------------------------------------------------


def register_fmri_pipeline(registry: StepRegistry, config: RunConfig) -> None:
    """Register the resting-state ``fmri`` pipeline steps in execution order."""
    direct = [
        ("structural_preproc", "Structural Preprocessing", make_structural_preproc_builder(config)),
        ("recon_all", "FreeSurfer recon-all", make_recon_all_builder(config)),
        ("anatomical", "Anatomical Preprocessing", make_script_builder(config, "anatomical")),
        ("functional", "Functional Preprocessing", make_script_builder(config, "functional")),
        ("registration", "Registration", make_script_builder(config, "registration")),
        ("segmentation", "Tissue Segmentation", make_script_builder(config, "segmentation")),
    ]
    for step_id, label, builder in direct:
        registry.register(
            FMRI_PIPELINE, step_id, label, StepKind.DIRECT_COMMAND, builder,
            probe_for(step_id, config),
        )

    registry.register(
        FMRI_PIPELINE, "fsf_processing", "Nuisance Regression", StepKind.CUSTOM_ROUTINE,
        routines.fsf_processing, probe_for("fsf_processing", config),
    )
    registry.register(
        FMRI_PIPELINE, "timeseries", "Time Series Extraction", StepKind.CUSTOM_ROUTINE,
        routines.timeseries, probe_for("timeseries", config),
    )


def register_dti_pipeline(registry: StepRegistry, config: RunConfig) -> None:
    """Register the structural-connectivity ``dti`` pipeline steps in execution order.

    ``structural_preproc`` and ``recon_all`` share builders and probes with
    the ``fmri`` pipeline, so whichever pipeline runs first does the work
    and the other skips it.
    """
    steps = [
        ("dwi_convert", "DWI Conversion", StepKind.DIRECT_COMMAND, make_diffusion_builder(config, "dwi_convert")),
        ("mean_b0", "Mean b0", StepKind.CUSTOM_ROUTINE, routines.mean_b0),
        ("denoise", "DWI Denoising", StepKind.DIRECT_COMMAND, make_diffusion_builder(config, "denoise")),
        ("degibbs", "Gibbs Ringing Removal", StepKind.DIRECT_COMMAND, make_diffusion_builder(config, "degibbs")),
        ("dwi_preproc", "Eddy and Motion Correction", StepKind.DIRECT_COMMAND,
         make_diffusion_builder(config, "dwi_preproc")),
        ("fod", "Fiber Orientation Distribution", StepKind.CUSTOM_ROUTINE, routines.fod),
        ("structural_preproc", "Structural Preprocessing", StepKind.DIRECT_COMMAND,
         make_structural_preproc_builder(config)),
        ("recon_all", "FreeSurfer recon-all", StepKind.DIRECT_COMMAND, make_recon_all_builder(config)),
        ("five_tt", "Five-Tissue-Type Segmentation", StepKind.CUSTOM_ROUTINE, routines.five_tt),
        ("tractography", "Tractography", StepKind.DIRECT_COMMAND, make_diffusion_builder(config, "tractography")),
        ("parcellation", "Schaefer Parcellation", StepKind.CUSTOM_ROUTINE, routines.parcellation),
        ("connectome", "Connectome Construction", StepKind.DIRECT_COMMAND,
         make_diffusion_builder(config, "connectome")),
    ]
    for step_id, label, kind, executor in steps:
        registry.register(DTI_PIPELINE, step_id, label, kind, executor, probe_for(step_id, config))


def build_registry(config: RunConfig) -> StepRegistry:
    """Build and freeze the registry of every known pipeline."""
    registry = StepRegistry()
    register_fmri_pipeline(registry, config)
    register_dti_pipeline(registry, config)
    return registry.freeze()


def default_scaffolds(config: RunConfig) -> dict[str, Scaffold]:
    return {
        FMRI_PIPELINE: partial(layout.scaffold_dirs, config),
        DTI_PIPELINE: partial(layout.dti_scaffold_dirs, config),
    }
