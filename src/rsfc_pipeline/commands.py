from __future__ import annotations

__all__ = [
    "STEP_SCRIPTS",
    "FMRI_TOOLS",
    "script_path",
    "required_tools",
    "make_structural_preproc_builder",
    "make_script_builder",
    "build_fsf_command",
    "build_timeseries_command",
]

from pathlib import Path
from typing import Callable

from rsfc_pipeline import layout
from rsfc_pipeline.config import DTI_PIPELINE, FMRI_PIPELINE, RunConfig
from rsfc_pipeline.diffusion import DTI_TOOLS
from rsfc_pipeline.sessions import SubjectSession, find_input

CommandBuilder = Callable[[SubjectSession], list[str]]

#: External scripts (under ``config.scripts_dir``) backing each script step.
STEP_SCRIPTS: dict[str, str] = {
    "anatomical": "FC_step1",
    "functional": "FC_step2",
    "registration": "FC_step3",
    "segmentation": "FC_step4",
    "fsf_processing": "FC_step5",
}

#: Executables the ``fmri`` pipeline needs on PATH.
FMRI_TOOLS = (
    "bash",
    "recon-all",     # FreeSurfer
    "fslreorient2std",
    "fslmaths",      # FSL
    "flirt",         # FSL registration
    "fslmeants",     # FSL time-series extraction
    "3dcalc",        # AFNI
    "3dBrickStat",   # AFNI, mask validity
)


def script_path(config: RunConfig, step_id: str) -> Path:
    return config.scripts_dir / STEP_SCRIPTS[step_id]


def required_tools(config: RunConfig) -> list[str]:
    """Return the executables that must be resolvable before a run starts."""
    tools: list[str] = []
    if FMRI_PIPELINE in config.pipelines:
        tools += FMRI_TOOLS
    if DTI_PIPELINE in config.pipelines:
        shared = ("fslreorient2std", "recon-all")
        tools += [tool for tool in (*shared, *DTI_TOOLS) if tool not in tools]
    if config.recon_all_timeout:
        tools.append("timeout")
    return tools


def _common_args(config: RunConfig, unit: SubjectSession) -> list[str]:
    args = ["--subject", unit.subject]
    if unit.session is not None:
        args += ["--session", unit.session]
    args += [
        "--input-dir", str(config.input_root),
        "--output-dir", str(layout.unit_dir(config, unit)),
        "--threads", str(config.threads_per_subject),
        "--log-dir", str(config.log_root / unit.label),
    ]
    if config.skip_existing:
        args.append("--skip-existing")
    if config.verbose:
        args.append("--verbose")
    return args


def _script_command(config: RunConfig, step_id: str, unit: SubjectSession, extra: list[str]) -> list[str]:
    return ["bash", str(script_path(config, step_id))] + _common_args(config, unit) + extra


def make_structural_preproc_builder(config: RunConfig) -> CommandBuilder:
    """Reorient the raw T1w to standard orientation into ``anat/T1w.nii.gz``."""

    def build(unit: SubjectSession) -> list[str]:
        t1w = find_input(config, unit, "anat", config.anat_pattern)
        if t1w is None:
            return []
        return ["fslreorient2std", str(t1w), str(layout.preproc_t1(config, unit))]

    build.__name__ = "build_structural_preproc"
    return build


def make_script_builder(config: RunConfig, step_id: str) -> CommandBuilder:
    """Return the builder for one of the ``FC_step*`` script steps.

    Raises
    ------
    KeyError
        If *step_id* has no entry in :data:`STEP_SCRIPTS`.
    """
    if step_id not in STEP_SCRIPTS or step_id == "fsf_processing":
        raise KeyError(f"No script builder for step {step_id!r}")

    def build(unit: SubjectSession) -> list[str]:
        if step_id == "anatomical":
            extra = ["--recon-all-dir", str(config.recon_all_root)]
        elif step_id == "functional":
            bold = find_input(config, unit, "func", config.func_pattern)
            if bold is None:
                return []
            extra = [
                "--bold", str(bold),
                "--fwhm", str(config.fwhm),
                "--sigma", str(config.sigma),
                "--highp", str(config.highp),
                "--lowp", str(config.lowp),
            ]
        elif step_id == "registration":
            extra = ["--standard-dir", str(config.standard_dir)]
        else:  # segmentation
            extra = [
                "--tissue-priors-dir", str(config.tissue_priors_dir),
                "--sigma", str(config.sigma),
            ]
        return _script_command(config, step_id, unit, extra)

    build.__name__ = f"build_{step_id}"
    return build


def build_fsf_command(config: RunConfig, unit: SubjectSession, flavor: str) -> list[str]:
    """Build the FSF nuisance-regression command for one regression flavor."""
    extra = [
        "--template-dir", str(config.template_dir),
        "--tr", str(config.tr),
        "--te", str(config.te),
        "--n-vols", str(config.n_vols),
        "--fsf-type", flavor,
        "--results-dir", str(layout.results_dir(config, unit, flavor)),
    ]
    return _script_command(config, "fsf_processing", unit, extra)


def build_timeseries_command(config: RunConfig, unit: SubjectSession, flavor: str) -> list[str]:
    """Build the atlas time-series extraction command for one regression flavor."""
    return [
        "fslmeants",
        "-i", str(layout.residuals(config, unit, flavor)),
        f"--label={config.atlas_file}",
        "-o", str(layout.timeseries_file(config, unit, flavor)),
    ]
