from __future__ import annotations

__all__ = ["PreflightError", "check_environment", "setup_output_dirs"]

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Mapping

from rsfc_pipeline.commands import STEP_SCRIPTS, required_tools, script_path
from rsfc_pipeline.config import DTI_PIPELINE, FMRI_PIPELINE, RunConfig

logger = logging.getLogger(__name__)


class PreflightError(RuntimeError):
    """Raised when the environment cannot support a run.

    ``problems`` lists every check that failed, not only the first one.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Pre-flight checks failed:\n  - " + "\n  - ".join(self.problems))


def _missing_tools(config: RunConfig, which: Callable[[str], str | None]) -> list[str]:
    return [tool for tool in required_tools(config) if which(tool) is None]


def _environment_problems(environ: Mapping[str, str]) -> list[str]:
    problems = []
    for var in ("FREESURFER_HOME", "FSLDIR"):
        if not environ.get(var):
            problems.append(f"Environment variable {var} is not set")

    license_path = environ.get("FS_LICENSE")
    if not license_path and environ.get("FREESURFER_HOME"):
        license_path = str(Path(environ["FREESURFER_HOME"]) / "license.txt")
    if not license_path or not Path(license_path).is_file():
        problems.append(
            f"FreeSurfer license not found (looked at {license_path or '$FS_LICENSE'})"
        )
    return problems


def _directory_problems(config: RunConfig) -> list[str]:
    problems = []
    required = {"Input directory": config.input_root}
    if FMRI_PIPELINE in config.pipelines:
        required.update({
            "Standard directory": config.standard_dir,
            "Tissue priors directory": config.tissue_priors_dir,
            "Template directory": config.template_dir,
            "Atlas directory": config.atlas_dir,
            "Scripts directory": config.scripts_dir,
        })
    if DTI_PIPELINE in config.pipelines:
        required.update({
            "Schaefer directory": config.schaefer_root,
            "fsaverage5 directory": config.fsaverage_dir,
        })
    for name, path in required.items():
        if not Path(path).is_dir():
            problems.append(f"{name} not found: {path}")

    if FMRI_PIPELINE in config.pipelines and Path(config.scripts_dir).is_dir():
        for step_id in STEP_SCRIPTS:
            script = script_path(config, step_id)
            if not script.is_file():
                problems.append(f"Step script for {step_id} not found: {script}")
    return problems


def check_environment(
    config: RunConfig,
    environ: Mapping[str, str] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> None:
    """Run every pre-flight check and raise if any fails.

    Raises
    ------
    PreflightError
        Listing all failed checks.
    """
    environ = os.environ if environ is None else environ
    problems = [f"Required tool not found on PATH: {tool}" for tool in _missing_tools(config, which)]
    problems += _environment_problems(environ)
    problems += _directory_problems(config)

    if problems:
        raise PreflightError(problems)
    logger.info("Pre-flight checks passed")


def setup_output_dirs(config: RunConfig) -> list[Path]:
    """Create the output, log, error-log and recon-all roots."""
    dirs = [config.output_root, config.log_root, config.error_log_root, config.recon_all_root]
    if config.dry_run:
        return dirs
    for directory in dirs:
        directory.mkdir(parents=True, exist_ok=True)
        logger.debug("Ensured directory %s", directory)
    return dirs
