from __future__ import annotations

__all__ = ["Probe", "file_ready", "mask_is_valid", "count_nonzero_voxels", "probe_for"]

import logging
import subprocess
from pathlib import Path
from typing import Callable

from rsfc_pipeline import layout
from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.sessions import SubjectSession

logger = logging.getLogger(__name__)

# Type alias for a bound output probe
Probe = Callable[[SubjectSession], bool]


# ---------------------------------------------------------------------------
# Probe registry
# ---------------------------------------------------------------------------

# Maps step id → factory building the probe for a config
# Signature: (config) -> Probe
_PROBE_FACTORIES: dict[str, Callable[[RunConfig], Probe]] = {}


def _register_probe(step_id: str):
    """Decorator to register the output probe factory for a step."""

    def decorator(fn: Callable[[RunConfig], Probe]) -> Callable[[RunConfig], Probe]:
        _PROBE_FACTORIES[step_id] = fn
        return fn

    return decorator


def probe_for(step_id: str, config: RunConfig) -> Probe | None:
    """Return the output probe for *step_id* bound to *config*.

    Steps without a registered probe get ``None`` and are never skipped.
    """
    factory = _PROBE_FACTORIES.get(step_id)
    if factory is None:
        return None
    probe = factory(config)
    probe.__name__ = f"{step_id}_complete"
    return probe


# ---------------------------------------------------------------------------
# Primitive checks
# ---------------------------------------------------------------------------


def file_ready(path: Path) -> bool:
    """Return True if *path* is an existing, non-empty regular file."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def count_nonzero_voxels(path: Path) -> int:
    """Return the number of non-zero voxels in *path* via AFNI ``3dBrickStat``.

    Raises
    ------
    subprocess.CalledProcessError
        If ``3dBrickStat`` exits with a non-zero status.
    ValueError
        If its output cannot be parsed as a count.
    """
    result = subprocess.run(
        ["3dBrickStat", "-count", "-non-zero", str(path)],
        capture_output=True,
        text=True,
        check=True,
    )
    tokens = result.stdout.split()
    if not tokens:
        raise ValueError(f"3dBrickStat returned no output for {path}")
    return int(float(tokens[0]))


def mask_is_valid(
    path: Path,
    voxel_count: Callable[[Path], int] | None = None,
) -> bool:
    """Return True if the mask at *path* is non-empty on disk and has "on" voxels.

    Fails closed: any error while querying the voxel count (missing tool,
    corrupt file, unparsable output) makes the mask invalid.
    """
    if not file_ready(path):
        return False
    try:
        count = (voxel_count or count_nonzero_voxels)(path)
    except (subprocess.CalledProcessError, OSError, ValueError, IndexError, OverflowError) as exc:
        logger.debug("Voxel count query failed for %s: %s", path, exc)
        return False
    return count > 0


# ---------------------------------------------------------------------------
# Per-step probes
# ---------------------------------------------------------------------------


@_register_probe("structural_preproc")
def _structural_preproc_probe(config: RunConfig) -> Probe:
    return lambda unit: file_ready(layout.preproc_t1(config, unit))


@_register_probe("recon_all")
def _recon_all_probe(config: RunConfig) -> Probe:
    return lambda unit: file_ready(layout.recon_brain(config, unit))


@_register_probe("anatomical")
def _anatomical_probe(config: RunConfig) -> Probe:
    return lambda unit: file_ready(layout.stru_brain(config, unit))


@_register_probe("functional")
def _functional_probe(config: RunConfig) -> Probe:
    return lambda unit: file_ready(layout.example_func(config, unit))


@_register_probe("registration")
def _registration_probe(config: RunConfig) -> Probe:
    return lambda unit: file_ready(layout.func2standard(config, unit))


@_register_probe("segmentation")
def _segmentation_probe(config: RunConfig) -> Probe:
    """Segmentation is complete only when every tissue mask is valid."""

    def probe(unit: SubjectSession) -> bool:
        return all(
            mask_is_valid(layout.mask_file(config, unit, mask)) for mask in layout.MASK_NAMES
        )

    return probe


@_register_probe("fsf_processing")
def _fsf_probe(config: RunConfig) -> Probe:
    def probe(unit: SubjectSession) -> bool:
        return all(file_ready(layout.residuals(config, unit, f)) for f in config.fsf_types)

    return probe


@_register_probe("timeseries")
def _timeseries_probe(config: RunConfig) -> Probe:
    def probe(unit: SubjectSession) -> bool:
        return all(file_ready(layout.timeseries_file(config, unit, f)) for f in config.fsf_types)

    return probe


# ---------------------------------------------------------------------------
# dti probes
# ---------------------------------------------------------------------------

# Single-artifact dti steps: step id → layout function of the artifact
_DTI_ARTIFACTS: dict[str, Callable[[RunConfig, SubjectSession], Path]] = {
    "dwi_convert": layout.dwi_image,
    "mean_b0": layout.mean_b0,
    "denoise": layout.denoised_dwi,
    "degibbs": layout.unringed_dwi,
    "dwi_preproc": layout.preproc_dwi,
    "fod": layout.fod,
    "five_tt": layout.five_tt,
    "tractography": layout.tracks,
    "parcellation": layout.parcels,
    "connectome": layout.connectome,
}


def _artifact_probe(artifact: Callable[[RunConfig, SubjectSession], Path]):
    def factory(config: RunConfig) -> Probe:
        return lambda unit: file_ready(artifact(config, unit))

    return factory


for _step_id, _artifact in _DTI_ARTIFACTS.items():
    _register_probe(_step_id)(_artifact_probe(_artifact))
