from __future__ import annotations

"""rsfc_pipeline.diffusion — MRtrix3 / FreeSurfer commands of the ``dti`` pipeline.

The ``dti`` pipeline turns a unit's raw DWI into a Schaefer-parcellated
structural connectome under ``<unit>/structural_connectivity``::

    mrconvert       DWI + bvec/bval            -> DWI.mif
    dwiextract, mrmath                         -> meanb0.mif
    dwidenoise, mrdegibbs, dwifslpreproc       -> dwi_denoised_unringed_preproc.mif
    dwi2mask, dwi2response, dwi2fod            -> fod.mif
    mri_convert, 5ttgen                        -> 5TT_in_T1w_space.mif
    tckgen                                     -> tracks_<streamlines>.tck
    mri_surf2surf, mri_aparc2aseg, labelconvert -> <schaefer>_parcels.mif
    tck2connectome                             -> <schaefer>_connectome.csv

The T1w is reoriented and reconstructed by the same ``structural_preproc``
and ``recon_all`` steps the ``fmri`` pipeline uses, so a unit processed by
both pipelines runs recon-all once.

Gradient tables
---------------
``bvec``/``bval`` are expected beside the DWI image with the same stem
(``sub-01_dwi.nii.gz`` → ``sub-01_dwi.bvec``, ``sub-01_dwi.bval``).

Overwriting
-----------
MRtrix3 refuses to overwrite outputs; every MRtrix3 command carries
``-force`` so a step can be re-run after a partial failure.
"""

__all__ = [
    "DTI_TOOLS",
    "gradient_files",
    "make_diffusion_builder",
    "freesurfer_env",
    "mean_b0_commands",
    "fod_commands",
    "five_tt_commands",
    "parcellation_commands",
]

import os
from pathlib import Path
from typing import Callable

from rsfc_pipeline import layout
from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.sessions import SubjectSession, find_input

# Type alias: named commands run in order by a multi-command step
CommandSequence = list[tuple[str, list[str]]]

#: Executables the ``dti`` pipeline needs on PATH.
DTI_TOOLS = (
    "mrconvert", "dwiextract", "mrmath", "dwidenoise", "mrdegibbs",
    "dwifslpreproc", "dwi2mask", "dwi2response", "dwi2fod",
    "5ttgen", "tckgen", "labelconvert", "tck2connectome",
    "mri_convert", "mri_surf2surf", "mri_aparc2aseg",
)

# Eddy options used by the original acquisition (single-shell, no reverse PE)
_EDDY_OPTIONS = " --slm=linear --data_is_shelled "


def gradient_files(dwi: Path) -> tuple[Path, Path]:
    """Return the ``(bvec, bval)`` paths that accompany *dwi*."""
    name = dwi.name
    for suffix in (".nii.gz", ".nii"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return dwi.with_name(f"{name}.bvec"), dwi.with_name(f"{name}.bval")


def _threads(config: RunConfig) -> list[str]:
    return ["-nthreads", str(config.threads_per_subject)]


# ---------------------------------------------------------------------------
# Single-command steps
# ---------------------------------------------------------------------------


def _dwi_convert(config: RunConfig, unit: SubjectSession) -> list[str]:
    dwi = find_input(config, unit, "dwi", config.dwi_pattern)
    if dwi is None:
        return []
    bvec, bval = gradient_files(dwi)
    if not (bvec.is_file() and bval.is_file()):
        return []
    return [
        "mrconvert", str(dwi), str(layout.dwi_image(config, unit)),
        "-fslgrad", str(bvec), str(bval),
        "-datatype", "float32", "-strides", "0,0,0,1", "-quiet", "-force",
    ]


def _denoise(config: RunConfig, unit: SubjectSession) -> list[str]:
    return [
        "dwidenoise", str(layout.dwi_image(config, unit)), str(layout.denoised_dwi(config, unit)),
        *_threads(config), "-force",
    ]


def _degibbs(config: RunConfig, unit: SubjectSession) -> list[str]:
    return [
        "mrdegibbs", str(layout.denoised_dwi(config, unit)), str(layout.unringed_dwi(config, unit)),
        *_threads(config), "-force",
    ]


def _dwi_preproc(config: RunConfig, unit: SubjectSession) -> list[str]:
    return [
        "dwifslpreproc", str(layout.unringed_dwi(config, unit)), str(layout.preproc_dwi(config, unit)),
        "-rpe_none", "-pe_dir", config.pe_dir,
        "-eddy_options", _EDDY_OPTIONS,
        *_threads(config), "-force",
    ]


def _tractography(config: RunConfig, unit: SubjectSession) -> list[str]:
    fod = str(layout.fod(config, unit))
    return [
        "tckgen", fod, str(layout.tracks(config, unit)),
        "-algorithm", "iFOD2",
        "-act", str(layout.five_tt(config, unit)),
        "-backtrack", "-crop_at_gmwmi",
        "-seed_dynamic", fod,
        "-maxlength", "300",
        "-select", config.streamlines,
        "-cutoff", "0.06",
        *_threads(config), "-force",
    ]


def _connectome(config: RunConfig, unit: SubjectSession) -> list[str]:
    return [
        "tck2connectome", "-symmetric", "-zero_diagonal", "-scale_invnodevol",
        str(layout.tracks(config, unit)),
        str(layout.parcels(config, unit)),
        str(layout.connectome(config, unit)),
        "-out_assignment", str(layout.connectome_assignments(config, unit)),
        *_threads(config), "-force",
    ]


_BUILDERS: dict[str, Callable[[RunConfig, SubjectSession], list[str]]] = {
    "dwi_convert": _dwi_convert,
    "denoise": _denoise,
    "degibbs": _degibbs,
    "dwi_preproc": _dwi_preproc,
    "tractography": _tractography,
    "connectome": _connectome,
}


def make_diffusion_builder(config: RunConfig, step_id: str) -> Callable[[SubjectSession], list[str]]:
    """Return the command builder of a single-command ``dti`` step bound to *config*.

    The ``dwi_convert`` builder yields an empty command when the unit has no
    DWI image or its gradient table is incomplete.

    Raises
    ------
    KeyError
        If *step_id* is not a single-command ``dti`` step.
    """
    if step_id not in _BUILDERS:
        raise KeyError(f"No diffusion builder for step {step_id!r}")
    fn = _BUILDERS[step_id]

    def build(unit: SubjectSession) -> list[str]:
        return fn(config, unit)

    build.__name__ = f"build_{step_id}"
    return build


# ---------------------------------------------------------------------------
# Multi-command steps
# ---------------------------------------------------------------------------


def freesurfer_env(config: RunConfig) -> dict[str, str]:
    """Environment for FreeSurfer tools that locate subjects via SUBJECTS_DIR."""
    return {"SUBJECTS_DIR": str(config.recon_all_root)}


def mean_b0_commands(config: RunConfig, unit: SubjectSession) -> CommandSequence:
    b0 = str(layout.b0_series(config, unit))
    return [
        ("dwiextract", ["dwiextract", str(layout.dwi_image(config, unit)), b0, "-bzero", "-force"]),
        ("mrmath", ["mrmath", b0, "mean", str(layout.mean_b0(config, unit)), "-axis", "3", "-force"]),
    ]


def fod_commands(config: RunConfig, unit: SubjectSession) -> CommandSequence:
    dwi = str(layout.preproc_dwi(config, unit))
    mask = str(layout.dwi_mask(config, unit))
    response = str(layout.wm_response(config, unit))
    return [
        ("dwi2mask", ["dwi2mask", dwi, mask, "-force"]),
        ("dwi2response", [
            "dwi2response", "tournier", dwi, response,
            "-voxels", str(layout.response_voxels(config, unit)), "-force",
        ]),
        ("dwi2fod", [
            "dwi2fod", "csd", dwi, response, str(layout.fod(config, unit)),
            "-mask", mask, *_threads(config), "-force",
        ]),
    ]


def five_tt_commands(config: RunConfig, unit: SubjectSession) -> CommandSequence:
    brain = str(layout.t1_brain(config, unit))
    return [
        ("mri_convert", ["mri_convert", str(layout.recon_brain(config, unit)), brain]),
        ("5ttgen", ["5ttgen", "fsl", brain, str(layout.five_tt(config, unit)), "-premasked", "-force"]),
    ]


def parcellation_commands(config: RunConfig, unit: SubjectSession) -> CommandSequence:
    """Project the Schaefer atlas onto the unit's surfaces and relabel it.

    ``mri_surf2surf`` resolves ``--srcsubject`` against SUBJECTS_DIR, so
    fsaverage5 is given relative to the recon-all root.
    """
    atlas = config.schaefer_atlas
    schaefer = config.schaefer_root
    fsaverage = os.path.relpath(config.fsaverage_dir, config.recon_all_root)
    commands: CommandSequence = []
    for hemi in layout.HEMISPHERES:
        commands.append((f"mri_surf2surf-{hemi}", [
            "mri_surf2surf", "--hemi", hemi,
            "--srcsubject", fsaverage,
            "--trgsubject", unit.label,
            "--sval-annot", str(schaefer / "FreeSurfer5.3" / "fsaverage5" / "label" / f"{hemi}.{atlas}.annot"),
            "--tval", str(layout.subject_annot(config, unit, hemi)),
        ]))
    volume = str(layout.parcellation_volume(config, unit))
    commands.append(("mri_aparc2aseg", [
        "mri_aparc2aseg", "--s", unit.label, "--o", volume, "--annot", atlas,
    ]))
    commands.append(("labelconvert", [
        "labelconvert", volume,
        str(schaefer / "project_to_individual" / f"{atlas}_LUT.txt"),
        str(schaefer / "freeview_lut" / f"{atlas}.txt"),
        str(layout.parcels(config, unit)),
        "-force",
    ]))
    return commands
