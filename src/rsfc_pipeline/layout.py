"""layout.py — where each step writes its artifacts.

Every unit owns ``<output_root>/<subject>[/<session>]``; no two units share a
directory tree.  The file names below are the completion contract consumed by
:mod:`rsfc_pipeline.probes` and by downstream analysis.

Output layout::

    <subject>[/<session>]/
        anat/T1w.nii.gz                          structural_preproc
        anat/Stru_Brain.nii.gz                   anatomical
        func/example_func.nii.gz                 functional
        func/reg_dir/example_func2standard.nii.gz registration
        func/seg/{global,csf,wm}_mask.nii.gz     segmentation
        results/<flavor>/rest_res2standard.nii.gz                        fsf_processing
        results/<flavor>/timeseries/<sub>[_<ses>]_<flavor>_<atlas>.txt   timeseries

        structural_connectivity/DWI.mif                          dwi_convert
        structural_connectivity/meanb0.mif                       mean_b0
        structural_connectivity/dwi_denoised.mif                 denoise
        structural_connectivity/dwi_denoised_unringed.mif        degibbs
        structural_connectivity/dwi_denoised_unringed_preproc.mif dwi_preproc
        structural_connectivity/fod.mif                          fod
        structural_connectivity/5TT_in_T1w_space.mif             five_tt
        structural_connectivity/tracks_<streamlines>.tck          tractography
        structural_connectivity/<schaefer>_parcels.mif           parcellation
        structural_connectivity/<schaefer>_connectome.csv        connectome

    <recon_all_dir>/<label>/mri/brain.mgz        recon_all
    <recon_all_dir>/<label>/label/{lh,rh}.<schaefer>.annot  parcellation
"""
from __future__ import annotations

__all__ = [
    "MASK_NAMES",
    "unit_dir",
    "anat_dir",
    "func_dir",
    "reg_dir",
    "seg_dir",
    "results_dir",
    "timeseries_dir",
    "preproc_t1",
    "recon_subject_dir",
    "recon_brain",
    "stru_brain",
    "example_func",
    "func2standard",
    "mask_file",
    "residuals",
    "timeseries_file",
    "scaffold_dirs",
    "HEMISPHERES",
    "connectivity_dir",
    "connectivity_file",
    "dwi_image",
    "b0_series",
    "mean_b0",
    "denoised_dwi",
    "unringed_dwi",
    "preproc_dwi",
    "dwi_mask",
    "wm_response",
    "response_voxels",
    "fod",
    "t1_brain",
    "five_tt",
    "tracks",
    "subject_annot",
    "parcellation_volume",
    "parcels",
    "connectome",
    "connectome_assignments",
    "dti_scaffold_dirs",
]

from pathlib import Path

from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.sessions import SubjectSession

#: Tissue masks produced by segmentation and required by nuisance regression.
MASK_NAMES = ("global", "csf", "wm")


def unit_dir(config: RunConfig, unit: SubjectSession) -> Path:
    path = config.output_root / unit.subject
    if unit.session is not None:
        path = path / unit.session
    return path


def anat_dir(config: RunConfig, unit: SubjectSession) -> Path:
    return unit_dir(config, unit) / "anat"


def func_dir(config: RunConfig, unit: SubjectSession) -> Path:
    return unit_dir(config, unit) / "func"


def reg_dir(config: RunConfig, unit: SubjectSession) -> Path:
    return func_dir(config, unit) / "reg_dir"


def seg_dir(config: RunConfig, unit: SubjectSession) -> Path:
    return func_dir(config, unit) / "seg"


def results_dir(config: RunConfig, unit: SubjectSession, flavor: str) -> Path:
    return unit_dir(config, unit) / "results" / flavor


def timeseries_dir(config: RunConfig, unit: SubjectSession, flavor: str) -> Path:
    return results_dir(config, unit, flavor) / "timeseries"


def preproc_t1(config: RunConfig, unit: SubjectSession) -> Path:
    """Reoriented T1w written by structural preprocessing (recon-all input)."""
    return anat_dir(config, unit) / "T1w.nii.gz"


def recon_subject_dir(config: RunConfig, unit: SubjectSession) -> Path:
    return config.recon_all_root / unit.label


def recon_brain(config: RunConfig, unit: SubjectSession) -> Path:
    return recon_subject_dir(config, unit) / "mri" / "brain.mgz"


def stru_brain(config: RunConfig, unit: SubjectSession) -> Path:
    return anat_dir(config, unit) / "Stru_Brain.nii.gz"


def example_func(config: RunConfig, unit: SubjectSession) -> Path:
    return func_dir(config, unit) / "example_func.nii.gz"


def func2standard(config: RunConfig, unit: SubjectSession) -> Path:
    return reg_dir(config, unit) / "example_func2standard.nii.gz"


def mask_file(config: RunConfig, unit: SubjectSession, mask: str) -> Path:
    return seg_dir(config, unit) / f"{mask}_mask.nii.gz"


def residuals(config: RunConfig, unit: SubjectSession, flavor: str) -> Path:
    """Nuisance-regressed BOLD in standard space for one regression flavor."""
    return results_dir(config, unit, flavor) / "rest_res2standard.nii.gz"


def timeseries_file(config: RunConfig, unit: SubjectSession, flavor: str) -> Path:
    """Atlas time-series file, named from subject, optional session and flavor."""
    return timeseries_dir(config, unit, flavor) / f"{unit.label}_{flavor}_{config.atlas}.txt"


def scaffold_dirs(config: RunConfig, unit: SubjectSession) -> list[Path]:
    """Directories the ``fmri`` pipeline prepares before its first step."""
    dirs = [
        anat_dir(config, unit),
        func_dir(config, unit),
        reg_dir(config, unit),
        seg_dir(config, unit),
    ]
    dirs += [timeseries_dir(config, unit, flavor) for flavor in config.fsf_types]
    return dirs


# ---------------------------------------------------------------------------
# dti pipeline
# ---------------------------------------------------------------------------

HEMISPHERES = ("lh", "rh")


def connectivity_dir(config: RunConfig, unit: SubjectSession) -> Path:
    return unit_dir(config, unit) / "structural_connectivity"


def connectivity_file(config: RunConfig, unit: SubjectSession, name: str) -> Path:
    return connectivity_dir(config, unit) / name


def dwi_image(config: RunConfig, unit: SubjectSession) -> Path:
    """Raw DWI converted to MRtrix format with its gradient table embedded."""
    return connectivity_file(config, unit, "DWI.mif")


def b0_series(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "b0.mif")


def mean_b0(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "meanb0.mif")


def denoised_dwi(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "dwi_denoised.mif")


def unringed_dwi(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "dwi_denoised_unringed.mif")


def preproc_dwi(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "dwi_denoised_unringed_preproc.mif")


def dwi_mask(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "dwi_temp_mask.mif")


def wm_response(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "wm_response.txt")


def response_voxels(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "voxels.mif")


def fod(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "fod.mif")


def t1_brain(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "T1w_brain.nii.gz")


def five_tt(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, "5TT_in_T1w_space.mif")


def tracks(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, f"tracks_{config.streamlines}.tck")


def subject_annot(config: RunConfig, unit: SubjectSession, hemi: str) -> Path:
    """Schaefer annotation resampled onto the unit's own FreeSurfer surfaces."""
    return recon_subject_dir(config, unit) / "label" / f"{hemi}.{config.schaefer_atlas}.annot"


def parcellation_volume(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, f"{config.schaefer_atlas}.mgz")


def parcels(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, f"{config.schaefer_atlas}_parcels.mif")


def connectome(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, f"{config.schaefer_atlas}_connectome.csv")


def connectome_assignments(config: RunConfig, unit: SubjectSession) -> Path:
    return connectivity_file(config, unit, f"{config.schaefer_atlas}_connectome_assignments.csv")


def dti_scaffold_dirs(config: RunConfig, unit: SubjectSession) -> list[Path]:
    """Directories the ``dti`` pipeline prepares before its first step."""
    return [anat_dir(config, unit), connectivity_dir(config, unit)]
