from rsfc_pipeline import layout
from rsfc_pipeline.sessions import SubjectSession


def test_unit_dir_with_and_without_session(cfg):
    assert layout.unit_dir(cfg, SubjectSession("sub-01")) == cfg.output_root / "sub-01"
    assert layout.unit_dir(cfg, SubjectSession("sub-01", "ses-A")) == cfg.output_root / "sub-01" / "ses-A"


def test_units_never_share_a_tree(cfg):
    a = layout.unit_dir(cfg, SubjectSession("sub-01"))
    b = layout.unit_dir(cfg, SubjectSession("sub-01", "ses-A"))
    c = layout.unit_dir(cfg, SubjectSession("sub-01", "ses-B"))
    assert b != c
    assert b.parent == a  # session trees nest under the subject directory
    assert not str(c).startswith(str(b))


def test_recon_subject_dir_uses_label(cfg):
    unit = SubjectSession("sub-01", "ses-A")
    assert layout.recon_subject_dir(cfg, unit) == cfg.recon_all_root / "sub-01_ses-A"
    assert layout.recon_brain(cfg, unit).name == "brain.mgz"


def test_mask_files(cfg):
    unit = SubjectSession("sub-01")
    names = [layout.mask_file(cfg, unit, m).name for m in layout.MASK_NAMES]
    assert names == ["global_mask.nii.gz", "csf_mask.nii.gz", "wm_mask.nii.gz"]


def test_timeseries_file_name(cfg):
    unit = SubjectSession("sub-01", "ses-A")
    path = layout.timeseries_file(cfg, unit, "NoGRS")
    assert path.name == "sub-01_ses-A_NoGRS_BN246.txt"
    assert path.parent == layout.results_dir(cfg, unit, "NoGRS") / "timeseries"


def test_residuals_per_flavor(cfg):
    unit = SubjectSession("sub-01")
    assert layout.residuals(cfg, unit, "NoGRS") != layout.residuals(cfg, unit, "Retain_GRS")


def test_scaffold_dirs_cover_each_flavor(cfg):
    unit = SubjectSession("sub-01")
    dirs = layout.scaffold_dirs(cfg, unit)
    assert layout.anat_dir(cfg, unit) in dirs
    assert layout.seg_dir(cfg, unit) in dirs
    for flavor in cfg.fsf_types:
        assert layout.timeseries_dir(cfg, unit, flavor) in dirs


def test_diffusion_outputs_share_one_directory(cfg):
    unit = SubjectSession("sub-01", "ses-A")
    folder = cfg.output_root / "sub-01" / "ses-A" / "structural_connectivity"
    assert layout.connectivity_dir(cfg, unit) == folder
    for artifact in (layout.dwi_image, layout.preproc_dwi, layout.fod, layout.five_tt, layout.connectome):
        assert artifact(cfg, unit).parent == folder


def test_diffusion_names_follow_config(cfg):
    unit = SubjectSession("sub-01")
    assert layout.tracks(cfg, unit).name == "tracks_10M.tck"
    assert layout.parcels(cfg, unit).name == "Schaefer2018_100Parcels_7Networks_order_parcels.mif"
    assert layout.connectome(cfg, unit).suffix == ".csv"


def test_subject_annot_lives_in_recon_all_subject(cfg):
    unit = SubjectSession("sub-01", "ses-A")
    annot = layout.subject_annot(cfg, unit, "rh")
    assert annot == cfg.recon_all_root / "sub-01_ses-A" / "label" / "rh.Schaefer2018_100Parcels_7Networks_order.annot"


def test_dti_scaffold_dirs(cfg):
    unit = SubjectSession("sub-01")
    assert layout.dti_scaffold_dirs(cfg, unit) == [layout.anat_dir(cfg, unit), layout.connectivity_dir(cfg, unit)]
