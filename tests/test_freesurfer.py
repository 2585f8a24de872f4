"""Tests for rsfc_pipeline.freesurfer — recon-all command building."""
import dataclasses
from pathlib import Path

from conftest import write_file
from rsfc_pipeline import layout
from rsfc_pipeline.freesurfer import build_recon_all_command, make_recon_all_builder
from rsfc_pipeline.sessions import SubjectSession

UNIT = SubjectSession("sub-01", "ses-A")


# ---------------------------------------------------------------------------
# build_recon_all_command
# ---------------------------------------------------------------------------

def test_command_with_input():
    cmd = build_recon_all_command("sub-01", Path("/fs"), Path("/in/T1w.nii.gz"), 4)
    assert cmd == [
        "recon-all", "-subject", "sub-01", "-sd", "/fs",
        "-i", "/in/T1w.nii.gz", "-all", "-openmp", "4",
    ]


def test_command_resume_omits_input():
    cmd = build_recon_all_command("sub-01", Path("/fs"), None, 4)
    assert "-i" not in cmd
    assert cmd[-3:] == ["-all", "-openmp", "4"]


def test_command_with_timeout():
    cmd = build_recon_all_command("sub-01", Path("/fs"), None, 4, timeout="48h")
    assert cmd[:3] == ["timeout", "48h", "recon-all"]


# ---------------------------------------------------------------------------
# make_recon_all_builder
# ---------------------------------------------------------------------------

def test_builder_imports_preprocessed_t1(cfg):
    t1w = write_file(layout.preproc_t1(cfg, UNIT))
    cmd = make_recon_all_builder(cfg)(UNIT)
    assert cmd[cmd.index("-subject") + 1] == "sub-01_ses-A"
    assert cmd[cmd.index("-sd") + 1] == str(cfg.recon_all_root)
    assert cmd[cmd.index("-i") + 1] == str(t1w)
    assert cmd[cmd.index("-openmp") + 1] == "6"


def test_builder_resumes_existing_subject(cfg):
    write_file(layout.preproc_t1(cfg, UNIT))
    layout.recon_subject_dir(cfg, UNIT).mkdir(parents=True)
    cmd = make_recon_all_builder(cfg)(UNIT)
    assert cmd[0] == "recon-all"
    assert "-i" not in cmd


def test_builder_without_input_is_empty(cfg):
    assert make_recon_all_builder(cfg)(UNIT) == []


def test_builder_in_dry_run_does_not_need_t1(cfg):
    cfg = dataclasses.replace(cfg, dry_run=True)
    cmd = make_recon_all_builder(cfg)(UNIT)
    assert cmd[cmd.index("-i") + 1] == str(layout.preproc_t1(cfg, UNIT))


def test_builder_applies_timeout(cfg):
    cfg = dataclasses.replace(cfg, recon_all_timeout="2h")
    write_file(layout.preproc_t1(cfg, UNIT))
    assert make_recon_all_builder(cfg)(UNIT)[:2] == ["timeout", "2h"]


def test_builder_name(cfg):
    assert make_recon_all_builder(cfg).__name__ == "build_recon_all"
