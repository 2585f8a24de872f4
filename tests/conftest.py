import logging
import subprocess
from pathlib import Path

import pytest

from rsfc_pipeline import layout
from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.sessions import SubjectSession


# ---------------------------------------------------------------------------
# Dataset helpers
# ---------------------------------------------------------------------------

def write_file(path: Path, content: bytes = b"data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def make_unit_inputs(input_root: Path, subject: str, session: str | None = None,
                     anat: bool = True, func: bool = True, dwi: bool = False) -> Path:
    """Create ``<input_root>/<subject>[/<session>]/{anat,func,dwi}`` with raw images."""
    base = input_root / subject
    if session:
        base = base / session
    if anat:
        write_file(base / "anat" / f"{subject}_T1w.nii.gz")
    if func:
        write_file(base / "func" / f"{subject}_task-rest_bold.nii.gz")
    if dwi:
        for suffix in ("nii.gz", "bvec", "bval"):
            write_file(base / "dwi" / f"{subject}_dwi.{suffix}")
    return base


def _arg(cmd: list[str], flag: str) -> str | None:
    return cmd[cmd.index(flag) + 1] if flag in cmd else None


# Position of the output argument for tools that take it positionally
_OUTPUT_POSITION = {
    "mrconvert": 2, "dwiextract": 2, "mrmath": 3, "dwidenoise": 2, "mrdegibbs": 2,
    "dwifslpreproc": 2, "dwi2mask": 2, "dwi2response": 3, "dwi2fod": 4,
    "mri_convert": 2, "5ttgen": 3, "tckgen": 2, "labelconvert": 4, "tck2connectome": 6,
}

# Tools that name their output with a flag
_OUTPUT_FLAG = {"mri_surf2surf": "--tval", "mri_aparc2aseg": "--o"}


class FakeTools:
    """Stand-in for ``subprocess.run`` that writes each tool's outputs.

    ``fail_on`` names a tool or script (e.g. ``"FC_step2"``) that exits
    with *code* and prints *output* instead of producing anything.
    """

    def __init__(self, config: RunConfig, fail_on: str | None = None,
                 code: int = 1, output: str = "ERROR: something broke\n", voxels: int = 1000):
        self.config = config
        self.fail_on = fail_on
        self.code = code
        self.output = output
        self.voxels = voxels
        self.calls: list[list[str]] = []

    @property
    def tool_calls(self) -> list[list[str]]:
        """Calls other than the 3dBrickStat mask queries."""
        return [c for c in self.calls if c[0] != "3dBrickStat"]

    def names(self) -> list[str]:
        return [self._name(c) for c in self.tool_calls]

    @staticmethod
    def _name(cmd: list[str]) -> str:
        return Path(cmd[1]).name if cmd[0] == "bash" else cmd[0]

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if cmd[0] == "3dBrickStat":
            return subprocess.CompletedProcess(cmd, 0, stdout=f"{self.voxels}\n", stderr="")
        name = self._name(cmd)
        if self.fail_on == name:
            return subprocess.CompletedProcess(cmd, self.code, stdout=self.output)
        self._produce(name, cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="done\n")

    def _produce(self, name: str, cmd: list[str]) -> None:
        cfg = self.config
        if name == "fslreorient2std":
            write_file(Path(cmd[2]))
        elif name == "recon-all":
            write_file(Path(_arg(cmd, "-sd")) / _arg(cmd, "-subject") / "mri" / "brain.mgz")
        elif name == "fslmeants":
            write_file(Path(_arg(cmd, "-o")), b"1 2 3\n")
        elif name in _OUTPUT_POSITION:
            write_file(Path(cmd[_OUTPUT_POSITION[name]]))
        elif name in _OUTPUT_FLAG:
            write_file(Path(_arg(cmd, _OUTPUT_FLAG[name])))
        else:
            unit = SubjectSession(_arg(cmd, "--subject"), _arg(cmd, "--session"))
            if name == "FC_step1":
                write_file(layout.stru_brain(cfg, unit))
            elif name == "FC_step2":
                write_file(layout.example_func(cfg, unit))
            elif name == "FC_step3":
                write_file(layout.func2standard(cfg, unit))
            elif name == "FC_step4":
                for mask in layout.MASK_NAMES:
                    write_file(layout.mask_file(cfg, unit, mask))
            elif name == "FC_step5":
                write_file(Path(_arg(cmd, "--results-dir")) / "rest_res2standard.nii.gz")


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cfg(tmp_path):
    """RunConfig pointing at a temporary directory tree, all subjects targeted."""
    return RunConfig(
        input_root=tmp_path / "input",
        output_root=tmp_path / "output",
        standard_dir=tmp_path / "standard",
        tissue_priors_dir=tmp_path / "tissuepriors",
        template_dir=tmp_path / "template",
        atlas_dir=tmp_path / "atlas",
        scripts_dir=tmp_path / "scripts",
        target_subjects="all",
        run_stamp="20240501",
    )


@pytest.fixture
def dataset(cfg):
    """Two units: a session-less subject and a subject with one session.

    Also provides the atlas used by time-series extraction.
    """
    make_unit_inputs(cfg.input_root, "sub-01")
    make_unit_inputs(cfg.input_root, "sub-02", "ses-A")
    write_file(cfg.atlas_file)
    return cfg


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo handlers and propagation changes made by setup_logging."""
    yield
    logger = logging.getLogger("rsfc_pipeline")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
