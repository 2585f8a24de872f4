from __future__ import annotations

__all__ = ["FSF_TYPES", "DEFAULT_TARGET_SUBJECT", "FMRI_PIPELINE", "DTI_PIPELINE", "RunConfig"]

import re
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path

import yaml

#: Regression flavors understood by the FSF nuisance-regression step.
FSF_TYPES: tuple[str, ...] = ("NoGRS", "Retain_GRS")

#: Subject processed when no target filter is given (smoke test).
DEFAULT_TARGET_SUBJECT = "sub-A00086238"

FMRI_PIPELINE = "fmri"
DTI_PIPELINE = "dti"

_PATH_FIELDS = {
    "input_root", "output_root", "standard_dir", "tissue_priors_dir",
    "template_dir", "atlas_dir", "scripts_dir", "recon_all_dir",
    "log_dir", "error_log_dir", "state_file", "schaefer_dir", "fsaverage_dir",
}
_TUPLE_FIELDS = {"fsf_types", "pipelines", "failure_patterns"}


def _today() -> str:
    return datetime.now().strftime("%Y%m%d")


@dataclass(frozen=True)
class RunConfig:
    """All parameters of one pipeline invocation.

    Instances are immutable; derive a modified copy with
    :func:`dataclasses.replace`, which re-runs validation.
    """

    # Directories
    input_root: Path = field(default_factory=lambda: Path("/data/rsfc/input"))
    output_root: Path = field(default_factory=lambda: Path("/data/rsfc/output"))
    standard_dir: Path = field(default_factory=lambda: Path("standard"))
    tissue_priors_dir: Path = field(default_factory=lambda: Path("tissuepriors"))
    template_dir: Path = field(default_factory=lambda: Path("template"))
    atlas_dir: Path = field(default_factory=lambda: Path("atlas"))
    scripts_dir: Path = field(default_factory=lambda: Path("scripts"))
    fsaverage_dir: Path = field(
        default_factory=lambda: Path("/opt/freesurfer/freesurfer/subjects/fsaverage5")
    )

    # Derived from output_root when None
    recon_all_dir: Path | None = None
    log_dir: Path | None = None
    error_log_dir: Path | None = None
    state_file: Path | None = None
    schaefer_dir: Path | None = None

    # Processing parameters
    threads_per_subject: int = 6
    fwhm: float = 6.0
    sigma: float = 2.548  # FWHM = 2.355 * sigma
    highp: float = 0.1
    lowp: float = 0.01
    tr: float = 1.667
    te: float = 33.0
    n_vols: int = 250
    fsf_types: tuple[str, ...] = FSF_TYPES
    atlas: str = "BN246"

    # Diffusion (dti pipeline)
    pe_dir: str = "AP"
    streamlines: str = "10M"
    schaefer_atlas: str = "Schaefer2018_100Parcels_7Networks_order"

    # Discovery
    anat_pattern: str = "*T1w.nii*"
    func_pattern: str = "*bold.nii*"
    dwi_pattern: str = "*_dwi.nii*"
    subject_pattern: str = r"^sub-[A-Za-z0-9]+$"
    target_subjects: str = ""

    # Execution
    pipelines: tuple[str, ...] = (FMRI_PIPELINE,)
    recon_all_timeout: str | None = None  # e.g. "48h", passed to timeout(1)
    failure_patterns: tuple[str, ...] = ("error", "exception", "failed")
    skip_existing: bool = True
    dry_run: bool = False
    verbose: bool = False

    # Names the daily log, ledger and report files
    run_stamp: str = field(default_factory=_today)

    def __post_init__(self) -> None:
        """Validate numeric parameters and FSF flavors.

        Raises
        ------
        ValueError
            If any parameter is out of range.
        """
        for name in ("threads_per_subject", "n_vols"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"Invalid {name}: {value!r}. Must be a positive integer.")

        for name in ("fwhm", "sigma", "highp", "lowp", "tr", "te"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"Invalid {name}: {value!r}. Must be a positive number.")

        if self.lowp >= self.highp:
            raise ValueError(
                f"lowp ({self.lowp}) must be less than highp ({self.highp})."
            )

        if not self.fsf_types:
            raise ValueError("At least one FSF type must be configured.")
        for fsf_type in self.fsf_types:
            if fsf_type not in FSF_TYPES:
                raise ValueError(
                    f"Invalid FSF type: {fsf_type!r}. Valid types are: {', '.join(FSF_TYPES)}"
                )

        if not self.pipelines:
            raise ValueError("At least one pipeline must be configured.")

        for name in ("anat_pattern", "func_pattern", "dwi_pattern", "pe_dir", "streamlines", "schaefer_atlas"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"Invalid {name}: {value!r}. Must be a non-empty string.")

        try:
            re.compile(self.subject_pattern)
        except re.error as exc:
            raise ValueError(f"Invalid subject_pattern {self.subject_pattern!r}: {exc}") from exc

    # ------------------------------------------------------------------
    # Derived locations
    # ------------------------------------------------------------------

    @property
    def recon_all_root(self) -> Path:
        """FreeSurfer SUBJECTS_DIR used by the recon-all step."""
        return self.recon_all_dir or self.output_root / "recon_all"

    @property
    def log_root(self) -> Path:
        return self.log_dir or self.output_root / "logs"

    @property
    def error_log_root(self) -> Path:
        return self.error_log_dir or self.output_root / "error_logs"

    @property
    def state_path(self) -> Path:
        return self.state_file or self.output_root / ".pipeline_state.parquet"

    @property
    def atlas_file(self) -> Path:
        return self.atlas_dir / f"{self.atlas}.nii.gz"

    @property
    def schaefer_root(self) -> Path:
        """Schaefer annotations and lookup tables used by the dti pipeline."""
        return self.schaefer_dir or self.atlas_dir / "schaefer"

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides) -> "RunConfig":
        """Load config from a YAML file, overriding defaults.

        Keyword *overrides* are applied on top of the file contents.

        Raises
        ------
        ValueError
            If the file contains invalid YAML syntax, unknown keys, or
            invalid parameter values.
        FileNotFoundError
            If *path* does not exist.
        """
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")

        data.update(overrides)
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict) -> "RunConfig":
        """Build a config from a plain mapping, coercing paths and sequences."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config key(s): {sorted(unknown)}")

        data = dict(data)
        for key in _PATH_FIELDS:
            if data.get(key) is not None:
                data[key] = Path(data[key])
        for key in _TUPLE_FIELDS:
            value = data.get(key)
            if isinstance(value, str):
                data[key] = tuple(v for v in re.split(r"[,\s]+", value) if v)
            elif value is not None:
                data[key] = tuple(value)
        if data.get("run_stamp") is not None:
            data["run_stamp"] = str(data["run_stamp"])

        return cls(**data)

    def parameters(self) -> dict[str, object]:
        """Processing parameters recorded in the final report for provenance."""
        params: dict[str, object] = {
            "Threads": self.threads_per_subject,
            "FWHM": self.fwhm,
            "Sigma": self.sigma,
            "High-pass (Hz)": self.highp,
            "Low-pass (Hz)": self.lowp,
            "TR": self.tr,
            "TE": self.te,
            "Number Volume": self.n_vols,
            "Atlas": self.atlas,
        }
        if DTI_PIPELINE in self.pipelines:
            params.update({
                "Phase encoding": self.pe_dir,
                "Streamlines": self.streamlines,
                "Structural atlas": self.schaefer_atlas,
            })
        return params
