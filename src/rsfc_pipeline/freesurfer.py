from __future__ import annotations

"""rsfc_pipeline.freesurfer — FreeSurfer ``recon-all`` command building.

The recon-all step reconstructs the reoriented T1w written by structural
preprocessing into ``<recon_all_dir>/<label>``, where ``label`` is
``<subject>`` or ``<subject>_<session>``::

    [timeout <limit>] recon-all -subject <label> -sd <recon_all_dir> \\
        -i <anat/T1w.nii.gz> -all -openmp <threads>

Resuming
--------
recon-all refuses ``-i`` when the subject directory already exists.  A
previous run that died part-way leaves such a directory without
``mri/brain.mgz``, so the builder drops ``-i`` and lets recon-all pick up the
existing subject instead.

Timeout
-------
When ``recon_all_timeout`` is configured (e.g. ``"48h"``) the command is
wrapped with coreutils ``timeout``; an expired run exits with status 124 and
is recorded like any other step failure.
"""

__all__ = ["build_recon_all_command", "make_recon_all_builder"]

from pathlib import Path
from typing import Callable

from rsfc_pipeline import layout
from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.sessions import SubjectSession


def build_recon_all_command(
    subject_id: str,
    subjects_dir: Path,
    t1w: Path | None,
    threads: int,
    timeout: str | None = None,
) -> list[str]:
    """Build a native ``recon-all`` command.

    Parameters
    ----------
    subject_id:
        FreeSurfer subject ID (the unit label).
    subjects_dir:
        FreeSurfer SUBJECTS_DIR.
    t1w:
        T1w NIfTI to import, or ``None`` to resume an existing subject.
    threads:
        Number of OpenMP threads.
    timeout:
        Optional wall-clock limit understood by ``timeout(1)``.
    """
    cmd = ["recon-all", "-subject", subject_id, "-sd", str(subjects_dir)]
    if t1w is not None:
        cmd += ["-i", str(t1w)]
    cmd += ["-all", "-openmp", str(threads)]
    if timeout:
        cmd = ["timeout", timeout] + cmd
    return cmd


def make_recon_all_builder(config: RunConfig) -> Callable[[SubjectSession], list[str]]:
    """Return the recon-all command builder bound to *config*.

    The builder yields an empty command when there is neither a T1w to
    import nor an existing subject directory to resume.
    """

    def build(unit: SubjectSession) -> list[str]:
        subject_dir = layout.recon_subject_dir(config, unit)
        t1w = layout.preproc_t1(config, unit)
        if subject_dir.is_dir():
            t1w_arg = None
        elif t1w.is_file() or config.dry_run:
            t1w_arg = t1w
        else:
            return []
        return build_recon_all_command(
            unit.label,
            config.recon_all_root,
            t1w_arg,
            config.threads_per_subject,
            timeout=config.recon_all_timeout,
        )

    build.__name__ = "build_recon_all"
    return build
