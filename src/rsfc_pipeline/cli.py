from __future__ import annotations

import dataclasses
import logging

import click
import pandas as pd

from rsfc_pipeline.config import RunConfig
from rsfc_pipeline.ledger import get_ledger
from rsfc_pipeline.log import SUCCESS, setup_logging
from rsfc_pipeline.manifest import build_manifest, load_state, outcomes_to_state, save_state
from rsfc_pipeline.pipeline import PipelineRunner, build_registry, default_scaffolds
from rsfc_pipeline.preflight import PreflightError, check_environment, setup_output_dirs
from rsfc_pipeline.report import generate_report
from rsfc_pipeline.runner import StepRunner
from rsfc_pipeline.scheduler import Scheduler
from rsfc_pipeline.sessions import discover_units, units_to_frame

logger = logging.getLogger(__name__)

# (option, config field, click type, help)
_OVERRIDES = [
    ("--input-dir", "input_root", click.Path(), "Dataset root (sub-*/[ses-*/]anat, func, dwi)."),
    ("--output-dir", "output_root", click.Path(), "Root of the output artifact tree."),
    ("--standard-dir", "standard_dir", click.Path(), "Standard-brain template directory."),
    ("--tissue-priors-dir", "tissue_priors_dir", click.Path(), "Tissue priors directory."),
    ("--template-dir", "template_dir", click.Path(), "FSF design template directory."),
    ("--atlas-dir", "atlas_dir", click.Path(), "Parcellation atlas directory."),
    ("--scripts-dir", "scripts_dir", click.Path(), "Directory holding the FC_step* scripts."),
    ("--schaefer-dir", "schaefer_dir", click.Path(), "Schaefer annotations and LUTs (default: <atlas-dir>/schaefer)."),
    ("--fsaverage-dir", "fsaverage_dir", click.Path(), "FreeSurfer fsaverage5 subject directory."),
    ("--recon-all-dir", "recon_all_dir", click.Path(), "FreeSurfer SUBJECTS_DIR."),
    ("--log-dir", "log_dir", click.Path(), "Daily and per-step log directory."),
    ("--error-log-dir", "error_log_dir", click.Path(), "Error ledger directory."),
    ("--state-file", "state_file", click.Path(), "Parquet run-state file."),
    ("--threads", "threads_per_subject", int, "Threads budgeted per subject."),
    ("--fwhm", "fwhm", float, "Smoothing FWHM (mm)."),
    ("--sigma", "sigma", float, "Smoothing sigma."),
    ("--highp", "highp", float, "High-pass cutoff (Hz)."),
    ("--lowp", "lowp", float, "Low-pass cutoff (Hz); must be below --highp."),
    ("--tr", "tr", float, "Repetition time (s)."),
    ("--te", "te", float, "Echo time (ms)."),
    ("--n-vols", "n_vols", int, "Number of functional volumes."),
    ("--fsf-types", "fsf_types", str, "Comma-separated FSF types (NoGRS, Retain_GRS)."),
    ("--atlas", "atlas", str, "Atlas name; <atlas-dir>/<atlas>.nii.gz is used."),
    ("--pe-dir", "pe_dir", str, "DWI phase-encoding direction for dwifslpreproc."),
    ("--streamlines", "streamlines", str, "Number of streamlines tckgen selects (e.g. 10M)."),
    ("--schaefer-atlas", "schaefer_atlas", str, "Schaefer parcellation used for the connectome."),
    ("--anat-pattern", "anat_pattern", str, "Glob for the anatomical image."),
    ("--func-pattern", "func_pattern", str, "Glob for the functional image."),
    ("--dwi-pattern", "dwi_pattern", str, "Glob for the diffusion image (bvec/bval beside it)."),
    ("--subject-pattern", "subject_pattern", str, "Regex subject directories must match."),
    ("--target-subjects", "target_subjects", str, "'all', or a comma-separated allow-list."),
    ("--pipelines", "pipelines", str, "Comma-separated pipelines to run per unit."),
    ("--recon-all-timeout", "recon_all_timeout", str, "Wall-clock limit for recon-all (e.g. 48h)."),
    ("--run-stamp", "run_stamp", str, "Stamp naming log, ledger and report files."),
]


def _override_options(func):
    for option, name, type_, help_text in reversed(_OVERRIDES):
        func = click.option(
            option,
            name,
            default=None,
            type=type_,
            envvar=f"RSFC_{name.upper()}",
            help=f"{help_text} [env: RSFC_{name.upper()}]",
        )(func)
    return func


def _fail(ctx: click.Context, message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    ctx.exit(1)


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="RSFC_CONFIG",
    metavar="PATH",
    help="Path to YAML config file. Uses built-in defaults if omitted.",
)
@_override_options
@click.pass_context
def main(ctx: click.Context, config_path: str | None, **overrides) -> None:
    """rsfc-pipeline: resting-state functional connectivity batch processor."""
    ctx.ensure_object(dict)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        if config_path:
            config = RunConfig.from_yaml(config_path, **overrides)
        else:
            config = RunConfig.from_mapping(overrides)
    except (ValueError, OSError) as exc:
        _fail(ctx, f"Invalid configuration: {exc}")
        return
    ctx.obj["config"] = config


@main.command()
@click.option("--dry-run", is_flag=True, help="Log every command without executing anything.")
@click.option(
    "--skip-existing/--no-skip-existing",
    default=None,
    help="Skip steps whose outputs already exist (default: from config).",
)
@click.option("--verbose", "-v", is_flag=True, help="Show DEBUG output on the console.")
@click.option(
    "--skip-preflight",
    is_flag=True,
    default=False,
    help="Skip tool, environment and directory checks.",
)
@click.option("--subjects", default=None, metavar="LIST", help="Shortcut for --target-subjects.")
@click.pass_context
def run(
    ctx: click.Context,
    dry_run: bool,
    skip_existing: bool | None,
    verbose: bool,
    skip_preflight: bool,
    subjects: str | None,
) -> None:
    """Discover units and run every configured pipeline on each of them."""
    changes: dict = {}
    if dry_run:
        changes["dry_run"] = True
    if verbose:
        changes["verbose"] = True
    if skip_existing is not None:
        changes["skip_existing"] = skip_existing
    if subjects is not None:
        changes["target_subjects"] = subjects
    try:
        config: RunConfig = dataclasses.replace(ctx.obj["config"], **changes)
    except ValueError as exc:
        _fail(ctx, f"Invalid configuration: {exc}")
        return

    setup_logging(config, log_to_file=not config.dry_run)
    logger.info("Starting resting-state FC processing (run %s)", config.run_stamp)
    if config.dry_run:
        logger.info("Dry run: no commands will be executed")

    registry = build_registry(config)
    unknown = [p for p in config.pipelines if p not in registry]
    if unknown:
        logger.warning("Unknown pipeline(s) %s have no steps and will do nothing", ", ".join(unknown))

    if not skip_preflight:
        try:
            check_environment(config)
        except PreflightError as exc:
            logger.error("%s", exc)
            ctx.exit(1)

    setup_output_dirs(config)

    units = discover_units(config.input_root, config.target_subjects, config.subject_pattern)
    if not units:
        logger.error("No subjects found to process in %s", config.input_root)
        ctx.exit(1)
    logger.info("Found %d unit(s) to process", len(units))

    ledger = get_ledger(config)
    if not config.dry_run:
        ledger.reset()

    step_runner = StepRunner(config, ledger)
    pipeline_runner = PipelineRunner(config, registry, step_runner, default_scaffolds(config))
    scheduler = Scheduler(
        pipeline_runner, ledger, config.pipelines, config.threads_per_subject, dry_run=config.dry_run
    )
    summary = scheduler.run(units)

    if not config.dry_run:
        parts = [df for df in (load_state(config), outcomes_to_state(summary.outcomes)) if not df.empty]
        if parts:
            save_state(pd.concat(parts, ignore_index=True), config)
    generate_report(config, summary, ledger)

    if summary.ok:
        logger.log(SUCCESS, "All processing completed successfully")
        return
    logger.warning("Processing completed with %d failure(s)", len(summary.failed))
    ctx.exit(1)


@main.command()
@click.pass_context
def units(ctx: click.Context) -> None:
    """List the units of work that a run would process."""
    config: RunConfig = ctx.obj["config"]
    found = discover_units(config.input_root, config.target_subjects, config.subject_pattern)
    if not found:
        click.echo("No units found.")
        return
    click.echo(units_to_frame(found).to_string(index=False))


@main.command(name="manifest")
@click.pass_context
def show_manifest(ctx: click.Context) -> None:
    """Show per-step completion for every unit without running anything."""
    config: RunConfig = ctx.obj["config"]
    found = discover_units(config.input_root, config.target_subjects, config.subject_pattern)
    manifest = build_manifest(found, build_registry(config), config.pipelines)

    if manifest.empty:
        click.echo("No units found.")
        return

    click.echo(manifest.to_string(index=False))


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the recorded outcome of previous runs."""
    config: RunConfig = ctx.obj["config"]
    state = load_state(config)

    if state.empty:
        click.echo("No state recorded yet.")
        return

    click.echo(state.to_string(index=False))
