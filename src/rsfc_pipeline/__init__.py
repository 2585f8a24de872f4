"""rsfc_pipeline — resumable, parallel orchestrator for resting-state fMRI processing.

Discovers every subject (and session) of a dataset, runs a fixed sequence of
external neuroimaging tools for each of them (structural preprocessing,
FreeSurfer, functional cleanup, registration, segmentation, nuisance
regression, atlas time-series extraction), skips steps whose outputs already
exist, and records failures in a deduplicated error ledger.

Typical usage::

    from rsfc_pipeline.config import RunConfig
    from rsfc_pipeline.ledger import get_ledger
    from rsfc_pipeline.pipeline import PipelineRunner, build_registry, default_scaffolds
    from rsfc_pipeline.runner import StepRunner
    from rsfc_pipeline.scheduler import Scheduler
    from rsfc_pipeline.sessions import discover_units

    cfg      = RunConfig.from_yaml("/etc/rsfc/config.yaml")
    ledger   = get_ledger(cfg)
    registry = build_registry(cfg)
    units    = discover_units(cfg.input_root, cfg.target_subjects, cfg.subject_pattern)
    runner   = PipelineRunner(cfg, registry, StepRunner(cfg, ledger), default_scaffolds(cfg))
    summary  = Scheduler(runner, ledger, cfg.pipelines, cfg.threads_per_subject).run(units)
"""

__version__ = "0.1.0"
