import pytest

from rsfc_pipeline.pipeline import FMRI_PIPELINE, build_registry
from rsfc_pipeline.registry import StepKind, StepRegistry


def noop(unit):
    return ["true"]


def test_register_assigns_increasing_order():
    registry = StepRegistry()
    a = registry.register("p", "a", "A", StepKind.DIRECT_COMMAND, noop)
    b = registry.register("p", "b", "B", StepKind.DIRECT_COMMAND, noop)
    assert (a.order, b.order) == (0, 1)
    assert [s.step_id for s in registry.steps_for("p")] == ["a", "b"]


def test_order_is_per_pipeline():
    registry = StepRegistry()
    registry.register("p", "a", "A", StepKind.DIRECT_COMMAND, noop)
    other = registry.register("q", "a", "A", StepKind.DIRECT_COMMAND, noop)
    assert other.order == 0
    assert set(registry.pipelines()) == {"p", "q"}


def test_duplicate_step_rejected():
    registry = StepRegistry()
    registry.register("p", "a", "A", StepKind.DIRECT_COMMAND, noop)
    with pytest.raises(ValueError, match="already registered"):
        registry.register("p", "a", "A again", StepKind.DIRECT_COMMAND, noop)


def test_frozen_registry_rejects_registration():
    registry = StepRegistry().freeze()
    assert registry.frozen
    with pytest.raises(RuntimeError, match="frozen"):
        registry.register("p", "a", "A", StepKind.DIRECT_COMMAND, noop)


def test_unknown_pipeline_has_no_steps():
    registry = StepRegistry()
    assert registry.steps_for("missing") == []
    assert "missing" not in registry
    assert registry.pipelines() == []


def test_descriptor_defaults():
    step = StepRegistry().register("p", "a", "A", StepKind.CUSTOM_ROUTINE, noop)
    assert step.is_complete is None
    assert step.scan_output is True


# ---------------------------------------------------------------------------
# The built-in fmri pipeline
# ---------------------------------------------------------------------------


def test_fmri_pipeline_order(cfg):
    registry = build_registry(cfg)
    assert registry.frozen
    assert [s.step_id for s in registry.steps_for(FMRI_PIPELINE)] == [
        "structural_preproc",
        "recon_all",
        "anatomical",
        "functional",
        "registration",
        "segmentation",
        "fsf_processing",
        "timeseries",
    ]


def test_fmri_step_kinds(cfg):
    steps = {s.step_id: s for s in build_registry(cfg).steps_for(FMRI_PIPELINE)}
    assert steps["recon_all"].kind is StepKind.DIRECT_COMMAND
    assert steps["fsf_processing"].kind is StepKind.CUSTOM_ROUTINE
    assert steps["timeseries"].kind is StepKind.CUSTOM_ROUTINE


def test_every_fmri_step_has_a_probe(cfg):
    for step in build_registry(cfg).steps_for(FMRI_PIPELINE):
        assert step.is_complete is not None
