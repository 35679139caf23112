import json
from pathlib import Path

import pytest

from deliberation_pipeline.agents import ScriptedAgentGateway
from deliberation_pipeline.config import PipelineConfig
from deliberation_pipeline.cycle import ArtifactNames, CycleContext, IterationCycleEngine, run_iteration_cycle
from deliberation_pipeline.exceptions import AgentTimeoutError, SchemaValidationError
from deliberation_pipeline.models import IterationState
from deliberation_pipeline.templates import TemplateResolver


APPROVED = {"verdict": "approved", "feedback": "looks good"}
REVISE = {"verdict": "needs_revision", "feedback": "missing error handling"}
PLAN_NAMES = ArtifactNames(draft_prefix="plan-v", feedback_prefix="feedback-v", locked_name="plan-locked.md")
IMPL_NAMES = ArtifactNames(
    draft_prefix="impl-notes-v",
    feedback_prefix="review-v",
    locked_name="impl-final.md",
    tiebreak_name="tiebreak-impl.md",
)


def make_context(tmp_path: Path, *, level: str = "task", max_iterations: int = 3, dry_run: bool = False) -> CycleContext:
    config = PipelineConfig.load().for_level(level).model_copy(update={"max_iterations": max_iterations})
    return CycleContext(
        label="m01/p01/t01",
        level=level,
        level_config=config,
        artifact_dir=tmp_path / "t01",
        artifact_names=IMPL_NAMES if level == "implementation" else PLAN_NAMES,
        template_vars={"UNIT_ID": "m01/p01/t01", "SPEC_PATH": str(tmp_path / "t01" / "spec.md")},
        dry_run=dry_run,
    )


def make_engine(gateway: ScriptedAgentGateway) -> IterationCycleEngine:
    return IterationCycleEngine(gateway=gateway, templates=TemplateResolver())


def file_names(directory: Path) -> list[str]:
    return sorted(path.name for path in directory.iterdir())


def test_single_approval_locks_first_draft(tmp_path: Path) -> None:
    gateway = ScriptedAgentGateway(decisions=[APPROVED], texts=["plan one"])
    ctx = make_context(tmp_path)

    result = make_engine(gateway).run(ctx)

    assert result.tiebreaker_used is False
    assert result.iterations == 1
    assert result.artifact == "plan one"
    assert file_names(ctx.artifact_dir) == ["feedback-v1.md", "plan-locked.md", "plan-v1.md"]
    assert ctx.locked_path.read_text(encoding="utf-8") == "plan one"
    assert json.loads(ctx.feedback_path(1).read_text(encoding="utf-8"))["verdict"] == "approved"


def test_revision_then_approval_locks_second_draft(tmp_path: Path) -> None:
    gateway = ScriptedAgentGateway(decisions=[REVISE, APPROVED], texts=["plan one", "plan two"])
    ctx = make_context(tmp_path)

    result = make_engine(gateway).run(ctx)

    assert result.iterations == 2
    assert result.tiebreaker_used is False
    assert ctx.draft_path(1).is_file()
    assert ctx.draft_path(2).read_text(encoding="utf-8") == "plan two"
    assert ctx.locked_path.read_text(encoding="utf-8") == "plan two"
    refine_prompt = gateway.calls_of("text")[1].prompt
    assert "missing error handling" in refine_prompt
    assert str(ctx.draft_path(1)) in refine_prompt


def test_exhausted_iterations_invoke_tiebreaker(tmp_path: Path) -> None:
    gateway = ScriptedAgentGateway(
        decisions=[REVISE, REVISE, REVISE],
        texts=["plan one", "plan two", "plan three", "arbitrated plan"],
    )
    ctx = make_context(tmp_path, max_iterations=3)

    result = make_engine(gateway).run(ctx)

    assert result.tiebreaker_used is True
    assert result.iterations == 3
    assert result.artifact == "arbitrated plan"
    assert file_names(ctx.artifact_dir) == [
        "feedback-v1.md",
        "feedback-v2.md",
        "feedback-v3.md",
        "plan-locked.md",
        "plan-v1.md",
        "plan-v2.md",
        "plan-v3.md",
        "tiebreak.md",
    ]
    assert ctx.locked_path.read_text(encoding="utf-8") == "arbitrated plan"
    tiebreak_prompt = gateway.calls_of("text")[-1].prompt
    assert "plan one" in tiebreak_prompt
    assert str(ctx.feedback_path(3)) in tiebreak_prompt


def test_existing_locked_artifact_is_a_no_op(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    ctx.artifact_dir.mkdir(parents=True)
    ctx.locked_path.write_text("already locked", encoding="utf-8")
    gateway = ScriptedAgentGateway()

    result = make_engine(gateway).run(ctx)

    assert result.tiebreaker_used is False
    assert result.iterations == 0
    assert result.artifact == "already locked"
    assert file_names(ctx.artifact_dir) == ["plan-locked.md"]
    assert gateway.calls == []


def test_existing_draft_and_approval_are_reused(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    ctx.artifact_dir.mkdir(parents=True)
    ctx.draft_path(1).write_text("plan from before the crash", encoding="utf-8")
    ctx.feedback_path(1).write_text(json.dumps(APPROVED), encoding="utf-8")
    gateway = ScriptedAgentGateway()

    result = make_engine(gateway).run(ctx)

    assert gateway.calls == []
    assert result.iterations == 1
    assert ctx.locked_path.read_text(encoding="utf-8") == "plan from before the crash"


def test_existing_draft_is_never_overwritten(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    ctx.artifact_dir.mkdir(parents=True)
    ctx.draft_path(1).write_text("original draft", encoding="utf-8")
    gateway = ScriptedAgentGateway(decisions=[APPROVED], texts=["replacement draft"])

    make_engine(gateway).run(ctx)

    assert gateway.calls_of("text") == []
    assert len(gateway.calls_of("structured")) == 1
    assert ctx.draft_path(1).read_text(encoding="utf-8") == "original draft"
    assert "original draft" in gateway.calls_of("structured")[0].prompt


def test_undecodable_decision_writes_no_feedback_and_resumes(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    broken = ScriptedAgentGateway(decisions=["the plan is fine I guess"], texts=["plan one"])

    with pytest.raises(SchemaValidationError):
        make_engine(broken).run(ctx)

    assert ctx.draft_path(1).is_file()
    assert not ctx.feedback_path(1).exists()
    assert not ctx.locked_path.exists()

    retry = ScriptedAgentGateway(decisions=[APPROVED])
    result = make_engine(retry).run(ctx)

    assert retry.calls_of("text") == []
    assert result.iterations == 1
    assert ctx.locked_path.read_text(encoding="utf-8") == "plan one"


def test_invalid_verdict_is_rejected(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    gateway = ScriptedAgentGateway(decisions=[{"verdict": "maybe", "feedback": "unsure"}])

    with pytest.raises(SchemaValidationError):
        make_engine(gateway).run(ctx)

    assert not ctx.feedback_path(1).exists()


def test_agent_failure_writes_nothing(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    gateway = ScriptedAgentGateway(texts=[AgentTimeoutError("opus", 1200)])

    with pytest.raises(AgentTimeoutError):
        make_engine(gateway).run(ctx)

    assert not ctx.draft_path(1).exists()
    assert not ctx.locked_path.exists()


def test_interrupted_refinement_resumes_at_same_iteration(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    first = ScriptedAgentGateway(
        decisions=[REVISE],
        texts=["plan one", AgentTimeoutError("opus", 1200)],
    )
    with pytest.raises(AgentTimeoutError):
        make_engine(first).run(ctx)
    assert ctx.feedback_path(1).is_file()
    assert not ctx.draft_path(2).exists()

    second = ScriptedAgentGateway(decisions=[APPROVED], texts=["plan two"])
    result = make_engine(second).run(ctx)

    assert len(second.calls_of("text")) == 1
    assert result.iterations == 2
    assert ctx.locked_path.read_text(encoding="utf-8") == "plan two"


def test_existing_tiebreak_is_locked_without_calls(tmp_path: Path) -> None:
    ctx = make_context(tmp_path, max_iterations=2)
    ctx.artifact_dir.mkdir(parents=True)
    for i in (1, 2):
        ctx.draft_path(i).write_text(f"plan {i}", encoding="utf-8")
        ctx.feedback_path(i).write_text(json.dumps(REVISE), encoding="utf-8")
    ctx.tiebreak_path.write_text("settled plan", encoding="utf-8")
    gateway = ScriptedAgentGateway()

    result = make_engine(gateway).run(ctx)

    assert gateway.calls == []
    assert result.tiebreaker_used is True
    assert result.iterations == 2
    assert ctx.locked_path.read_text(encoding="utf-8") == "settled plan"


def test_progress_counters_never_decrease_on_resume(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    progress = IterationState()
    engine = make_engine(ScriptedAgentGateway(decisions=[REVISE, APPROVED]))

    engine.run(ctx, progress)
    assert (progress.iteration, progress.total_attempts, progress.tiebreaker_used) == (2, 2, False)

    engine.run(ctx, progress)
    assert (progress.iteration, progress.total_attempts) == (2, 2)


def test_review_issues_reach_the_fix_prompt(tmp_path: Path) -> None:
    review = {
        "verdict": "needs_revision",
        "feedback": "tests fail",
        "issues": [{"file": "src/app.py", "description": "unhandled None"}],
    }
    gateway = ScriptedAgentGateway(decisions=[review, APPROVED])
    ctx = make_context(tmp_path, level="implementation")

    result = make_engine(gateway).run(ctx)

    assert result.iterations == 2
    assert ctx.draft_path(1).name == "impl-notes-v1.md"
    assert ctx.feedback_path(1).name == "review-v1.md"
    assert ctx.locked_path.name == "impl-final.md"
    assert "src/app.py: unhandled None" in gateway.calls_of("text")[1].prompt
    assert gateway.calls_of("text")[0].agent.value == "codex"
    saved = json.loads(ctx.feedback_path(1).read_text(encoding="utf-8"))
    assert saved["issues"][0]["file"] == "src/app.py"


def test_dry_run_uses_the_dry_run_gateway(tmp_path: Path) -> None:
    live = ScriptedAgentGateway(texts=[RuntimeError("live gateway must not be called")])
    engine = make_engine(live)
    ctx = make_context(tmp_path, dry_run=True)

    result = engine.run(ctx)

    assert live.calls == []
    assert result.iterations == 1
    assert "dry-run" in result.artifact


def test_run_iteration_cycle_wrapper(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    result = run_iteration_cycle(ctx, gateway=ScriptedAgentGateway(), templates=TemplateResolver())
    assert result.iterations == 1
    assert ctx.locked_path.is_file()
