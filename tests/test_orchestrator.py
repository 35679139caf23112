from pathlib import Path

import pytest

from deliberation_pipeline.agents import ScriptedAgentGateway
from deliberation_pipeline.exceptions import AgentTimeoutError, EntityNotFoundError, PipelineSetupError
from deliberation_pipeline.models import (
    IterationState,
    MilestoneState,
    PhaseState,
    SpecStatus,
    TaskState,
    TaskStatus,
    new_pipeline_state,
)
from deliberation_pipeline.orchestrator import PipelineOrchestrator
from deliberation_pipeline.settings import RuntimeSettings
from deliberation_pipeline.state_store import load_state


def make_orchestrator(root: Path, gateway: ScriptedAgentGateway, *, dry_run: bool = False) -> PipelineOrchestrator:
    settings = RuntimeSettings(project_name="taskboard", dry_run=dry_run)
    return PipelineOrchestrator(settings, gateway=gateway, root=root)


def items(*ids: str) -> dict:
    return {"items": [{"id": item_id, "title": f"Unit {item_id}", "spec": f"# Seed {item_id}\n"} for item_id in ids]}


def write_tree(root: Path, tree: dict[str, dict[str, list[str]]]) -> Path:
    milestones = root / ".pipeline" / "milestones"
    for milestone_id, phases in tree.items():
        m_dir = milestones / milestone_id
        m_dir.mkdir(parents=True)
        (m_dir / "spec.md").write_text(f"# Milestone {milestone_id}\n", encoding="utf-8")
        for phase_id, tasks in phases.items():
            p_dir = m_dir / "phases" / phase_id
            p_dir.mkdir(parents=True)
            (p_dir / "spec.md").write_text(f"# Phase {phase_id}\n", encoding="utf-8")
            for task_id in tasks:
                t_dir = p_dir / "tasks" / task_id
                t_dir.mkdir(parents=True)
                (t_dir / "spec.md").write_text(f"# Task {task_id}\n", encoding="utf-8")
    return milestones


def test_bootstrap_then_run_completes_every_level(tmp_path: Path) -> None:
    (tmp_path / "MASTER_PLAN.md").write_text("# Taskboard\n", encoding="utf-8")
    gateway = ScriptedAgentGateway(payloads=[items("m01"), items("p01"), items("t01", "t02")])
    orchestrator = make_orchestrator(tmp_path, gateway)

    bootstrapped = orchestrator.bootstrap()
    assert list(bootstrapped.milestones) == ["m01"]
    assert bootstrapped.project == "taskboard"
    assert (tmp_path / ".pipeline" / "tmp").is_dir()

    final = orchestrator.run()

    milestone = final.milestones["m01"]
    assert milestone.status is SpecStatus.COMPLETED
    assert milestone.phases["p01"].status is SpecStatus.COMPLETED
    assert {task.status for task in milestone.phases["p01"].tasks.values()} == {TaskStatus.COMPLETED}
    assert milestone.planning.total_attempts == 1
    assert final.current_milestone is None
    assert load_state(orchestrator.store.path) == final

    m_dir = tmp_path / ".pipeline" / "milestones" / "m01"
    t_dir = m_dir / "phases" / "p01" / "tasks" / "t02"
    for artifact in (
        m_dir / "spec-locked.md",
        m_dir / "phases" / "p01" / "spec-locked.md",
        t_dir / "plan-v1.md",
        t_dir / "plan-locked.md",
        t_dir / "impl-notes-v1.md",
        t_dir / "review-v1.md",
        t_dir / "impl-final.md",
    ):
        assert artifact.is_file(), artifact

    assert len(gateway.calls_of("json")) == 3
    assert orchestrator.store.last_checkpoint()["step"] == "milestone m01 completed"


def test_task_planning_sees_completed_siblings(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01", "t02"]}})
    gateway = ScriptedAgentGateway(texts=["plan for t01", "notes t01", "plan for t02", "notes t02"])
    orchestrator = make_orchestrator(tmp_path, gateway)
    orchestrator.init_from_tree(pre_planned=True)

    orchestrator.run()

    draft_prompts = [call.prompt for call in gateway.calls_of("text") if call.prompt.startswith("# Draft the task plan")]
    assert len(draft_prompts) == 2
    assert "Completed Sibling Tasks" not in draft_prompts[0]
    assert "### Task t01 (completed)" in draft_prompts[1]
    assert "plan for t01" in draft_prompts[1]


def test_init_from_tree_counts_units(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01", "t02"], "p02": []}, "m02": {}})
    (tmp_path / ".pipeline" / "milestones" / "notes").mkdir()
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())

    state = orchestrator.init_from_tree()

    assert sorted(state.milestones) == ["m01", "m02"]
    assert sorted(state.milestones["m01"].phases) == ["p01", "p02"]
    assert sorted(state.milestones["m01"].phases["p01"].tasks) == ["t01", "t02"]
    assert state.milestones["m01"].status is SpecStatus.PENDING
    assert not (tmp_path / ".pipeline" / "milestones" / "m01" / "spec-locked.md").exists()


def test_init_pre_planned_locks_seed_specs(tmp_path: Path) -> None:
    milestones = write_tree(tmp_path, {"m01": {"p01": ["t01"]}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())

    state = orchestrator.init_from_tree(pre_planned=True)

    assert state.milestones["m01"].status is SpecStatus.SPEC_LOCKED
    assert state.milestones["m01"].phases["p01"].status is SpecStatus.SPEC_LOCKED
    locked = milestones / "m01" / "phases" / "p01" / "spec-locked.md"
    assert locked.read_text(encoding="utf-8") == "# Phase p01\n"


def test_setup_commands_refuse_bad_preconditions(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway(payloads=[items()]))

    with pytest.raises(PipelineSetupError, match="Milestones directory not found"):
        orchestrator.init_from_tree()
    with pytest.raises(PipelineSetupError, match="Master plan not found"):
        orchestrator.bootstrap()

    (tmp_path / "MASTER_PLAN.md").write_text("# Plan\n", encoding="utf-8")
    with pytest.raises(PipelineSetupError, match="No milestones"):
        orchestrator.bootstrap()

    write_tree(tmp_path, {"m01": {}})
    orchestrator.init_from_tree()
    with pytest.raises(PipelineSetupError, match="already exists"):
        orchestrator.init_from_tree()
    assert orchestrator.init_from_tree(force=True).milestones["m01"].status is SpecStatus.PENDING


def test_run_without_state_fails(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        make_orchestrator(tmp_path, ScriptedAgentGateway()).run()


def test_agent_failure_preserves_progress_and_resumes(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01"]}})
    first = ScriptedAgentGateway(texts=["the plan", AgentTimeoutError("codex", 1200)])
    orchestrator = make_orchestrator(tmp_path, first)
    orchestrator.init_from_tree(pre_planned=True)

    with pytest.raises(AgentTimeoutError):
        orchestrator.run()

    saved = load_state(orchestrator.store.path)
    task = saved.milestones["m01"].phases["p01"].tasks["t01"]
    assert task.status is TaskStatus.IMPLEMENTING
    assert task.planning.total_attempts == 1
    assert saved.current_milestone == "m01"
    assert saved.milestones["m01"].phases["p01"].current_task == "t01"

    second = ScriptedAgentGateway(texts=["implementation notes"])
    final = make_orchestrator(tmp_path, second).run()

    assert final.milestones["m01"].status is SpecStatus.COMPLETED
    assert len(second.calls_of("text")) == 1
    assert second.calls_of("text")[0].prompt.startswith("# Implement the task")


def test_dry_run_uses_mock_agents_only(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01"]}})
    live = ScriptedAgentGateway(texts=[RuntimeError("live agent called")])
    orchestrator = make_orchestrator(tmp_path, live, dry_run=True)
    orchestrator.init_from_tree()

    final = orchestrator.run()

    assert live.calls == []
    assert final.milestones["m01"].status is SpecStatus.COMPLETED
    t_dir = tmp_path / ".pipeline" / "milestones" / "m01" / "phases" / "p01" / "tasks" / "t01"
    assert "dry-run" in (t_dir / "impl-final.md").read_text(encoding="utf-8")


def test_milestone_without_phases_completes_with_warning(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    write_tree(tmp_path, {"m01": {}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway(), dry_run=True)
    orchestrator.init_from_tree()

    with caplog.at_level("WARNING"):
        final = orchestrator.run()

    assert final.milestones["m01"].status is SpecStatus.COMPLETED
    assert "No phases to run" in caplog.text


def test_reset_task_to_implementing_reruns_only_implementation(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01"]}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())
    orchestrator.init_from_tree(pre_planned=True)
    orchestrator.run()
    t_dir = tmp_path / ".pipeline" / "milestones" / "m01" / "phases" / "p01" / "tasks" / "t01"

    state = orchestrator.reset("m01/p01/t01", to="implementing")

    task = state.milestones["m01"].phases["p01"].tasks["t01"]
    assert task.status is TaskStatus.PLAN_LOCKED
    assert task.implementation == IterationState()
    assert task.planning.total_attempts == 1
    assert state.milestones["m01"].status is SpecStatus.IN_PROGRESS
    assert state.milestones["m01"].phases["p01"].status is SpecStatus.IN_PROGRESS
    assert (t_dir / "plan-locked.md").is_file()
    assert not (t_dir / "impl-final.md").exists()
    assert not (t_dir / "review-v1.md").exists()

    rerun = ScriptedAgentGateway()
    final = make_orchestrator(tmp_path, rerun).run()

    assert final.milestones["m01"].status is SpecStatus.COMPLETED
    assert [call.kind for call in rerun.calls] == ["text", "structured"]
    assert (t_dir / "impl-final.md").is_file()


def test_reset_milestone_clears_artifacts_but_keeps_seeds(tmp_path: Path) -> None:
    milestones = write_tree(tmp_path, {"m01": {"p01": ["t01"]}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())
    orchestrator.init_from_tree()
    orchestrator.run()

    state = orchestrator.reset("m01")

    milestone = state.milestones["m01"]
    assert milestone.status is SpecStatus.PENDING
    assert milestone.phases["p01"].status is SpecStatus.PENDING
    assert milestone.phases["p01"].tasks["t01"].status is TaskStatus.PENDING
    assert milestone.planning == IterationState()
    for directory in (milestones / "m01", milestones / "m01" / "phases" / "p01"):
        assert sorted(path.name for path in directory.iterdir() if path.is_file()) == ["spec.md"]
    t_dir = milestones / "m01" / "phases" / "p01" / "tasks" / "t01"
    assert sorted(path.name for path in t_dir.iterdir()) == ["spec.md"]
    assert orchestrator.store.last_checkpoint()["step"] == "reset m01"


def test_reset_rejects_bad_arguments(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01"]}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())
    orchestrator.init_from_tree()

    with pytest.raises(ValueError):
        orchestrator.reset("m01/p01/t01/extra")
    with pytest.raises(ValueError):
        orchestrator.reset("m01", to="implementing")
    with pytest.raises(EntityNotFoundError):
        orchestrator.reset("m09")
    with pytest.raises(EntityNotFoundError):
        orchestrator.reset("m01/p01/t07")


def test_status_report_shows_progress_and_markers(tmp_path: Path) -> None:
    state = new_pipeline_state("taskboard")
    state.milestones["m01"] = MilestoneState(
        status=SpecStatus.IN_PROGRESS,
        current_phase="p01",
        phases={
            "p01": PhaseState(
                status=SpecStatus.IN_PROGRESS,
                planning=IterationState(iteration=3, total_attempts=3, tiebreaker_used=True),
                current_task="t02",
                tasks={
                    "t01": TaskState(
                        status=TaskStatus.COMPLETED,
                        planning=IterationState(iteration=1, total_attempts=1),
                        implementation=IterationState(iteration=3, total_attempts=3, tiebreaker_used=True),
                    ),
                    "t02": TaskState(status=TaskStatus.PLANNING),
                },
            ),
        },
    )
    state.current_milestone = "m01"
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())

    report = orchestrator.status_report(state)

    assert "Pipeline Status: taskboard" in report
    assert "Milestone m01 [in_progress] <-- current" in report
    assert "  Phase p01 [in_progress, tiebreaker: planning] <-- current" in report
    assert "    Task t01 [completed] (plan: 1 attempt(s), impl: 3 attempt(s), tiebreaker: impl)" in report
    assert "    Task t02 [planning] <-- current" in report
    assert "Progress: 0/1 milestones, 0/1 phases, 1/2 tasks" in report


def test_reset_to_implementing_requires_a_locked_plan(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p01": ["t01", "t02"]}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())
    orchestrator.init_from_tree()

    with pytest.raises(ValueError, match="no locked plan"):
        orchestrator.reset("m01/p01/t01", to="implementing")
    assert load_state(orchestrator.store.path).milestones["m01"].phases["p01"].tasks["t01"].status is TaskStatus.PENDING

    orchestrator.run()
    t_dir = tmp_path / ".pipeline" / "milestones" / "m01" / "phases" / "p01" / "tasks" / "t02"
    (t_dir / "plan-locked.md").unlink()

    with pytest.raises(ValueError, match="no locked plan"):
        orchestrator.reset("m01/p01/t02", to="implementing")
    assert load_state(orchestrator.store.path).milestones["m01"].status is SpecStatus.COMPLETED


def test_init_from_tree_rejects_mixed_width_ids(tmp_path: Path) -> None:
    write_tree(tmp_path, {"m01": {"p09": [], "p100": []}})
    orchestrator = make_orchestrator(tmp_path, ScriptedAgentGateway())

    with pytest.raises(PipelineSetupError, match="mix digit widths"):
        orchestrator.init_from_tree()
    assert not orchestrator.store.exists()


def test_empty_scaffold_is_not_requested_twice(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    (tmp_path / "MASTER_PLAN.md").write_text("# Taskboard\n", encoding="utf-8")
    gateway = ScriptedAgentGateway(payloads=[items("m01", "m02"), items(), items("p01"), items()])
    orchestrator = make_orchestrator(tmp_path, gateway)
    orchestrator.bootstrap()

    with caplog.at_level("WARNING"):
        final = orchestrator.run()

    assert len(gateway.calls_of("json")) == 4
    assert final.milestones["m01"].phases == {}
    assert final.milestones["m01"].status is SpecStatus.COMPLETED
    assert final.milestones["m02"].phases["p01"].status is SpecStatus.COMPLETED
    assert final.milestones["m02"].status is SpecStatus.COMPLETED
    assert "No phases to run" in caplog.text
    assert "No tasks to run" in caplog.text
