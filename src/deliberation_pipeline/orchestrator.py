from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .agents import AgentGateway, build_gateway
from .config import PipelineConfig
from .cycle import ArtifactNames, CycleContext, IterationCycleEngine
from .exceptions import PipelineSetupError
from .models import (
    ENTITY_ID_PATTERN,
    IterationState,
    MilestoneStatus,
    PhaseState,
    PhaseStatus,
    PipelineState,
    ResumeAction,
    ResumePoint,
    TaskStatus,
    check_id_widths,
    default_iteration_state,
    default_milestone_state,
    default_phase_state,
    default_task_state,
    new_pipeline_state,
)
from .run_log import RunLogger
from .scaffold import LOCKED_SPEC_NAME, SEED_SPEC_NAME, Scaffolder, milestone_dir, phase_dir, task_dir
from .settings import RuntimeSettings
from .state_machine import (
    find_resume_point,
    get_milestone,
    get_phase,
    get_task,
    sorted_keys,
    transition_milestone,
    transition_phase,
    transition_task,
)
from .state_store import PipelineStateStore
from .templates import TemplateRenderer, TemplateResolver

logger = logging.getLogger(__name__)

SPEC_ARTIFACTS = ArtifactNames(draft_prefix="spec-v", feedback_prefix="feedback-v", locked_name=LOCKED_SPEC_NAME)
PLAN_ARTIFACTS = ArtifactNames(draft_prefix="plan-v", feedback_prefix="feedback-v", locked_name="plan-locked.md")
IMPL_ARTIFACTS = ArtifactNames(
    draft_prefix="impl-notes-v",
    feedback_prefix="review-v",
    locked_name="impl-final.md",
    tiebreak_name="tiebreak-impl.md",
)

_SPEC_RESET_PREFIXES = ("spec-v", "feedback-v", LOCKED_SPEC_NAME, "tiebreak")
_IMPL_RESET_PREFIXES = ("impl-notes-v", "review-v", "impl-final.md", "tiebreak-impl")
_TASK_RESET_PREFIXES = ("plan-v", "feedback-v", "plan-locked.md", "tiebreak") + _IMPL_RESET_PREFIXES
TASK_RESET_TARGETS = ("pending", "implementing")


class OrchestratorGraphState(TypedDict, total=False):
    resume_point: ResumePoint | None
    steps: int


def _clean_artifacts(directory: Path, prefixes: tuple[str, ...]) -> list[str]:
    """Delete files in *directory* whose names start with any of *prefixes*."""
    if not directory.is_dir():
        return []
    removed: list[str] = []
    for entry in sorted(directory.iterdir()):
        if entry.is_file() and entry.name.startswith(prefixes):
            entry.unlink()
            removed.append(entry.name)
    return removed


def _reset_phase_state(phase: PhaseState) -> None:
    phase.status = PhaseStatus.PENDING
    phase.planning = default_iteration_state()
    phase.current_task = None
    for task in phase.tasks.values():
        task.status = TaskStatus.PENDING
        task.planning = default_iteration_state()
        task.implementation = default_iteration_state()


def _attempt_summary(label: str, progress: IterationState) -> str | None:
    if progress.total_attempts <= 0:
        return None
    return f"{label}: {progress.total_attempts} attempt(s)"


class PipelineOrchestrator:
    """Walks the milestone -> phase -> task hierarchy one resume point at a time.

    The walk is a LangGraph dispatch cycle: ``resume`` asks the state machine
    what to do next and routes to the handler node for that action; every
    handler transitions state, checkpoints, and loops back to ``resume`` until
    no work is left.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        pipeline_config: PipelineConfig | None = None,
        *,
        gateway: AgentGateway | None = None,
        templates: TemplateRenderer | None = None,
        run_log: RunLogger | None = None,
        root: Path | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.config = (
            pipeline_config
            if pipeline_config is not None
            else PipelineConfig.load(self.settings.level_config_path())
        )
        self.root = root
        self.pipeline_dir = self.settings.pipeline_path(root)
        self.master_plan_path = self.settings.master_plan_file(root)
        self.store = PipelineStateStore(self.settings.state_file_path(root))
        self.gateway = gateway if gateway is not None else build_gateway(self.settings, cwd=root)
        self.templates = templates if templates is not None else TemplateResolver()
        self.run_log = run_log if run_log is not None else RunLogger()
        self.engine = IterationCycleEngine(
            gateway=self.gateway,
            templates=self.templates,
            run_log=self.run_log,
            recursion_limit=self.settings.recursion_limit,
        )
        self.scaffolder = Scaffolder(
            config=self.config.scaffold,
            gateway=self.gateway,
            templates=self.templates,
            pipeline_dir=self.pipeline_dir,
            master_plan_path=self.master_plan_path,
            run_log=self.run_log,
        )
        self._handlers: dict[ResumeAction, Callable[[ResumePoint], None]] = {
            ResumeAction.PLAN_MILESTONE: self._plan_milestone,
            ResumeAction.START_MILESTONE: self._start_milestone,
            ResumeAction.SCAFFOLD_PHASES: self._scaffold_phases,
            ResumeAction.COMPLETE_MILESTONE: self._complete_milestone,
            ResumeAction.PLAN_PHASE: self._plan_phase,
            ResumeAction.START_PHASE: self._start_phase,
            ResumeAction.SCAFFOLD_TASKS: self._scaffold_tasks,
            ResumeAction.COMPLETE_PHASE: self._complete_phase,
            ResumeAction.PLAN_TASK: self._plan_task,
            ResumeAction.IMPLEMENT_TASK: self._implement_task,
        }
        self._state: PipelineState | None = None
        self.graph = self._build_graph().compile()

    @property
    def dry_run(self) -> bool:
        return self.settings.dry_run

    @property
    def state(self) -> PipelineState:
        if self._state is None:
            raise RuntimeError("pipeline state is not loaded")
        return self._state

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(OrchestratorGraphState)
        graph.add_node("resume", self._resume_node)
        for action, handler in self._handlers.items():
            graph.add_node(action.value, self._handler_node(handler))
            graph.add_edge(action.value, "resume")

        graph.add_edge(START, "resume")
        routes: dict[str, str] = {action.value: action.value for action in self._handlers}
        routes["end"] = END
        graph.add_conditional_edges("resume", self._resume_route, routes)
        return graph

    def _resume_node(self, _state: OrchestratorGraphState) -> dict[str, Any]:
        state = self.state
        point = find_resume_point(state)
        if point is None:
            return {"resume_point": None}

        state.current_milestone = point.milestone_id
        if point.phase_id is not None:
            get_milestone(state, point.milestone_id).current_phase = point.phase_id
        if point.task_id is not None:
            get_phase(state, point.milestone_id, point.phase_id).current_task = point.task_id
        logger.debug("resume point %s -> %s", point.path, point.action.value)
        return {"resume_point": point}

    def _resume_route(self, state: OrchestratorGraphState) -> str:
        point = state.get("resume_point")
        if point is None:
            return "end"
        return point.action.value

    def _handler_node(self, handler: Callable[[ResumePoint], None]) -> Callable[[OrchestratorGraphState], dict[str, Any]]:
        def node(state: OrchestratorGraphState) -> dict[str, Any]:
            point = state["resume_point"]
            if point is None:
                raise RuntimeError("handler reached without a resume point")
            handler(point)
            return {"steps": state.get("steps", 0) + 1}

        return node

    def _checkpoint(self, step: str) -> None:
        self.store.checkpoint(self.state, step)

    # ------------------------------------------------------------------
    # Cycle contexts
    # ------------------------------------------------------------------

    def _cycle(self, ctx: CycleContext, progress: IterationState) -> None:
        result = self.engine.run(ctx, progress)
        if result.tiebreaker_used:
            self.run_log.log(ctx.label, ctx.level, "Locked via tiebreaker")
        elif result.iterations == 0:
            self.run_log.log(ctx.label, ctx.level, "Already locked")
        else:
            self.run_log.log(ctx.label, ctx.level, f"Locked after {result.iterations} iteration(s)")

    def _context(
        self,
        *,
        label: str,
        level: str,
        artifact_dir: Path,
        names: ArtifactNames,
        template_vars: dict[str, str],
    ) -> CycleContext:
        return CycleContext(
            label=label,
            level=level,
            level_config=self.config.for_level(level),
            artifact_dir=artifact_dir,
            artifact_names=names,
            template_vars={"UNIT_ID": label, **template_vars},
            dry_run=self.dry_run,
        )

    def completed_siblings_section(self, milestone_id: str, phase_id: str, task_id: str) -> str:
        """Markdown section with the locked plans of completed tasks before *task_id*."""
        phase = get_phase(self.state, milestone_id, phase_id)
        sections: list[str] = []
        for sibling_id in sorted_keys(phase.tasks):
            if sibling_id >= task_id:
                break
            if phase.tasks[sibling_id].status is not TaskStatus.COMPLETED:
                continue
            plan_path = task_dir(self.pipeline_dir, milestone_id, phase_id, sibling_id) / PLAN_ARTIFACTS.locked_name
            if plan_path.is_file():
                sections.append(f"### Task {sibling_id} (completed)\n\n{plan_path.read_text(encoding='utf-8')}\n")
        if not sections:
            return ""
        return "## Completed Sibling Tasks\n\n" + "\n".join(sections)

    # ------------------------------------------------------------------
    # Milestone handlers
    # ------------------------------------------------------------------

    def _plan_milestone(self, point: ResumePoint) -> None:
        milestone_id = point.milestone_id
        milestone = get_milestone(self.state, milestone_id)
        if milestone.status is MilestoneStatus.PENDING:
            transition_milestone(self.state, milestone_id, MilestoneStatus.PLANNING)
            self._checkpoint(f"milestone {milestone_id} -> planning")

        directory = milestone_dir(self.pipeline_dir, milestone_id)
        ctx = self._context(
            label=milestone_id,
            level="milestone",
            artifact_dir=directory,
            names=SPEC_ARTIFACTS,
            template_vars={
                "MASTER_PLAN_PATH": str(self.master_plan_path),
                "SPEC_PATH": str(directory / SEED_SPEC_NAME),
            },
        )
        self._cycle(ctx, milestone.planning)
        transition_milestone(self.state, milestone_id, MilestoneStatus.SPEC_LOCKED)
        self._checkpoint(f"milestone {milestone_id} spec locked")

    def _start_milestone(self, point: ResumePoint) -> None:
        milestone_id = point.milestone_id
        self.scaffolder.scaffold_phases(self.state, milestone_id, dry_run=self.dry_run)
        self._checkpoint(f"milestone {milestone_id} phases scaffolded")
        transition_milestone(self.state, milestone_id, MilestoneStatus.IN_PROGRESS)
        self._checkpoint(f"milestone {milestone_id} -> in_progress")
        if not get_milestone(self.state, milestone_id).phases:
            self._complete_empty_milestone(point)

    def _scaffold_phases(self, point: ResumePoint) -> None:
        milestone_id = point.milestone_id
        added = self.scaffolder.scaffold_phases(self.state, milestone_id, dry_run=self.dry_run)
        if added:
            self._checkpoint(f"milestone {milestone_id} phases scaffolded")
            return
        self._complete_empty_milestone(point)

    def _complete_empty_milestone(self, point: ResumePoint) -> None:
        self.run_log.warning(point.milestone_id, "milestone", "No phases to run, completing milestone")
        self._complete_milestone(point)

    def _complete_milestone(self, point: ResumePoint) -> None:
        milestone_id = point.milestone_id
        milestone = get_milestone(self.state, milestone_id)
        transition_milestone(self.state, milestone_id, MilestoneStatus.COMPLETED)
        milestone.current_phase = None
        self.state.current_milestone = None
        self.run_log.log(milestone_id, "milestone", "Milestone completed")
        self._checkpoint(f"milestone {milestone_id} completed")

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _plan_phase(self, point: ResumePoint) -> None:
        milestone_id, phase_id = point.milestone_id, point.phase_id
        label = point.path
        phase = get_phase(self.state, milestone_id, phase_id)
        if phase.status is PhaseStatus.PENDING:
            transition_phase(self.state, milestone_id, phase_id, PhaseStatus.PLANNING)
            self._checkpoint(f"phase {label} -> planning")

        directory = phase_dir(self.pipeline_dir, milestone_id, phase_id)
        ctx = self._context(
            label=label,
            level="phase",
            artifact_dir=directory,
            names=SPEC_ARTIFACTS,
            template_vars={
                "MASTER_PLAN_PATH": str(self.master_plan_path),
                "MILESTONE_SPEC_PATH": str(milestone_dir(self.pipeline_dir, milestone_id) / LOCKED_SPEC_NAME),
                "SPEC_PATH": str(directory / SEED_SPEC_NAME),
            },
        )
        self._cycle(ctx, phase.planning)
        transition_phase(self.state, milestone_id, phase_id, PhaseStatus.SPEC_LOCKED)
        self._checkpoint(f"phase {label} spec locked")

    def _start_phase(self, point: ResumePoint) -> None:
        milestone_id, phase_id = point.milestone_id, point.phase_id
        self.scaffolder.scaffold_tasks(self.state, milestone_id, phase_id, dry_run=self.dry_run)
        self._checkpoint(f"phase {point.path} tasks scaffolded")
        transition_phase(self.state, milestone_id, phase_id, PhaseStatus.IN_PROGRESS)
        self._checkpoint(f"phase {point.path} -> in_progress")
        if not get_phase(self.state, milestone_id, phase_id).tasks:
            self._complete_empty_phase(point)

    def _scaffold_tasks(self, point: ResumePoint) -> None:
        added = self.scaffolder.scaffold_tasks(self.state, point.milestone_id, point.phase_id, dry_run=self.dry_run)
        if added:
            self._checkpoint(f"phase {point.path} tasks scaffolded")
            return
        self._complete_empty_phase(point)

    def _complete_empty_phase(self, point: ResumePoint) -> None:
        self.run_log.warning(point.path, "phase", "No tasks to run, completing phase")
        self._complete_phase(point)

    def _complete_phase(self, point: ResumePoint) -> None:
        milestone_id, phase_id = point.milestone_id, point.phase_id
        phase = get_phase(self.state, milestone_id, phase_id)
        transition_phase(self.state, milestone_id, phase_id, PhaseStatus.COMPLETED)
        phase.current_task = None
        self.run_log.log(point.path, "phase", "Phase completed")
        self._checkpoint(f"phase {point.path} completed")

    # ------------------------------------------------------------------
    # Task handlers
    # ------------------------------------------------------------------

    def _plan_task(self, point: ResumePoint) -> None:
        milestone_id, phase_id, task_id = point.milestone_id, point.phase_id, point.task_id
        label = point.path
        task = get_task(self.state, milestone_id, phase_id, task_id)
        if task.status is TaskStatus.PENDING:
            transition_task(self.state, milestone_id, phase_id, task_id, TaskStatus.PLANNING)
            self._checkpoint(f"task {label} -> planning")

        directory = task_dir(self.pipeline_dir, milestone_id, phase_id, task_id)
        ctx = self._context(
            label=label,
            level="task",
            artifact_dir=directory,
            names=PLAN_ARTIFACTS,
            template_vars={
                "MASTER_PLAN_PATH": str(self.master_plan_path),
                "MILESTONE_SPEC_PATH": str(milestone_dir(self.pipeline_dir, milestone_id) / LOCKED_SPEC_NAME),
                "PHASE_SPEC_PATH": str(phase_dir(self.pipeline_dir, milestone_id, phase_id) / LOCKED_SPEC_NAME),
                "SPEC_PATH": str(directory / SEED_SPEC_NAME),
                "COMPLETED_SIBLINGS_SECTION": self.completed_siblings_section(milestone_id, phase_id, task_id),
            },
        )
        self._cycle(ctx, task.planning)
        transition_task(self.state, milestone_id, phase_id, task_id, TaskStatus.PLAN_LOCKED)
        self._checkpoint(f"task {label} plan locked")

    def _implement_task(self, point: ResumePoint) -> None:
        milestone_id, phase_id, task_id = point.milestone_id, point.phase_id, point.task_id
        label = point.path
        task = get_task(self.state, milestone_id, phase_id, task_id)
        if task.status is TaskStatus.PLAN_LOCKED:
            transition_task(self.state, milestone_id, phase_id, task_id, TaskStatus.IMPLEMENTING)
            self._checkpoint(f"task {label} -> implementing")

        directory = task_dir(self.pipeline_dir, milestone_id, phase_id, task_id)
        ctx = self._context(
            label=label,
            level="implementation",
            artifact_dir=directory,
            names=IMPL_ARTIFACTS,
            template_vars={
                "PLAN_LOCKED_PATH": str(directory / PLAN_ARTIFACTS.locked_name),
                "SPEC_PATH": str(directory / SEED_SPEC_NAME),
                "PHASE_SPEC_PATH": str(phase_dir(self.pipeline_dir, milestone_id, phase_id) / LOCKED_SPEC_NAME),
            },
        )
        self._cycle(ctx, task.implementation)
        transition_task(self.state, milestone_id, phase_id, task_id, TaskStatus.COMPLETED)
        self._checkpoint(f"task {label} completed")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def run(self) -> PipelineState:
        """Load the persisted state and walk it until every milestone is completed.

        Returns:
            The final state, also saved to disk.

        Raises:
            FileNotFoundError: If no state file exists yet.
            StateFileError: If the state file is corrupt.
            AgentCallError: An agent failed; progress up to the failing step is saved.
            SchemaValidationError: A challenger produced undecodable output.
        """
        self._state = self.store.load()
        mode = " (dry run)" if self.dry_run else ""
        self.run_log.log("", "pipeline", f"Running pipeline for {self._state.project}{mode}")
        final = self.graph.invoke(
            {"resume_point": None, "steps": 0},
            config={"recursion_limit": self.settings.recursion_limit},
        )
        self.state.current_milestone = None
        self.store.save(self.state)
        self.run_log.log("", "pipeline", f"Pipeline completed after {final.get('steps', 0)} step(s)")
        return self.state

    def _refuse_overwrite(self, force: bool) -> None:
        if self.store.exists() and not force:
            raise PipelineSetupError(f"State file already exists: {self.store.path}. Use --force to overwrite.")

    def _prepare_pipeline_dir(self) -> None:
        (self.pipeline_dir / "tmp").mkdir(parents=True, exist_ok=True)

    def bootstrap(self, *, force: bool = False) -> PipelineState:
        """Extract milestones from the master plan and write a fresh state.

        Phases and tasks are scaffolded later, once their parent spec locks.
        """
        self._refuse_overwrite(force)
        if not self.master_plan_path.is_file():
            raise PipelineSetupError(
                f"Master plan not found: {self.master_plan_path}. Create it in the project root first."
            )

        items = self.scaffolder.scaffold_milestones(dry_run=self.dry_run)
        if not items:
            raise PipelineSetupError("No milestones extracted from master plan")

        state = new_pipeline_state(self.settings.project_name)
        for item in sorted(items, key=lambda entry: entry.id):
            if milestone_dir(self.pipeline_dir, item.id).is_dir():
                state.milestones[item.id] = default_milestone_state()

        self._prepare_pipeline_dir()
        self.store.save(state)
        self._state = state
        logger.info("Bootstrap complete: %d milestone(s), state at %s", len(state.milestones), self.store.path)
        return state

    def init_from_tree(self, *, force: bool = False, pre_planned: bool = False) -> PipelineState:
        """Build state from an existing ``milestones/*/phases/*/tasks/*/spec.md`` tree.

        Args:
            force: Overwrite an existing state file.
            pre_planned: Treat every milestone and phase ``spec.md`` as already
                locked: copy it to ``spec-locked.md`` and start at ``spec_locked``.
        """
        self._refuse_overwrite(force)
        milestones_root = self.pipeline_dir / "milestones"
        if not milestones_root.is_dir():
            raise PipelineSetupError(
                f"Milestones directory not found: {milestones_root}. "
                "Create your milestone/phase/task structure with spec.md files first."
            )

        state = new_pipeline_state(self.settings.project_name)
        for m_dir in self._unit_dirs(milestones_root):
            milestone = default_milestone_state()
            if pre_planned:
                self._lock_seed(m_dir)
                milestone.status = MilestoneStatus.SPEC_LOCKED
            for p_dir in self._unit_dirs(m_dir / "phases"):
                phase = default_phase_state()
                if pre_planned:
                    self._lock_seed(p_dir)
                    phase.status = PhaseStatus.SPEC_LOCKED
                for t_dir in self._unit_dirs(p_dir / "tasks"):
                    if (t_dir / SEED_SPEC_NAME).is_file():
                        phase.tasks[t_dir.name] = default_task_state()
                milestone.phases[p_dir.name] = phase
            state.milestones[m_dir.name] = milestone

        self._prepare_pipeline_dir()
        self.store.save(state)
        self._state = state
        phases = sum(len(m.phases) for m in state.milestones.values())
        tasks = sum(len(p.tasks) for m in state.milestones.values() for p in m.phases.values())
        logger.info(
            "Pipeline initialized: %d milestone(s), %d phase(s), %d task(s)%s",
            len(state.milestones),
            phases,
            tasks,
            " (pre-planned)" if pre_planned else "",
        )
        return state

    @staticmethod
    def _unit_dirs(parent: Path) -> list[Path]:
        if not parent.is_dir():
            return []
        units: list[Path] = []
        for entry in sorted(parent.iterdir()):
            if not entry.is_dir():
                continue
            if not ENTITY_ID_PATTERN.fullmatch(entry.name):
                logger.warning("Skipping directory with unsortable id: %s", entry)
                continue
            units.append(entry)
        try:
            check_id_widths([unit.name for unit in units], parent.name)
        except ValueError as exc:
            raise PipelineSetupError(f"{parent}: {exc}") from exc
        return units

    @staticmethod
    def _lock_seed(directory: Path) -> None:
        seed = directory / SEED_SPEC_NAME
        locked = directory / LOCKED_SPEC_NAME
        if seed.is_file() and not locked.exists():
            shutil.copyfile(seed, locked)

    def reset(self, path: str, *, to: str | None = None) -> PipelineState:
        """Rewind a milestone, phase or task and delete its cycle artifacts.

        Seed specs are kept. A completed ancestor is reopened to ``in_progress``
        so the run loop revisits it.

        Args:
            path: ``m01``, ``m01/p01`` or ``m01/p01/t01``.
            to: For tasks only, ``implementing`` keeps the locked plan and
                rewinds to ``plan_locked``. Default is ``pending``.

        Raises:
            ValueError: Malformed path or unsupported target.
            EntityNotFoundError: Unknown id.
        """
        parts = [part for part in path.strip().split("/") if part]
        if not 1 <= len(parts) <= 3:
            raise ValueError("Invalid path format. Use: m01, m01/p01, or m01/p01/t01")
        if to is not None and (len(parts) != 3 or to not in TASK_RESET_TARGETS):
            raise ValueError(f"--to is only valid for tasks and must be one of: {', '.join(TASK_RESET_TARGETS)}")

        state = self.store.load()
        self._state = state
        if len(parts) == 1:
            self._reset_milestone(parts[0])
        elif len(parts) == 2:
            self._reset_phase(parts[0], parts[1])
        else:
            self._reset_task(parts[0], parts[1], parts[2], to=to or "pending")
        state.current_milestone = None
        self.store.checkpoint(state, f"reset {'/'.join(parts)}")
        return state

    def _reopen_milestone(self, milestone_id: str) -> None:
        milestone = get_milestone(self.state, milestone_id)
        if milestone.status is MilestoneStatus.COMPLETED:
            milestone.status = MilestoneStatus.IN_PROGRESS

    def _reset_milestone(self, milestone_id: str) -> None:
        milestone = get_milestone(self.state, milestone_id)
        milestone.status = MilestoneStatus.PENDING
        milestone.planning = default_iteration_state()
        milestone.current_phase = None
        _clean_artifacts(milestone_dir(self.pipeline_dir, milestone_id), _SPEC_RESET_PREFIXES)
        for phase_id, phase in milestone.phases.items():
            _reset_phase_state(phase)
            _clean_artifacts(phase_dir(self.pipeline_dir, milestone_id, phase_id), _SPEC_RESET_PREFIXES)
            for task_id in phase.tasks:
                _clean_artifacts(task_dir(self.pipeline_dir, milestone_id, phase_id, task_id), _TASK_RESET_PREFIXES)
        self.run_log.log(milestone_id, "reset", "Reset milestone to pending")

    def _reset_phase(self, milestone_id: str, phase_id: str) -> None:
        phase = get_phase(self.state, milestone_id, phase_id)
        _reset_phase_state(phase)
        _clean_artifacts(phase_dir(self.pipeline_dir, milestone_id, phase_id), _SPEC_RESET_PREFIXES)
        for task_id in phase.tasks:
            _clean_artifacts(task_dir(self.pipeline_dir, milestone_id, phase_id, task_id), _TASK_RESET_PREFIXES)
        milestone = get_milestone(self.state, milestone_id)
        if milestone.current_phase == phase_id:
            milestone.current_phase = None
        self._reopen_milestone(milestone_id)
        self.run_log.log(f"{milestone_id}/{phase_id}", "reset", "Reset phase to pending")

    def _reset_task(self, milestone_id: str, phase_id: str, task_id: str, *, to: str) -> None:
        task = get_task(self.state, milestone_id, phase_id, task_id)
        directory = task_dir(self.pipeline_dir, milestone_id, phase_id, task_id)
        if to == "implementing":
            has_plan = task.status in (TaskStatus.PLAN_LOCKED, TaskStatus.IMPLEMENTING, TaskStatus.COMPLETED)
            if not has_plan or not (directory / PLAN_ARTIFACTS.locked_name).is_file():
                raise ValueError(
                    f"Task {milestone_id}/{phase_id}/{task_id} has no locked plan "
                    f"(status {task.status.value}); reset it to pending instead"
                )
        task.implementation = default_iteration_state()
        if to == "implementing":
            task.status = TaskStatus.PLAN_LOCKED
            _clean_artifacts(directory, _IMPL_RESET_PREFIXES)
        else:
            task.status = TaskStatus.PENDING
            task.planning = default_iteration_state()
            _clean_artifacts(directory, _TASK_RESET_PREFIXES)

        phase = get_phase(self.state, milestone_id, phase_id)
        if phase.status is PhaseStatus.COMPLETED:
            phase.status = PhaseStatus.IN_PROGRESS
        self._reopen_milestone(milestone_id)
        self.run_log.log(f"{milestone_id}/{phase_id}/{task_id}", "reset", f"Reset task to {task.status.value}")

    def load_state(self) -> PipelineState:
        self._state = self.store.load()
        return self._state

    def status_report(self, state: PipelineState | None = None) -> str:
        """Render the progress tree shown by the ``status`` command."""
        state = state if state is not None else self.load_state()
        lines = [f"Pipeline Status: {state.project}", "=" * 40, ""]
        totals = {"milestones": [0, 0], "phases": [0, 0], "tasks": [0, 0]}

        for milestone_id in sorted_keys(state.milestones):
            milestone = state.milestones[milestone_id]
            totals["milestones"][1] += 1
            totals["milestones"][0] += milestone.status is MilestoneStatus.COMPLETED
            is_current = state.current_milestone == milestone_id
            tiebreak = ", tiebreaker: planning" if milestone.planning.tiebreaker_used else ""
            marker = " <-- current" if is_current else ""
            lines.append(f"Milestone {milestone_id} [{milestone.status.value}{tiebreak}]{marker}")

            for phase_id in sorted_keys(milestone.phases):
                phase = milestone.phases[phase_id]
                totals["phases"][1] += 1
                totals["phases"][0] += phase.status is PhaseStatus.COMPLETED
                phase_current = is_current and milestone.current_phase == phase_id
                tiebreak = ", tiebreaker: planning" if phase.planning.tiebreaker_used else ""
                marker = " <-- current" if phase_current else ""
                lines.append(f"  Phase {phase_id} [{phase.status.value}{tiebreak}]{marker}")

                for task_id in sorted_keys(phase.tasks):
                    task = phase.tasks[task_id]
                    totals["tasks"][1] += 1
                    totals["tasks"][0] += task.status is TaskStatus.COMPLETED
                    parts = [
                        part
                        for part in (
                            _attempt_summary("plan", task.planning),
                            _attempt_summary("impl", task.implementation),
                        )
                        if part
                    ]
                    if task.planning.tiebreaker_used:
                        parts.append("tiebreaker: plan")
                    if task.implementation.tiebreaker_used:
                        parts.append("tiebreaker: impl")
                    detail = f" ({', '.join(parts)})" if parts else ""
                    marker = " <-- current" if phase_current and phase.current_task == task_id else ""
                    lines.append(f"    Task {task_id} [{task.status.value}]{detail}{marker}")
            lines.append("")

        lines.append(
            "Progress: "
            + ", ".join(f"{done}/{total} {name}" for name, (done, total) in totals.items())
        )
        last = self.store.last_checkpoint()
        if last is not None:
            lines.append(f"Last checkpoint: {last.get('step', '?')} ({last.get('savedAt', '?')})")
        return "\n".join(lines)


