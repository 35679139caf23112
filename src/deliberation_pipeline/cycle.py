from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .agents import AgentGateway, ScriptedAgentGateway
from .config import LevelConfig
from .decisions import Decision, dump_decision, parse_decision
from .models import IterationState
from .run_log import RunLogger
from .state_store import atomic_write_text
from .templates import TemplateRenderer

logger = logging.getLogger(__name__)

DEFAULT_RECURSION_LIMIT = 10_000


@dataclass(frozen=True)
class ArtifactNames:
    """File naming scheme for one cycle's artifacts inside its directory."""

    draft_prefix: str
    feedback_prefix: str
    locked_name: str
    tiebreak_name: str = "tiebreak.md"
    extension: str = "md"

    def draft(self, iteration: int) -> str:
        return f"{self.draft_prefix}{iteration}.{self.extension}"

    def feedback(self, iteration: int) -> str:
        return f"{self.feedback_prefix}{iteration}.{self.extension}"


@dataclass
class CycleContext:
    label: str
    level: str
    level_config: LevelConfig
    artifact_dir: Path
    artifact_names: ArtifactNames
    template_vars: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    def path(self, name: str) -> Path:
        return self.artifact_dir / name

    @property
    def locked_path(self) -> Path:
        return self.path(self.artifact_names.locked_name)

    @property
    def tiebreak_path(self) -> Path:
        return self.path(self.artifact_names.tiebreak_name)

    def draft_path(self, iteration: int) -> Path:
        return self.path(self.artifact_names.draft(iteration))

    def feedback_path(self, iteration: int) -> Path:
        return self.path(self.artifact_names.feedback(iteration))


@dataclass(frozen=True)
class CycleResult:
    tiebreaker_used: bool
    iterations: int
    artifact: str


class CycleGraphState(TypedDict, total=False):
    ctx: CycleContext
    iteration: int
    draft: str
    decision: Decision
    done: bool
    artifact: str
    iterations: int
    tiebreaker_used: bool


def _read_if_exists(path: Path) -> str | None:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


class IterationCycleEngine:
    """Draft -> challenge -> refine -> tiebreak for one unit of work.

    Every agent output is written under a fixed name before the next step runs,
    and an existing file is always reused instead of calling the agent again.
    Rerunning with the same ``CycleContext`` after a crash therefore resumes at
    the exact step that was interrupted.
    """

    def __init__(
        self,
        *,
        gateway: AgentGateway,
        templates: TemplateRenderer,
        run_log: RunLogger | None = None,
        dry_run_gateway: AgentGateway | None = None,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
    ) -> None:
        self.gateway = gateway
        self.dry_run_gateway = dry_run_gateway if dry_run_gateway is not None else ScriptedAgentGateway()
        self.templates = templates
        self.run_log = run_log if run_log is not None else RunLogger()
        self.recursion_limit = recursion_limit
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(CycleGraphState)
        graph.add_node("check_locked", self._check_locked)
        graph.add_node("draft", self._draft)
        graph.add_node("challenge", self._challenge)
        graph.add_node("route", self._route)
        graph.add_node("lock_draft", self._lock_draft)
        graph.add_node("tiebreak", self._tiebreak)

        graph.add_edge(START, "check_locked")
        graph.add_conditional_edges(
            "check_locked",
            lambda state: "end" if state.get("done") else "draft",
            {"draft": "draft", "end": END},
        )
        graph.add_edge("draft", "challenge")
        graph.add_edge("challenge", "route")
        graph.add_edge("lock_draft", END)
        graph.add_edge("tiebreak", END)
        return graph

    def _gateway(self, ctx: CycleContext) -> AgentGateway:
        return self.dry_run_gateway if ctx.dry_run else self.gateway

    def _log(self, ctx: CycleContext, message: str, attempt: int | None = None) -> None:
        bound = (attempt, ctx.level_config.max_iterations) if attempt is not None else None
        self.run_log.log(ctx.label, ctx.level, message, bound)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _check_locked(self, state: CycleGraphState) -> dict[str, Any]:
        ctx = state["ctx"]
        locked = _read_if_exists(ctx.locked_path)
        if locked is not None:
            self._log(ctx, "Locked artifact already exists, skipping cycle")
            return {"done": True, "artifact": locked, "iterations": 0, "tiebreaker_used": False}
        ctx.artifact_dir.mkdir(parents=True, exist_ok=True)
        return {"done": False, "iteration": 1}

    def _draft(self, state: CycleGraphState) -> dict[str, Any]:
        ctx = state["ctx"]
        i = state["iteration"]
        draft_path = ctx.draft_path(i)

        existing = _read_if_exists(draft_path)
        if existing is not None:
            self._log(ctx, f"Draft v{i} exists on disk, skipping")
            return {"draft": existing}

        config = ctx.level_config
        variables = {**ctx.template_vars, "ARTIFACT_DIR": str(ctx.artifact_dir), "ITERATION": str(i)}
        if i == 1:
            template = config.templates.draft
            self._log(ctx, "Drafting", attempt=i)
        else:
            template = config.templates.refine
            previous_feedback = ctx.feedback_path(i - 1)
            variables.update(
                {
                    "DRAFT_PATH": str(ctx.draft_path(i - 1)),
                    "FEEDBACK_PATH": str(previous_feedback),
                    "FEEDBACK": self._feedback_text(ctx, i - 1),
                }
            )
            self._log(ctx, f"Refining (iteration {i})", attempt=i)

        prompt = self.templates.render(template, variables)
        text = self._gateway(ctx).call(config.agents.creator, prompt, config.creator_options)
        atomic_write_text(draft_path, text)
        return {"draft": text}

    def _challenge(self, state: CycleGraphState) -> dict[str, Any]:
        ctx = state["ctx"]
        i = state["iteration"]
        config = ctx.level_config
        schema_name = config.challenger_options.schema_name
        feedback_path = ctx.feedback_path(i)

        existing = _read_if_exists(feedback_path)
        if existing is not None:
            self._log(ctx, f"Feedback v{i} exists on disk, checking verdict")
            return {"decision": parse_decision(existing, schema_name)}

        self._log(ctx, f"Challenging draft v{i}", attempt=i)
        prompt = self.templates.render(
            config.templates.challenge,
            {
                **ctx.template_vars,
                "ARTIFACT_DIR": str(ctx.artifact_dir),
                "ITERATION": str(i),
                "DRAFT_PATH": str(ctx.draft_path(i)),
                "DRAFT": state["draft"],
            },
        )
        raw = self._gateway(ctx).call_structured(config.agents.challenger, prompt, config.challenger_options)
        decision = parse_decision(raw, schema_name)
        atomic_write_text(feedback_path, dump_decision(decision) + "\n")
        return {"decision": decision}

    def _route(self, state: CycleGraphState) -> Command[str]:
        ctx = state["ctx"]
        i = state["iteration"]
        if state["decision"].approved:
            self._log(ctx, f"Draft v{i} approved")
            return Command(goto="lock_draft")
        self._log(ctx, f"Draft v{i} rejected")
        if i >= ctx.level_config.max_iterations:
            return Command(goto="tiebreak")
        return Command(goto="draft", update={"iteration": i + 1})

    def _lock_draft(self, state: CycleGraphState) -> dict[str, Any]:
        ctx = state["ctx"]
        draft = state["draft"]
        atomic_write_text(ctx.locked_path, draft)
        return {"artifact": draft, "iterations": state["iteration"], "tiebreaker_used": False}

    def _tiebreak(self, state: CycleGraphState) -> dict[str, Any]:
        ctx = state["ctx"]
        config = ctx.level_config
        attempts = config.max_iterations

        resolution = _read_if_exists(ctx.tiebreak_path)
        if resolution is not None:
            self._log(ctx, "Tiebreak exists on disk, locking it")
        else:
            self._log(ctx, f"All {attempts} iterations rejected, invoking tiebreaker")
            draft_paths = [str(ctx.draft_path(i)) for i in range(1, attempts + 1)]
            feedback_paths = [str(ctx.feedback_path(i)) for i in range(1, attempts + 1)]
            prompt = self.templates.render(
                config.templates.tiebreak,
                {
                    **ctx.template_vars,
                    "ARTIFACT_DIR": str(ctx.artifact_dir),
                    "ALL_DRAFT_PATHS": "\n".join(draft_paths),
                    "ALL_FEEDBACK_PATHS": "\n".join(feedback_paths),
                    "NUM_ATTEMPTS": str(attempts),
                    "HISTORY": self._history(ctx, attempts),
                },
            )
            resolution = self._gateway(ctx).call(config.agents.tiebreaker, prompt, config.tiebreaker_options)
            atomic_write_text(ctx.tiebreak_path, resolution)
            self._log(ctx, "Tiebreaker produced final artifact")

        atomic_write_text(ctx.locked_path, resolution)
        return {"artifact": resolution, "iterations": attempts, "tiebreaker_used": True}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _feedback_text(self, ctx: CycleContext, iteration: int) -> str:
        raw = _read_if_exists(ctx.feedback_path(iteration))
        if raw is None:
            return ""
        decision = parse_decision(raw, ctx.level_config.challenger_options.schema_name)
        lines = [decision.feedback]
        for issue in getattr(decision, "issues", None) or []:
            lines.append(f"- {issue.file}: {issue.description}")
        return "\n".join(line for line in lines if line)

    def _history(self, ctx: CycleContext, attempts: int) -> str:
        sections: list[str] = []
        for i in range(1, attempts + 1):
            draft = _read_if_exists(ctx.draft_path(i)) or ""
            feedback = self._feedback_text(ctx, i)
            sections.append(f"## Attempt {i}\n\n### Draft\n\n{draft.strip()}\n\n### Feedback\n\n{feedback.strip()}")
        return "\n\n".join(sections)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, ctx: CycleContext, progress: IterationState | None = None) -> CycleResult:
        """Run or resume the cycle described by *ctx*.

        Args:
            ctx: Unit label, level config, artifact directory and naming scheme.
            progress: Counters for this unit; the outcome is folded into them.

        Returns:
            The locked artifact and how it was reached.

        Raises:
            AgentCallError: An agent call failed or timed out. Nothing was written for it.
            SchemaValidationError: The challenger's output could not be decoded.
                No feedback file was written.
        """
        final = self.graph.invoke({"ctx": ctx}, config={"recursion_limit": self.recursion_limit})
        result = CycleResult(
            tiebreaker_used=bool(final.get("tiebreaker_used", False)),
            iterations=int(final.get("iterations", 0)),
            artifact=str(final.get("artifact", "")),
        )
        if progress is not None:
            progress.record(iterations=result.iterations, tiebreaker_used=result.tiebreaker_used)
        logger.debug(
            "cycle %s finished: iterations=%d tiebreaker_used=%s",
            ctx.label,
            result.iterations,
            result.tiebreaker_used,
        )
        return result


def run_iteration_cycle(
    ctx: CycleContext,
    *,
    gateway: AgentGateway,
    templates: TemplateRenderer,
    run_log: RunLogger | None = None,
) -> CycleResult:
    """One-shot convenience wrapper around ``IterationCycleEngine``."""
    engine = IterationCycleEngine(gateway=gateway, templates=templates, run_log=run_log)
    return engine.run(ctx)
