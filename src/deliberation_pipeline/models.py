from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

ENTITY_ID_PATTERN = re.compile(r"[a-z]\d{2,}")


class SpecStatus(str, Enum):
    """Lifecycle shared by milestones and phases."""

    PENDING = "pending"
    PLANNING = "planning"
    SPEC_LOCKED = "spec_locked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


MilestoneStatus = SpecStatus
PhaseStatus = SpecStatus


class TaskStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    PLAN_LOCKED = "plan_locked"
    IMPLEMENTING = "implementing"
    COMPLETED = "completed"


class _StateModel(BaseModel):
    """Persisted models use camelCase keys on disk and snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class IterationState(_StateModel):
    """Rounds consumed by one planning or implementation cycle at a hierarchy node."""

    iteration: int = Field(default=0, ge=0)
    total_attempts: int = Field(default=0, ge=0)
    tiebreaker_used: bool = False

    def record(self, *, iterations: int, tiebreaker_used: bool) -> None:
        """Fold a cycle outcome into the counters without ever decreasing them.

        A resumed cycle that finds its locked artifact reports zero iterations;
        that must not wipe the count from the run that produced it.
        """
        self.iteration = max(self.iteration, iterations)
        self.total_attempts += iterations
        self.tiebreaker_used = self.tiebreaker_used or tiebreaker_used


class TaskState(_StateModel):
    status: TaskStatus = TaskStatus.PENDING
    planning: IterationState = Field(default_factory=IterationState)
    implementation: IterationState = Field(default_factory=IterationState)


class PhaseState(_StateModel):
    status: SpecStatus = SpecStatus.PENDING
    planning: IterationState = Field(default_factory=IterationState)
    current_task: str | None = None
    tasks: dict[str, TaskState] = Field(default_factory=dict)

    @field_validator("tasks")
    @classmethod
    def _task_ids_sortable(cls, value: dict[str, TaskState]) -> dict[str, TaskState]:
        _check_ids(value, "task")
        return value

    @model_validator(mode="after")
    def _current_task_exists(self) -> "PhaseState":
        if self.current_task is not None and self.current_task not in self.tasks:
            raise ValueError(f"currentTask {self.current_task!r} is not a known task")
        return self


class MilestoneState(_StateModel):
    status: SpecStatus = SpecStatus.PENDING
    planning: IterationState = Field(default_factory=IterationState)
    current_phase: str | None = None
    phases: dict[str, PhaseState] = Field(default_factory=dict)

    @field_validator("phases")
    @classmethod
    def _phase_ids_sortable(cls, value: dict[str, PhaseState]) -> dict[str, PhaseState]:
        _check_ids(value, "phase")
        return value

    @model_validator(mode="after")
    def _current_phase_exists(self) -> "MilestoneState":
        if self.current_phase is not None and self.current_phase not in self.phases:
            raise ValueError(f"currentPhase {self.current_phase!r} is not a known phase")
        return self


class PipelineState(_StateModel):
    """Root aggregate persisted as a single JSON document."""

    project: str
    current_milestone: str | None = None
    milestones: dict[str, MilestoneState] = Field(default_factory=dict)

    @field_validator("milestones")
    @classmethod
    def _milestone_ids_sortable(cls, value: dict[str, MilestoneState]) -> dict[str, MilestoneState]:
        _check_ids(value, "milestone")
        return value

    @model_validator(mode="after")
    def _current_milestone_exists(self) -> "PipelineState":
        if self.current_milestone is not None and self.current_milestone not in self.milestones:
            raise ValueError(f"currentMilestone {self.current_milestone!r} is not a known milestone")
        return self

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def check_id_widths(ids: Iterable[str], kind: str) -> None:
    """Reject sibling ids whose lexical order would differ from their numeric order.

    Raises:
        ValueError: An id is malformed, or siblings use different digit widths.
    """
    ids = list(ids)
    widths: set[int] = set()
    for key in ids:
        if not ENTITY_ID_PATTERN.fullmatch(key):
            raise ValueError(f"{kind} id {key!r} is not a fixed-width sortable identifier (e.g. m01)")
        widths.add(len(key))
    if len(widths) > 1:
        raise ValueError(f"{kind} ids mix digit widths ({sorted(ids)}); pad them to one width")


def _check_ids(entries: dict[str, object], kind: str) -> None:
    check_id_widths(entries, kind)


def default_iteration_state() -> IterationState:
    return IterationState()


def default_task_state() -> TaskState:
    return TaskState()


def default_phase_state() -> PhaseState:
    return PhaseState()


def default_milestone_state() -> MilestoneState:
    return MilestoneState()


def new_pipeline_state(project: str) -> PipelineState:
    return PipelineState(project=project)


class ResumeAction(str, Enum):
    PLAN_MILESTONE = "plan_milestone"
    START_MILESTONE = "start_milestone"
    SCAFFOLD_PHASES = "scaffold_phases"
    COMPLETE_MILESTONE = "complete_milestone"
    PLAN_PHASE = "plan_phase"
    START_PHASE = "start_phase"
    SCAFFOLD_TASKS = "scaffold_tasks"
    COMPLETE_PHASE = "complete_phase"
    PLAN_TASK = "plan_task"
    IMPLEMENT_TASK = "implement_task"


@dataclass(frozen=True)
class ResumePoint:
    """Next unit needing attention.

    ``phase_id`` and ``task_id`` are set only as deep as the actionable level.
    """

    milestone_id: str
    action: ResumeAction
    phase_id: str | None = None
    task_id: str | None = None

    @property
    def path(self) -> str:
        return "/".join(part for part in (self.milestone_id, self.phase_id, self.task_id) if part)


class ScaffoldItem(BaseModel):
    id: str = Field(..., description="Fixed-width sortable identifier such as m01, p02 or t03")
    title: str = Field(..., description="Short human-readable title")
    spec: str = Field(..., description="Seed specification markdown for the new unit")

    @field_validator("id")
    @classmethod
    def _id_is_sortable(cls, value: str) -> str:
        value = value.strip()
        if not ENTITY_ID_PATTERN.fullmatch(value):
            raise ValueError(f"scaffold id {value!r} must look like m01, p02 or t03")
        return value


class ScaffoldResult(BaseModel):
    items: list[ScaffoldItem] = Field(..., description="Child units in execution order")
