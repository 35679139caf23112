from __future__ import annotations

import logging
from typing import Mapping, TypeVar

from .exceptions import EntityNotFoundError, InvalidTransitionError
from .models import (
    MilestoneState,
    PhaseState,
    PipelineState,
    ResumeAction,
    ResumePoint,
    SpecStatus,
    TaskState,
    TaskStatus,
)

logger = logging.getLogger(__name__)

ValueT = TypeVar("ValueT")

SPEC_TRANSITIONS: dict[SpecStatus, frozenset[SpecStatus]] = {
    SpecStatus.PENDING: frozenset({SpecStatus.PLANNING}),
    SpecStatus.PLANNING: frozenset({SpecStatus.SPEC_LOCKED}),
    SpecStatus.SPEC_LOCKED: frozenset({SpecStatus.IN_PROGRESS}),
    SpecStatus.IN_PROGRESS: frozenset({SpecStatus.COMPLETED}),
    SpecStatus.COMPLETED: frozenset(),
}

MILESTONE_TRANSITIONS = SPEC_TRANSITIONS
PHASE_TRANSITIONS = SPEC_TRANSITIONS

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PLANNING}),
    TaskStatus.PLANNING: frozenset({TaskStatus.PLAN_LOCKED}),
    TaskStatus.PLAN_LOCKED: frozenset({TaskStatus.IMPLEMENTING}),
    TaskStatus.IMPLEMENTING: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
}


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------


def sorted_keys(entries: Mapping[str, object]) -> list[str]:
    """Lexical key order, which the fixed-width id scheme makes equal to creation order."""
    return sorted(entries)


def get_milestone(state: PipelineState, milestone_id: str) -> MilestoneState:
    milestone = state.milestones.get(milestone_id)
    if milestone is None:
        raise EntityNotFoundError(f"Milestone not found: {milestone_id}")
    return milestone


def get_phase(state: PipelineState, milestone_id: str, phase_id: str) -> PhaseState:
    phase = get_milestone(state, milestone_id).phases.get(phase_id)
    if phase is None:
        raise EntityNotFoundError(f"Phase not found: {milestone_id}/{phase_id}")
    return phase


def get_task(state: PipelineState, milestone_id: str, phase_id: str, task_id: str) -> TaskState:
    task = get_phase(state, milestone_id, phase_id).tasks.get(task_id)
    if task is None:
        raise EntityNotFoundError(f"Task not found: {milestone_id}/{phase_id}/{task_id}")
    return task


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _check_edge(
    level: str,
    entity_path: str,
    table: Mapping[ValueT, frozenset[ValueT]],
    current: ValueT,
    requested: ValueT,
) -> None:
    allowed = table[current]
    if requested not in allowed:
        raise InvalidTransitionError(
            level=level,
            entity_path=entity_path,
            current=_status_name(current),
            requested=_status_name(requested),
            allowed=sorted(_status_name(status) for status in allowed),
        )


def _status_name(status: object) -> str:
    return str(getattr(status, "value", status))


def transition_milestone(state: PipelineState, milestone_id: str, new_status: SpecStatus | str) -> PipelineState:
    """Advance a milestone one step along its lifecycle.

    Raises:
        EntityNotFoundError: If the milestone does not exist.
        InvalidTransitionError: If the edge is not allowed. The state is left untouched.
    """
    milestone = get_milestone(state, milestone_id)
    requested = SpecStatus(new_status)
    _check_edge("milestone", milestone_id, MILESTONE_TRANSITIONS, milestone.status, requested)
    milestone.status = requested
    logger.debug("milestone %s -> %s", milestone_id, requested.value)
    return state


def transition_phase(
    state: PipelineState,
    milestone_id: str,
    phase_id: str,
    new_status: SpecStatus | str,
) -> PipelineState:
    phase = get_phase(state, milestone_id, phase_id)
    requested = SpecStatus(new_status)
    _check_edge("phase", f"{milestone_id}/{phase_id}", PHASE_TRANSITIONS, phase.status, requested)
    phase.status = requested
    logger.debug("phase %s/%s -> %s", milestone_id, phase_id, requested.value)
    return state


def transition_task(
    state: PipelineState,
    milestone_id: str,
    phase_id: str,
    task_id: str,
    new_status: TaskStatus | str,
) -> PipelineState:
    task = get_task(state, milestone_id, phase_id, task_id)
    requested = TaskStatus(new_status)
    _check_edge("task", f"{milestone_id}/{phase_id}/{task_id}", TASK_TRANSITIONS, task.status, requested)
    task.status = requested
    logger.debug("task %s/%s/%s -> %s", milestone_id, phase_id, task_id, requested.value)
    return state


# ---------------------------------------------------------------------------
# Resume point
# ---------------------------------------------------------------------------


def _first_incomplete(entries: Mapping[str, MilestoneState | PhaseState | TaskState]) -> str | None:
    for key in sorted_keys(entries):
        if entries[key].status.value != "completed":
            return key
    return None


def _choose_milestone(state: PipelineState) -> str | None:
    current = state.current_milestone
    if current is not None:
        milestone = state.milestones.get(current)
        if milestone is not None and milestone.status is not SpecStatus.COMPLETED:
            return current
    return _first_incomplete(state.milestones)


def find_resume_point(state: PipelineState) -> ResumePoint | None:
    """Compute the next actionable unit, depth-first and left-to-right.

    Returns None only when every milestone is completed. The ``action`` on the
    returned point tells the caller what to do at that level, including the
    bookkeeping steps that have no unit beneath them yet (scaffolding an empty
    map, closing a parent whose children are all done).
    """
    milestone_id = _choose_milestone(state)
    if milestone_id is None:
        return None
    milestone = state.milestones[milestone_id]

    if milestone.status in (SpecStatus.PENDING, SpecStatus.PLANNING):
        return ResumePoint(milestone_id, ResumeAction.PLAN_MILESTONE)
    if milestone.status is SpecStatus.SPEC_LOCKED:
        return ResumePoint(milestone_id, ResumeAction.START_MILESTONE)

    if not milestone.phases:
        return ResumePoint(milestone_id, ResumeAction.SCAFFOLD_PHASES)
    phase_id = _first_incomplete(milestone.phases)
    if phase_id is None:
        return ResumePoint(milestone_id, ResumeAction.COMPLETE_MILESTONE)
    phase = milestone.phases[phase_id]

    if phase.status in (SpecStatus.PENDING, SpecStatus.PLANNING):
        return ResumePoint(milestone_id, ResumeAction.PLAN_PHASE, phase_id=phase_id)
    if phase.status is SpecStatus.SPEC_LOCKED:
        return ResumePoint(milestone_id, ResumeAction.START_PHASE, phase_id=phase_id)

    if not phase.tasks:
        return ResumePoint(milestone_id, ResumeAction.SCAFFOLD_TASKS, phase_id=phase_id)
    task_id = _first_incomplete(phase.tasks)
    if task_id is None:
        return ResumePoint(milestone_id, ResumeAction.COMPLETE_PHASE, phase_id=phase_id)
    task = phase.tasks[task_id]

    if task.status in (TaskStatus.PENDING, TaskStatus.PLANNING):
        action = ResumeAction.PLAN_TASK
    else:
        action = ResumeAction.IMPLEMENT_TASK
    return ResumePoint(milestone_id, action, phase_id=phase_id, task_id=task_id)
