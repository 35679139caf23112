from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .agents import AgentGateway
from .config import ScaffoldConfig
from .exceptions import SchemaValidationError
from .models import (
    PipelineState,
    ScaffoldItem,
    ScaffoldResult,
    check_id_widths,
    default_phase_state,
    default_task_state,
)
from .run_log import RunLogger
from .state_machine import get_milestone, get_phase
from .state_store import atomic_write_text
from .templates import TemplateRenderer

logger = logging.getLogger(__name__)

SEED_SPEC_NAME = "spec.md"
LOCKED_SPEC_NAME = "spec-locked.md"


def milestone_dir(pipeline_dir: Path, milestone_id: str) -> Path:
    return pipeline_dir / "milestones" / milestone_id


def phase_dir(pipeline_dir: Path, milestone_id: str, phase_id: str) -> Path:
    return milestone_dir(pipeline_dir, milestone_id) / "phases" / phase_id


def task_dir(pipeline_dir: Path, milestone_id: str, phase_id: str, task_id: str) -> Path:
    return phase_dir(pipeline_dir, milestone_id, phase_id) / "tasks" / task_id


class Scaffolder:
    """Turns a master plan or a locked spec into seed specs for the level below.

    Extraction is a single structured agent call. Registration is idempotent:
    a parent that already has children is left alone, and an existing seed spec
    is never overwritten.
    """

    def __init__(
        self,
        *,
        config: ScaffoldConfig,
        gateway: AgentGateway,
        templates: TemplateRenderer,
        pipeline_dir: Path,
        master_plan_path: Path,
        run_log: RunLogger | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.templates = templates
        self.pipeline_dir = pipeline_dir
        self.master_plan_path = master_plan_path
        self.run_log = run_log if run_log is not None else RunLogger()

    def _extract(self, template: str, variables: dict[str, str]) -> list[ScaffoldItem]:
        prompt = self.templates.render(template, variables)
        payload = self.gateway.call_json(self.config.agent, prompt, self.config.options)
        try:
            result = ScaffoldResult.model_validate(payload)
        except ValidationError as exc:
            raise SchemaValidationError(f"scaffold output failed validation: {exc}") from exc
        ids = [item.id for item in result.items]
        if len(set(ids)) != len(ids):
            raise SchemaValidationError(f"scaffold output has duplicate ids: {ids}")
        try:
            check_id_widths(ids, "scaffold")
        except ValueError as exc:
            raise SchemaValidationError(f"scaffold output ids are not sortable: {exc}") from exc
        return result.items

    @staticmethod
    def _write_seed(directory: Path, item: ScaffoldItem) -> bool:
        spec_path = directory / SEED_SPEC_NAME
        if spec_path.is_file():
            return False
        atomic_write_text(spec_path, item.spec)
        return True

    def scaffold_milestones(self, *, dry_run: bool = False) -> list[ScaffoldItem]:
        """Extract milestones from the master plan and write their seed specs."""
        self.run_log.log("", "scaffold", "Extracting milestones from master plan")
        if dry_run:
            self.run_log.log("", "scaffold", "[DRY-RUN] Skipping milestone scaffolding")
            return []

        items = self._extract(
            self.config.templates.milestones,
            {"MASTER_PLAN_PATH": str(self.master_plan_path)},
        )
        for item in items:
            if self._write_seed(milestone_dir(self.pipeline_dir, item.id), item):
                self.run_log.log(item.id, "scaffold", f"Created milestone seed spec: {item.title}")
            else:
                self.run_log.log(item.id, "scaffold", "Milestone seed spec already exists, skipping")
        return items

    def scaffold_phases(self, state: PipelineState, milestone_id: str, *, dry_run: bool = False) -> list[str]:
        """Register the phases of a spec-locked milestone. Returns the new phase ids."""
        milestone = get_milestone(state, milestone_id)
        if milestone.phases:
            self.run_log.log(milestone_id, "scaffold", "Phases already exist in state, skipping")
            return []

        self.run_log.log(milestone_id, "scaffold", "Extracting phases from locked milestone spec")
        if dry_run:
            self.run_log.log(milestone_id, "scaffold", "[DRY-RUN] Skipping phase scaffolding")
            return []

        base = milestone_dir(self.pipeline_dir, milestone_id)
        items = self._extract(
            self.config.templates.phases,
            {
                "MASTER_PLAN_PATH": str(self.master_plan_path),
                "MILESTONE_SPEC_PATH": str(base / LOCKED_SPEC_NAME),
            },
        )
        for item in items:
            self._write_seed(phase_dir(self.pipeline_dir, milestone_id, item.id), item)
            milestone.phases[item.id] = default_phase_state()
            self.run_log.log(f"{milestone_id}/{item.id}", "scaffold", f"Created phase seed spec: {item.title}")
        return [item.id for item in items]

    def scaffold_tasks(
        self,
        state: PipelineState,
        milestone_id: str,
        phase_id: str,
        *,
        dry_run: bool = False,
    ) -> list[str]:
        """Register the tasks of a spec-locked phase. Returns the new task ids."""
        phase = get_phase(state, milestone_id, phase_id)
        label = f"{milestone_id}/{phase_id}"
        if phase.tasks:
            self.run_log.log(label, "scaffold", "Tasks already exist in state, skipping")
            return []

        self.run_log.log(label, "scaffold", "Extracting tasks from locked phase spec")
        if dry_run:
            self.run_log.log(label, "scaffold", "[DRY-RUN] Skipping task scaffolding")
            return []

        items = self._extract(
            self.config.templates.tasks,
            {
                "MASTER_PLAN_PATH": str(self.master_plan_path),
                "MILESTONE_SPEC_PATH": str(milestone_dir(self.pipeline_dir, milestone_id) / LOCKED_SPEC_NAME),
                "PHASE_SPEC_PATH": str(phase_dir(self.pipeline_dir, milestone_id, phase_id) / LOCKED_SPEC_NAME),
            },
        )
        for item in items:
            self._write_seed(task_dir(self.pipeline_dir, milestone_id, phase_id, item.id), item)
            phase.tasks[item.id] = default_task_state()
            self.run_log.log(f"{label}/{item.id}", "scaffold", f"Created task seed spec: {item.title}")
        return [item.id for item in items]
