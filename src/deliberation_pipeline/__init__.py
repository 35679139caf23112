from importlib.metadata import PackageNotFoundError, version

from .agents import AgentGateway, CliAgentGateway, ScriptedAgentGateway, build_gateway
from .config import AgentCallOptions, AgentId, LevelConfig, PipelineConfig, ScaffoldConfig
from .cycle import ArtifactNames, CycleContext, CycleResult, IterationCycleEngine, run_iteration_cycle
from .decisions import ChallengeDecision, ReviewDecision, ReviewIssue, Verdict, parse_decision
from .exceptions import (
    AgentCallError,
    AgentProcessError,
    AgentTimeoutError,
    EntityNotFoundError,
    InvalidTransitionError,
    PipelineError,
    PipelineSetupError,
    SchemaValidationError,
    StateFileError,
)
from .models import (
    IterationState,
    MilestoneState,
    MilestoneStatus,
    PhaseState,
    PhaseStatus,
    PipelineState,
    ResumeAction,
    ResumePoint,
    SpecStatus,
    TaskState,
    TaskStatus,
)
from .orchestrator import PipelineOrchestrator
from .settings import RuntimeSettings
from .state_machine import find_resume_point, transition_milestone, transition_phase, transition_task
from .state_store import PipelineStateStore, checkpoint, load_state, save_state


def get_version() -> str:
    try:
        return version("deliberation-pipeline")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AgentCallError",
    "AgentCallOptions",
    "AgentGateway",
    "AgentId",
    "AgentProcessError",
    "AgentTimeoutError",
    "ArtifactNames",
    "ChallengeDecision",
    "CliAgentGateway",
    "CycleContext",
    "CycleResult",
    "EntityNotFoundError",
    "InvalidTransitionError",
    "IterationCycleEngine",
    "IterationState",
    "LevelConfig",
    "MilestoneState",
    "MilestoneStatus",
    "PhaseState",
    "PhaseStatus",
    "PipelineConfig",
    "PipelineError",
    "PipelineOrchestrator",
    "PipelineSetupError",
    "PipelineState",
    "PipelineStateStore",
    "ResumeAction",
    "ResumePoint",
    "ReviewDecision",
    "ReviewIssue",
    "RuntimeSettings",
    "ScaffoldConfig",
    "SchemaValidationError",
    "ScriptedAgentGateway",
    "SpecStatus",
    "StateFileError",
    "TaskState",
    "TaskStatus",
    "Verdict",
    "build_gateway",
    "checkpoint",
    "find_resume_point",
    "get_version",
    "load_state",
    "parse_decision",
    "run_iteration_cycle",
    "save_state",
    "transition_milestone",
    "transition_phase",
    "transition_task",
]
