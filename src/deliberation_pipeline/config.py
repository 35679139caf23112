from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LEVELS = ("milestone", "phase", "task", "implementation")
READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]

ModelT = TypeVar("ModelT", bound=BaseModel)


class AgentId(str, Enum):
    OPUS = "opus"
    CODEX = "codex"


class AgentCallOptions(BaseModel):
    """Per-call knobs passed through to an agent gateway."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tools: list[str] | None = Field(default=None, description="Tool allowlist; None keeps the agent default")
    sandbox: str | None = Field(default=None, description="Sandbox mode for agents that support one")
    max_turns: int | None = Field(default=None, ge=1)
    schema_name: str | None = Field(default=None, description="Decision schema for structured calls")


class LevelAgents(BaseModel):
    model_config = ConfigDict(extra="forbid")

    creator: AgentId
    challenger: AgentId
    tiebreaker: AgentId


class LevelTemplates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    draft: str
    challenge: str
    refine: str
    tiebreak: str


class LevelConfig(BaseModel):
    """Roles, iteration bound, prompts and call options for one hierarchy level."""

    model_config = ConfigDict(extra="forbid")

    level: str
    agents: LevelAgents
    max_iterations: int = Field(default=3, ge=1, le=20)
    templates: LevelTemplates
    creator_options: AgentCallOptions = Field(default_factory=AgentCallOptions)
    challenger_options: AgentCallOptions
    tiebreaker_options: AgentCallOptions = Field(default_factory=AgentCallOptions)

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value not in LEVELS:
            raise ValueError(f"level must be one of: {', '.join(LEVELS)}")
        return value

    @field_validator("challenger_options")
    @classmethod
    def _challenger_has_schema(cls, value: AgentCallOptions) -> AgentCallOptions:
        if not value.schema_name:
            raise ValueError("challenger_options.schema_name is required")
        return value


class ScaffoldTemplates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    milestones: str
    phases: str
    tasks: str


class ScaffoldConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent: AgentId = AgentId.OPUS
    options: AgentCallOptions
    templates: ScaffoldTemplates


class PipelineConfig(BaseModel):
    """All level configs plus scaffolding, loaded from one directory of JSON files."""

    milestone: LevelConfig
    phase: LevelConfig
    task: LevelConfig
    implementation: LevelConfig
    scaffold: ScaffoldConfig

    def for_level(self, level: str) -> LevelConfig:
        if level not in LEVELS:
            raise KeyError(f"unknown level: {level}")
        return getattr(self, level)

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "PipelineConfig":
        """Load ``milestone.json`` ... ``scaffold.json`` from *config_dir*.

        Args:
            config_dir: Directory holding the five config files. Defaults to the
                configs shipped with the package.

        Raises:
            FileNotFoundError: If a config file is missing.
            ValueError: If a config file fails validation.
        """
        directory = config_dir if config_dir is not None else get_level_config_dir()
        levels = {level: load_level_config(directory / f"{level}.json") for level in LEVELS}
        scaffold = _load_model(directory / "scaffold.json", ScaffoldConfig)
        return cls(**levels, scaffold=scaffold)


def get_level_config_dir() -> Path:
    """Return package-relative path to the default level configs."""
    return Path(__file__).resolve().parent / "level_configs"


def load_level_config(path: Path) -> LevelConfig:
    return _load_model(path, LevelConfig)


def _load_model(path: Path, model: type[ModelT]) -> ModelT:
    if not path.is_file():
        raise FileNotFoundError(f"level config not found: {path}")
    try:
        return model.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"config at {path} failed validation: {exc}") from exc
