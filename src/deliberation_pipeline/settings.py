from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

AGENT_BACKENDS = ("cli", "chat")
CODEX_SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    pipeline_dir: str = ".pipeline"
    project_name: str = "unnamed-project"
    master_plan_path: str = "MASTER_PLAN.md"
    log_dir: str = "logs"
    timeout_seconds: int = 1_200
    recursion_limit: int = 10_000
    agent_backend: str = "cli"
    claude_bin: str = "claude"
    claude_model: str = "opus"
    claude_max_turns: int = 25
    codex_bin: str = "codex"
    codex_sandbox: str = "read-only"
    chat_model_opus: str = "gpt-4o"
    chat_model_codex: str = "gpt-4o-mini"
    dry_run: bool = False
    level_config_dir: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            pipeline_dir=os.getenv("PIPELINE_DIR", ".pipeline"),
            project_name=os.getenv("PIPELINE_PROJECT_NAME", "unnamed-project"),
            master_plan_path=os.getenv("PIPELINE_MASTER_PLAN", "MASTER_PLAN.md"),
            log_dir=os.getenv("PIPELINE_LOG_DIR", "logs"),
            timeout_seconds=_get_env_int("PIPELINE_TIMEOUT_SECONDS", default=1_200, minimum=1),
            recursion_limit=_get_env_int("PIPELINE_RECURSION_LIMIT", default=10_000, minimum=100),
            agent_backend=os.getenv("PIPELINE_AGENT_BACKEND", "cli"),
            claude_bin=os.getenv("PIPELINE_CLAUDE_BIN", "claude"),
            claude_model=os.getenv("PIPELINE_CLAUDE_MODEL", "opus"),
            claude_max_turns=_get_env_int("PIPELINE_CLAUDE_MAX_TURNS", default=25, minimum=1, maximum=1_000),
            codex_bin=os.getenv("PIPELINE_CODEX_BIN", "codex"),
            codex_sandbox=os.getenv("PIPELINE_CODEX_SANDBOX", "read-only"),
            chat_model_opus=os.getenv("PIPELINE_CHAT_MODEL_OPUS", "gpt-4o"),
            chat_model_codex=os.getenv("PIPELINE_CHAT_MODEL_CODEX", "gpt-4o-mini"),
            dry_run=_get_env_bool("PIPELINE_DRY_RUN", default=False),
            level_config_dir=os.getenv("PIPELINE_LEVEL_CONFIG_DIR", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Required strings --
        for env_name, value in (
            ("PIPELINE_DIR", self.pipeline_dir),
            ("PIPELINE_PROJECT_NAME", self.project_name),
            ("PIPELINE_MASTER_PLAN", self.master_plan_path),
            ("PIPELINE_LOG_DIR", self.log_dir),
            ("PIPELINE_CLAUDE_BIN", self.claude_bin),
            ("PIPELINE_CLAUDE_MODEL", self.claude_model),
            ("PIPELINE_CODEX_BIN", self.codex_bin),
            ("PIPELINE_CHAT_MODEL_OPUS", self.chat_model_opus),
            ("PIPELINE_CHAT_MODEL_CODEX", self.chat_model_codex),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")

        # -- Numeric bounds --
        if self.timeout_seconds > 24 * 3_600:
            raise ValueError(f"PIPELINE_TIMEOUT_SECONDS must be <= 86400, got: {self.timeout_seconds}")
        if self.recursion_limit > 1_000_000:
            raise ValueError(f"PIPELINE_RECURSION_LIMIT must be <= 1000000, got: {self.recursion_limit}")

        # -- Choices --
        agent_backend = self.agent_backend.strip().lower()
        if agent_backend not in AGENT_BACKENDS:
            raise ValueError(f"PIPELINE_AGENT_BACKEND must be one of: {', '.join(AGENT_BACKENDS)}")
        codex_sandbox = self.codex_sandbox.strip().lower()
        if codex_sandbox not in CODEX_SANDBOX_MODES:
            raise ValueError(f"PIPELINE_CODEX_SANDBOX must be one of: {', '.join(CODEX_SANDBOX_MODES)}")

        return replace(
            self,
            pipeline_dir=self.pipeline_dir.strip(),
            project_name=self.project_name.strip(),
            master_plan_path=self.master_plan_path.strip(),
            log_dir=self.log_dir.strip(),
            agent_backend=agent_backend,
            claude_bin=self.claude_bin.strip(),
            claude_model=self.claude_model.strip(),
            codex_bin=self.codex_bin.strip(),
            codex_sandbox=codex_sandbox,
            chat_model_opus=self.chat_model_opus.strip(),
            chat_model_codex=self.chat_model_codex.strip(),
            level_config_dir=self.level_config_dir.strip(),
        )

    def with_dry_run(self, dry_run: bool) -> "RuntimeSettings":
        return replace(self, dry_run=dry_run)

    def pipeline_path(self, root: Path | None = None) -> Path:
        return _resolve(self.pipeline_dir, root)

    def state_file_path(self, root: Path | None = None) -> Path:
        return self.pipeline_path(root) / "state.json"

    def master_plan_file(self, root: Path | None = None) -> Path:
        return _resolve(self.master_plan_path, root)

    def log_path(self, root: Path | None = None) -> Path:
        return _resolve(self.log_dir, root)

    def level_config_path(self) -> Path | None:
        return Path(self.level_config_dir) if self.level_config_dir else None


def _resolve(value: str, root: Path | None) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return (root if root is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
