from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tempfile
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .config import AgentCallOptions, AgentId
from .decisions import Decision, decision_json_schema, normalize_schema_name, parse_decision
from .exceptions import AgentCallError, AgentProcessError, AgentTimeoutError, SchemaValidationError
from .models import ScaffoldResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

SCAFFOLD_SCHEMA = "scaffold"
_STDERR_PREVIEW = 500
_STRIPPED_ENV_VARS = ("CLAUDECODE", "CLAUDE_CODE")


class AgentGateway(Protocol):
    """Synchronous boundary to the creator, challenger and tiebreaker agents.

    Every method either returns a usable result or raises ``AgentCallError``
    (``AgentTimeoutError`` / ``AgentProcessError``); structured calls raise
    ``SchemaValidationError`` when the output cannot be decoded.
    """

    def call(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> str:
        ...

    def call_structured(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> Decision:
        ...

    def call_json(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> dict[str, Any]:
        ...


def json_schema_for(schema_name: str) -> dict[str, Any]:
    """Return the JSON schema for a decision or scaffold payload."""
    if normalize_schema_name(schema_name) == SCAFFOLD_SCHEMA:
        return ScaffoldResult.model_json_schema()
    return decision_json_schema(schema_name)


def clean_env() -> dict[str, str]:
    """Copy of the environment without markers that make a nested agent CLI refuse to start."""
    env = dict(os.environ)
    for name in _STRIPPED_ENV_VARS:
        env.pop(name, None)
    return env


def _require_schema(options: AgentCallOptions, agent: str) -> str:
    if not options.schema_name:
        raise AgentCallError(agent, "structured call requires options.schema_name")
    return options.schema_name


def _loads_object(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def unwrap_claude_envelope(stdout: str) -> Any:
    """Pull the payload out of ``claude --output-format json`` output.

    The envelope carries ``structured_output`` when a schema was enforced and
    ``result`` otherwise. Anything that is not an envelope is returned as text.
    """
    envelope = _loads_object(stdout)
    if not isinstance(envelope, dict):
        return stdout
    structured = envelope.get("structured_output")
    if structured is not None:
        return structured
    result = envelope.get("result")
    if isinstance(result, str):
        return result
    return envelope


Runner = Callable[..., subprocess.CompletedProcess]


class CliAgentGateway:
    """Runs ``claude`` (opus) and ``codex`` as blocking subprocesses with a deadline."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        cwd: Path | None = None,
        runner: Runner = subprocess.run,
    ) -> None:
        self.settings = settings
        self.cwd = cwd
        self._runner = runner

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------

    def _run(self, agent: str, argv: list[str]) -> str:
        timeout = self.settings.timeout_seconds
        try:
            completed = self._runner(
                argv,
                cwd=str(self.cwd) if self.cwd is not None else None,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=clean_env(),
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise AgentTimeoutError(agent, timeout) from exc
        except OSError as exc:
            raise AgentProcessError(agent, f"failed to start {argv[0]}: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "")[:_STDERR_PREVIEW]
            raise AgentProcessError(
                agent,
                f"{argv[0]} exited with code {completed.returncode}: {stderr}",
                returncode=completed.returncode,
                stderr=stderr,
            )
        return (completed.stdout or "").strip()

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def claude_argv(self, prompt: str, options: AgentCallOptions, *, schema: dict[str, Any] | None = None) -> list[str]:
        max_turns = options.max_turns or self.settings.claude_max_turns
        argv = [
            self.settings.claude_bin,
            "-p",
            prompt,
            "--model",
            self.settings.claude_model,
            "--output-format",
            "json" if schema is not None else "text",
            "--max-turns",
            str(max_turns),
        ]
        if options.tools:
            argv.extend(["--allowedTools", ",".join(options.tools)])
        if schema is not None:
            argv.extend(["--json-schema", json.dumps(schema)])
        return argv

    def codex_argv(
        self,
        prompt: str,
        options: AgentCallOptions,
        *,
        schema_path: Path | None = None,
        output_path: Path | None = None,
    ) -> list[str]:
        sandbox = options.sandbox or self.settings.codex_sandbox
        argv = [self.settings.codex_bin, "exec", prompt, "--sandbox", sandbox]
        if schema_path is not None and output_path is not None:
            argv.extend(["--output-schema", str(schema_path), "-o", str(output_path)])
        return argv

    # ------------------------------------------------------------------
    # Gateway protocol
    # ------------------------------------------------------------------

    def call(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> str:
        agent = AgentId(agent)
        if agent is AgentId.OPUS:
            logger.info(
                "claude -p (tools: %s, max-turns: %s)",
                ",".join(options.tools or []) or "none",
                options.max_turns or self.settings.claude_max_turns,
            )
            stdout = self._run(agent.value, self.claude_argv(prompt, options))
        else:
            logger.info("codex exec (sandbox: %s)", options.sandbox or self.settings.codex_sandbox)
            stdout = self._run(agent.value, self.codex_argv(prompt, options))
        if not stdout:
            raise AgentProcessError(agent.value, "produced no output")
        return stdout

    def _call_schema(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> Any:
        agent = AgentId(agent)
        schema_name = _require_schema(options, agent.value)
        schema = json_schema_for(schema_name)
        if agent is AgentId.OPUS:
            logger.info("claude -p structured (schema: %s)", schema_name)
            stdout = self._run(agent.value, self.claude_argv(prompt, options, schema=schema))
            if not stdout:
                raise AgentProcessError(agent.value, "produced no output")
            return unwrap_claude_envelope(stdout)

        logger.info("codex exec structured (schema: %s)", schema_name)
        with tempfile.TemporaryDirectory(prefix="codex-schema-") as tmp:
            schema_path = Path(tmp) / f"{normalize_schema_name(schema_name)}.json"
            schema_path.write_text(json.dumps(schema, indent=2), encoding="utf-8")
            output_path = Path(tmp) / "output.json"
            stdout = self._run(
                agent.value,
                self.codex_argv(prompt, options, schema_path=schema_path, output_path=output_path),
            )
            if output_path.is_file():
                raw = output_path.read_text(encoding="utf-8").strip()
            else:
                logger.warning("codex output file missing, falling back to stdout")
                raw = stdout
        if not raw:
            raise AgentProcessError(agent.value, "produced no output")
        return raw

    def call_structured(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> Decision:
        payload = self._call_schema(agent, prompt, options)
        return parse_decision(payload, _require_schema(options, AgentId(agent).value))

    def call_json(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> dict[str, Any]:
        payload = self._call_schema(agent, prompt, options)
        return coerce_json_object(payload)


def coerce_json_object(payload: Any) -> dict[str, Any]:
    """Accept a mapping or JSON text (optionally wrapped in prose) and return a dict."""
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, str):
        parsed = _loads_object(payload.strip())
        if parsed is None:
            start, end = payload.find("{"), payload.rfind("}")
            if start != -1 and end > start:
                parsed = _loads_object(payload[start : end + 1])
        if isinstance(parsed, dict):
            return parsed
    raise SchemaValidationError(f"structured output is not a JSON object: {str(payload)[:200]!r}")


@dataclass
class AgentCall:
    agent: AgentId
    prompt: str
    options: AgentCallOptions
    kind: str


@dataclass
class ScriptedAgentGateway:
    """Queue-driven gateway for dry runs and tests.

    ``decisions`` feed ``call_structured`` in order and fall back to an approval
    once drained. Entries may be decisions, mappings, raw text (decoded like real
    agent output) or exceptions to raise. ``texts`` and ``payloads`` work the same
    way for ``call`` and ``call_json``.
    """

    decisions: Iterable[Any] = ()
    texts: Iterable[Any] = ()
    payloads: Iterable[Any] = ()
    calls: list[AgentCall] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._decisions: deque[Any] = deque(self.decisions)
        self._texts: deque[Any] = deque(self.texts)
        self._payloads: deque[Any] = deque(self.payloads)

    def queue_decisions(self, *decisions: Any) -> None:
        self._decisions.extend(decisions)

    @staticmethod
    def _next(queue: deque[Any], default: Any) -> Any:
        item = queue.popleft() if queue else default
        if isinstance(item, BaseException):
            raise item
        return item

    def call(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> str:
        agent = AgentId(agent)
        self.calls.append(AgentCall(agent, prompt, options, "text"))
        preview = prompt if len(prompt) <= 80 else f"{prompt[:80]}..."
        logger.info("[DRY-RUN] %s: %s", agent.value, preview)
        return str(self._next(self._texts, f"Mock {agent.value} response for dry-run testing."))

    def call_structured(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> Decision:
        agent = AgentId(agent)
        self.calls.append(AgentCall(agent, prompt, options, "structured"))
        schema_name = _require_schema(options, agent.value)
        item = self._next(self._decisions, {"verdict": "approved", "feedback": ""})
        return parse_decision(item, schema_name)

    def call_json(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> dict[str, Any]:
        agent = AgentId(agent)
        self.calls.append(AgentCall(agent, prompt, options, "json"))
        return coerce_json_object(self._next(self._payloads, {"items": []}))

    def calls_of(self, kind: str) -> list[AgentCall]:
        return [call for call in self.calls if call.kind == kind]


def check_prerequisites(settings: RuntimeSettings) -> list[str]:
    """Return the agent binaries that are not on PATH."""
    missing: list[str] = []
    for label, binary in (("claude", settings.claude_bin), ("codex", settings.codex_bin)):
        resolved = shutil.which(binary)
        if resolved is None:
            logger.error("MISSING %s binary: %s", label, binary)
            missing.append(binary)
        else:
            logger.info("OK %s -> %s", label, resolved)
    return missing


def build_gateway(settings: RuntimeSettings, *, cwd: Path | None = None) -> AgentGateway:
    """Pick the gateway for *settings*: scripted for dry runs, else CLI or chat backend."""
    if settings.dry_run:
        return ScriptedAgentGateway()
    if settings.agent_backend == "chat":
        from .llm import ChatModelGateway

        return ChatModelGateway(settings, repo_root=cwd)
    return CliAgentGateway(settings, cwd=cwd)
