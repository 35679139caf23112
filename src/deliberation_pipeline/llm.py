from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from openai import APIError, APITimeoutError
from pydantic import BaseModel, ValidationError

from .agents import SCAFFOLD_SCHEMA, coerce_json_object
from .config import AgentCallOptions, AgentId
from .decisions import Decision, decision_model, normalize_schema_name, parse_decision
from .exceptions import AgentProcessError, AgentTimeoutError, SchemaValidationError
from .models import ScaffoldResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_MAX_RETRIES: int = 3


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Wraps a structured-output runnable and validates the response against ``schema``."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> ModelT:
        """Invoke the LLM and return a validated Pydantic model instance.

        Raises:
            SchemaValidationError: If the LLM returns unparseable or invalid output.
        """
        raw_output = self.runnable.invoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the chat agent backend")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles the ``include_raw=True`` envelope, a direct Pydantic instance and a
    plain dict.

    Raises:
        SchemaValidationError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise SchemaValidationError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            )
        payload = payload.get("parsed")
        if payload is None:
            raise SchemaValidationError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise SchemaValidationError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise SchemaValidationError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def bind_structured_output(model: ChatOpenAI, schema: type[ModelT]) -> StructuredOutputAdapter[ModelT]:
    """Bind *schema* to *model* via ``with_structured_output``.

    The raw envelope is requested so parsing failures surface as
    ``SchemaValidationError`` instead of a bare ``None``.
    """
    runnable = model.with_structured_output(
        schema,
        method="function_calling",
        include_raw=True,
        strict=False,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


class ChatModelGateway:
    """Agent gateway backed by OpenAI chat models instead of agent CLIs.

    Each agent id maps to a configured model name. Tool allowlists and sandbox
    modes have no chat equivalent and are ignored.
    """

    def __init__(self, settings: RuntimeSettings, *, repo_root: Path | None = None) -> None:
        self.settings = settings
        self.repo_root = repo_root
        self._models: dict[str, ChatOpenAI] = {}
        self._adapters: dict[tuple[str, str], StructuredOutputAdapter[Any]] = {}

    def model_name(self, agent: AgentId) -> str:
        agent = AgentId(agent)
        return self.settings.chat_model_opus if agent is AgentId.OPUS else self.settings.chat_model_codex

    def _chat_model(self, agent: AgentId) -> ChatOpenAI:
        name = self.model_name(agent)
        if name not in self._models:
            self._models[name] = get_chat_model(
                model_name=name,
                timeout=self.settings.timeout_seconds,
                repo_root=self.repo_root,
            )
        return self._models[name]

    def _invoke(self, agent: AgentId, runnable: SupportsInvoke, prompt: str) -> Any:
        label = AgentId(agent).value
        try:
            return runnable.invoke(prompt)
        except APITimeoutError as exc:
            raise AgentTimeoutError(label, self.settings.timeout_seconds) from exc
        except APIError as exc:
            raise AgentProcessError(label, f"chat model call failed: {exc}") from exc

    def call(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> str:
        if options.tools or options.sandbox:
            logger.debug("chat backend ignores tools/sandbox options for %s", AgentId(agent).value)
        message = self._invoke(agent, self._chat_model(agent), prompt)
        content = getattr(message, "content", message)
        text = content if isinstance(content, str) else str(content)
        if not text.strip():
            raise AgentProcessError(AgentId(agent).value, "produced no output")
        return text.strip()

    def _structured(self, agent: AgentId, prompt: str, schema: type[ModelT]) -> ModelT:
        key = (self.model_name(agent), schema.__name__)
        if key not in self._adapters:
            self._adapters[key] = bind_structured_output(self._chat_model(agent), schema)
        return self._invoke(agent, self._adapters[key], prompt)

    def call_structured(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> Decision:
        if not options.schema_name:
            raise AgentProcessError(AgentId(agent).value, "structured call requires options.schema_name")
        model = decision_model(options.schema_name)
        return parse_decision(self._structured(agent, prompt, model), options.schema_name)

    def call_json(self, agent: AgentId, prompt: str, options: AgentCallOptions) -> dict[str, Any]:
        if options.schema_name and normalize_schema_name(options.schema_name) == SCAFFOLD_SCHEMA:
            return self._structured(agent, prompt, ScaffoldResult).model_dump(mode="json")
        return coerce_json_object(self.call(agent, prompt, options))
