from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import SchemaValidationError

CHALLENGE_DECISION = "challenge-decision"
REVIEW_DECISION = "review-decision"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class Verdict(str, Enum):
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"


class _DecisionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_name: ClassVar[str]

    verdict: Verdict
    feedback: str

    @property
    def approved(self) -> bool:
        return self.verdict is Verdict.APPROVED


class ChallengeDecision(_DecisionBase):
    """Challenger verdict on a planning draft."""

    schema_name: ClassVar[str] = CHALLENGE_DECISION


class ReviewIssue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file: str
    description: str


class ReviewDecision(_DecisionBase):
    """Reviewer verdict on an implementation, optionally listing concrete issues."""

    schema_name: ClassVar[str] = REVIEW_DECISION

    issues: list[ReviewIssue] | None = Field(default=None)


Decision = Union[ChallengeDecision, ReviewDecision]

DECISION_SCHEMAS: dict[str, type[ChallengeDecision] | type[ReviewDecision]] = {
    CHALLENGE_DECISION: ChallengeDecision,
    REVIEW_DECISION: ReviewDecision,
}


def normalize_schema_name(schema_name: str) -> str:
    """Accept both ``challenge-decision`` and the config file form ``challenge-decision.json``."""
    name = schema_name.strip()
    if name.endswith(".json"):
        name = name[: -len(".json")]
    return name


def decision_model(schema_name: str) -> type[ChallengeDecision] | type[ReviewDecision]:
    name = normalize_schema_name(schema_name)
    try:
        return DECISION_SCHEMAS[name]
    except KeyError as exc:
        known = ", ".join(sorted(DECISION_SCHEMAS))
        raise SchemaValidationError(f"unknown decision schema {schema_name!r}; expected one of: {known}") from exc


def _extract_json_object(raw: str) -> Any:
    text = raw.strip()
    if not text:
        raise SchemaValidationError("decision payload is empty")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    candidates: list[str] = [match.group(1) for match in _FENCED_JSON.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise SchemaValidationError(f"decision payload is not valid JSON: {text[:200]!r}")


def parse_decision(raw: str | bytes | dict[str, Any] | BaseModel, schema_name: str) -> Decision:
    """Decode agent output into a typed decision.

    This is the only path by which free-form agent text becomes data that can
    move the hierarchy forward.

    Args:
        raw: Agent output. Text is decoded as JSON, falling back to a fenced
            ```json block or the outermost ``{...}`` span when the agent wrapped
            its answer in prose. Mappings and pydantic models are validated directly.
        schema_name: ``challenge-decision`` or ``review-decision``.

    Returns:
        A ``ChallengeDecision`` or ``ReviewDecision``.

    Raises:
        SchemaValidationError: On unknown schema, malformed JSON, a verdict other
            than ``approved``/``needs_revision``, a missing field or a wrong type.
    """
    model = decision_model(schema_name)
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        payload: Any = raw.model_dump(mode="json")
    elif isinstance(raw, bytes):
        payload = _extract_json_object(raw.decode("utf-8", errors="replace"))
    elif isinstance(raw, str):
        payload = _extract_json_object(raw)
    else:
        payload = raw

    if not isinstance(payload, dict):
        raise SchemaValidationError(
            f"{model.schema_name} payload must be a JSON object, got {type(payload).__name__}"
        )
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(f"{model.schema_name} failed validation: {exc}") from exc


def dump_decision(decision: Decision) -> str:
    return decision.model_dump_json(indent=2, exclude_none=True)


def decision_json_schema(schema_name: str) -> dict[str, Any]:
    """JSON schema handed to agents that support schema-constrained output."""
    return decision_model(schema_name).model_json_schema()
