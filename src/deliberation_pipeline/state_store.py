from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .exceptions import StateFileError
from .models import PipelineState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, fsyncs it, then renames
    (``os.replace``) into place. A crash mid-write leaves the previous file
    intact and at worst an orphaned ``.tmp`` sibling.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Args:
        path: Filesystem path to read.
        label: Human-readable label used in error messages.

    Returns:
        The raw file text.

    Raises:
        FileNotFoundError: If the file does not exist.
        StateFileError: If the file is empty, unreadable or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise StateFileError(f"{label} at {path} contains invalid UTF-8 data") from exc
    except OSError as exc:
        raise StateFileError(f"{label} at {path} could not be read: {exc}") from exc
    if not text.strip():
        raise StateFileError(f"{label} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class PipelineStateStore:
    """Durable home of the single ``PipelineState`` document.

    The store never invents a default state. A missing file surfaces as
    ``FileNotFoundError`` and the caller decides whether a fresh state is
    legitimate; a present but broken file is always a ``StateFileError``.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @property
    def checkpoint_path(self) -> Path:
        """Sidecar holding the label of the last completed step."""
        return self.path.with_name(f"{self.path.stem}.checkpoint.json")

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> PipelineState:
        """Read and validate the persisted state.

        Raises:
            FileNotFoundError: If the state file does not exist.
            StateFileError: If the file is corrupt or fails validation.
        """
        text = _safe_read_json(self.path, "pipeline state")
        try:
            return PipelineState.model_validate_json(text)
        except ValidationError as exc:
            raise StateFileError(f"pipeline state at {self.path} failed validation: {exc}") from exc

    def save(self, state: PipelineState) -> None:
        atomic_write_text(self.path, state.to_json() + "\n")

    def checkpoint(self, state: PipelineState, step: str) -> None:
        """Save *state* and record *step* as the last completed operation."""
        self.save(state)
        record = {"step": step, "savedAt": datetime.now(UTC).isoformat()}
        atomic_write_text(self.checkpoint_path, json.dumps(record, indent=2) + "\n")
        logger.info("State saved after: %s", step)

    def last_checkpoint(self) -> dict[str, Any] | None:
        """Return the last checkpoint record, or None if none has been written."""
        if not self.checkpoint_path.is_file():
            return None
        text = _safe_read_json(self.checkpoint_path, "checkpoint record")
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateFileError(f"checkpoint record at {self.checkpoint_path} is not valid JSON") from exc
        if not isinstance(record, dict):
            raise StateFileError(f"checkpoint record at {self.checkpoint_path} must be a JSON object")
        return record


def load_state(path: Path) -> PipelineState:
    return PipelineStateStore(path).load()


def save_state(path: Path, state: PipelineState) -> None:
    PipelineStateStore(path).save(state)


def checkpoint(path: Path, state: PipelineState, step: str) -> None:
    PipelineStateStore(path).checkpoint(state, step)
