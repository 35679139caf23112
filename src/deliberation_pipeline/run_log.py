from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

RUN_LOG_NAME = "run.log"
CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_RUN_LOGGER_NAME = "deliberation_pipeline.run"


class _RunRecordFormatter(logging.Formatter):
    """``timestamp | context | phase | attempt:i/total:n | message`` lines for run.log."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, UTC).isoformat()
        context = getattr(record, "run_context", "") or "-"
        phase = getattr(record, "run_phase", "") or record.name
        attempt = getattr(record, "run_attempt", None)
        attempt_text = f"attempt:{attempt[0]}/total:{attempt[1]}" if attempt else "-"
        message = getattr(record, "run_message", None) or record.getMessage()
        return f"{timestamp} | {context} | {phase} | {attempt_text} | {message}"


def configure_logging(level: int | str = logging.INFO, log_dir: Path | None = None) -> Path | None:
    """Install the console handler and, when *log_dir* is given, the run.log file handler.

    Returns:
        The run.log path, or None when file logging is disabled.
    """
    logging.basicConfig(level=level, format=CONSOLE_FORMAT)
    logging.getLogger().setLevel(level)
    if log_dir is None:
        return None

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / RUN_LOG_NAME
    run_logger = logging.getLogger(_RUN_LOGGER_NAME)
    for handler in run_logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path.resolve():
            return log_path
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(_RunRecordFormatter())
    run_logger.addHandler(file_handler)
    return log_path


class RunLogger:
    """Order-preserving progress log keyed by unit path and pipeline phase.

    Records go through stdlib ``logging``; handler failures are reported by
    ``logging`` itself and never raised into the caller.
    """

    def __init__(self, name: str = _RUN_LOGGER_NAME) -> None:
        self._logger = logging.getLogger(name)

    def log(
        self,
        context: str,
        phase: str,
        message: str,
        attempt: tuple[int, int] | None = None,
        *,
        level: int = logging.INFO,
    ) -> None:
        prefix = f"[{context}] " if context else ""
        self._logger.log(
            level,
            "%s[%s] %s",
            prefix,
            phase,
            message,
            extra={
                "run_context": context,
                "run_phase": phase,
                "run_attempt": attempt,
                "run_message": message,
            },
        )

    def warning(self, context: str, phase: str, message: str) -> None:
        self.log(context, phase, message, level=logging.WARNING)
