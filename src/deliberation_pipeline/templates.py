from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping, Protocol

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Z][A-Z0-9_]*)\s*\}\}")


class TemplateRenderer(Protocol):
    def render(self, template_name: str, variables: Mapping[str, str]) -> str:
        ...


def get_template_dir() -> Path:
    """Return package-relative path to the prompt templates."""
    return Path(__file__).resolve().parent / "templates"


class TemplateResolver:
    """Loads ``<root>/<name>.md`` and substitutes ``{{VAR}}`` placeholders."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root if root is not None else get_template_dir()
        self._cache: dict[str, str] = {}

    def template_path(self, template_name: str) -> Path:
        relative = Path(f"{template_name}.md")
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"template name must be a relative name inside the template root: {template_name!r}")
        return self.root / relative

    def load(self, template_name: str) -> str:
        if template_name not in self._cache:
            path = self.template_path(template_name)
            if not path.is_file():
                raise FileNotFoundError(f"template not found: {path}")
            self._cache[template_name] = path.read_text(encoding="utf-8")
        return self._cache[template_name]

    def render(self, template_name: str, variables: Mapping[str, str]) -> str:
        """Render *template_name* with *variables*.

        Unknown placeholders are left in place and reported once per render,
        so a missing variable shows up in the log rather than as a silent gap.
        """
        missing: list[str] = []

        def _substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            if key in variables:
                return str(variables[key])
            missing.append(key)
            return match.group(0)

        rendered = _PLACEHOLDER.sub(_substitute, self.load(template_name))
        if missing:
            logger.warning(
                "template %s has unresolved placeholders: %s",
                template_name,
                ", ".join(sorted(set(missing))),
            )
        return rendered
