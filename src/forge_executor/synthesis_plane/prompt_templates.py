"""
forge-executor - prompt templates

File: src/forge_executor/synthesis_plane/prompt_templates.py

Purpose
- Render the generation and self-heal prompts from packaged Jinja2 templates.

Functional requirements
- Rendering is deterministic for the same inputs; every prompt carries a
  SHA-256 hash for log correlation.
- Missing template variables fail loudly (``StrictUndefined``).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError

from forge_executor.constants import SUBMIT_TOOL_NAME
from forge_executor.domain.models import Diagnostic, ExtractedFile, StructuredFailure, TaskSpec
from forge_executor.utils.hashing import sha256_text

GENERATION_TEMPLATE: Final[str] = "generation.md.j2"
SELF_HEAL_TEMPLATE: Final[str] = "self_heal.md.j2"

_FENCE_LANGUAGES: Final[dict[str, str]] = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".json": "json",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}


class PromptTemplateError(RuntimeError):
    """Base error for prompt template loading and rendering."""


class PromptTemplateNotFoundError(PromptTemplateError, FileNotFoundError):
    """Raised when a template file does not exist."""


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    template_name: str
    prompt: str
    prompt_hash: str
    template_hash: str


@dataclass(frozen=True, slots=True)
class PromptFile:
    """File view handed to templates."""

    path: str
    content: str
    role: str = "reference"
    level: str = "full"

    @property
    def language(self) -> str:
        return fence_language(self.path)


def fence_language(path: str) -> str:
    return _FENCE_LANGUAGES.get(PurePosixPath(path).suffix.lower(), "")


class PromptRenderer:
    """Loads templates from ``template_root`` (the packaged templates by default)."""

    def __init__(
        self,
        *,
        template_root: Path | str | None = None,
        tool_name: str = SUBMIT_TOOL_NAME,
    ) -> None:
        root = Path(template_root) if template_root is not None else _default_template_root()
        if not root.is_dir():
            raise PromptTemplateNotFoundError(f"template root does not exist: {root}")
        self._template_root = root.resolve()
        self._tool_name = tool_name
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )

    @property
    def template_root(self) -> Path:
        return self._template_root

    def render(self, template_name: str, variables: Mapping[str, object]) -> RenderedPrompt:
        path = self._template_root / template_name
        if not path.is_file():
            raise PromptTemplateNotFoundError(f"template not found: {path}")
        source = path.read_text(encoding="utf-8").replace("\r\n", "\n")
        try:
            prompt = self._environment.from_string(source).render(**dict(variables))
        except TemplateError as exc:
            raise PromptTemplateError(f"{template_name}: {exc}") from exc
        return RenderedPrompt(
            template_name=template_name,
            prompt=prompt,
            prompt_hash=sha256_text(prompt),
            template_hash=sha256_text(source),
        )

    def render_generation(
        self,
        task: TaskSpec,
        files: Sequence[ExtractedFile],
    ) -> RenderedPrompt:
        return self.render(
            GENERATION_TEMPLATE,
            {
                "task_description": task.description.strip(),
                "patterns": task.patterns.strip(),
                "edit_targets": list(task.edit_targets),
                "files": [
                    PromptFile(
                        path=item.path,
                        content=item.content,
                        role=item.role.value,
                        level=item.level.value,
                    )
                    for item in files
                    if item.content
                ],
                "tool_name": self._tool_name,
            },
        )

    def render_self_heal(
        self,
        task: TaskSpec,
        *,
        diagnostics: Sequence[Diagnostic],
        hidden_error_count: int,
        files: Iterable[PromptFile],
        allowed_paths: Sequence[str],
        attempt: int,
        max_attempts: int,
        failure: StructuredFailure | None = None,
    ) -> RenderedPrompt:
        return self.render(
            SELF_HEAL_TEMPLATE,
            {
                "task_description": task.description.strip(),
                "errors": [item.render() for item in diagnostics]
                or [failure.message if failure is not None else "unknown error"],
                "hidden_error_count": hidden_error_count,
                "suggested_fix": failure.suggested_fix if failure is not None else None,
                "files": list(files),
                "allowed_paths": sorted(allowed_paths),
                "attempt": attempt,
                "max_attempts": max_attempts,
                "tool_name": self._tool_name,
            },
        )


def _default_template_root() -> Path:
    return Path(__file__).resolve().parent / "templates"


__all__ = [
    "GENERATION_TEMPLATE",
    "SELF_HEAL_TEMPLATE",
    "PromptFile",
    "PromptRenderer",
    "PromptTemplateError",
    "PromptTemplateNotFoundError",
    "RenderedPrompt",
    "fence_language",
]
