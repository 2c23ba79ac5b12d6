"""YAML + Jinja2 prompt templates.

The prompts llm_threads sends on its own behalf (candidate ranking,
corrective feedback) ship in the package's ``templates/`` directory and are
rendered with :func:`render_builtin`. Callers can keep their own prompts in
the same format and render them with :func:`render_prompt`.

Template format::

    name: rank_candidates
    version: "1.0"
    description: Order candidates best to worst
    messages:
      - role: system
        content: |
          {% for option in options %}
          ## Option '{{ option.label }}'
          {% endfor %}
"""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateNotFound

logger = logging.getLogger(__name__)

TEMPLATE_PACKAGE = "llm_threads"
TEMPLATE_DIR = "templates"


class _NoIncludes(BaseLoader):
    """Templates are inline strings; include/extends are not supported."""

    def get_source(self, environment: Environment, template: str) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# StrictUndefined: a missing variable is an error, never an empty string.
_jinja = Environment(loader=_NoIncludes(), undefined=StrictUndefined)


def _message_entries(document: Any, source: str) -> list[dict[str, Any]]:
    if not isinstance(document, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(document).__name__}: {source}")
    entries = document.get("messages")
    if not entries:
        raise ValueError(f"Prompt YAML missing 'messages' key: {source}")
    if not isinstance(entries, list):
        raise ValueError(f"'messages' must be a list, got {type(entries).__name__}: {source}")
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or "role" not in entry or "content" not in entry:
            raise ValueError(f"Message {index} must have 'role' and 'content' keys: {source}")
    return entries


def _render(text: str, source: str, context: dict[str, Any]) -> list[dict[str, str]]:
    entries = _message_entries(yaml.safe_load(text), source)
    messages = [
        {
            "role": str(entry["role"]),
            "content": _jinja.from_string(str(entry["content"])).render(**context).strip(),
        }
        for entry in entries
    ]
    logger.debug("Rendered prompt %s into %d message(s)", source, len(messages))
    return messages


def render_prompt(template_path: str | Path, **context: Any) -> list[dict[str, str]]:
    """Render a YAML prompt file into chat messages.

    Args:
        template_path: YAML file, absolute or relative to the working directory.
        **context: Jinja2 variables.

    Returns:
        ``[{"role": ..., "content": ...}, ...]``

    Raises:
        FileNotFoundError: No such file.
        yaml.YAMLError: Malformed YAML.
        jinja2.UndefinedError: A variable used by the template is missing.
        ValueError: The document is not a prompt (no ``messages`` list, or a
            message without role/content).
    """
    path = Path(template_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    return _render(path.read_text(encoding="utf-8"), path.name, context)


def render_builtin(name: str, **context: Any) -> list[dict[str, str]]:
    """Render one of the package's own templates by name (e.g. ``"ranking"``)."""
    resource = resources.files(TEMPLATE_PACKAGE).joinpath(TEMPLATE_DIR).joinpath(f"{name}.yaml")
    if not resource.is_file():
        raise FileNotFoundError(f"Built-in prompt template not found: {name}")
    return _render(resource.read_text(encoding="utf-8"), f"{name}.yaml", context)


def corrective_message(error: BaseException | str) -> dict[str, str]:
    """The user message that feeds a failed attempt's error back to the model."""
    return render_builtin("correction", error=error)[0]
