"""Fixed instructions sent upstream with every completion.

``system.md`` is placed ahead of each conversation and tells the model to
reason inside the classifier's markers. ``title.md`` asks for a short
session title. Both are Jinja2 templates stored next to this module.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, TemplateNotFound

from chatrelay.streaming.classifier import Markers

_PROMPTS_DIR = Path(__file__).parent


@lru_cache(maxsize=1)
def _environment() -> Environment:
    # Undefined variables render as empty strings
    return Environment(loader=FileSystemLoader(_PROMPTS_DIR), autoescape=False)


def render_prompt(template_name: str, **variables: object) -> str:
    """Render ``<template_name>.md`` and strip surrounding whitespace.

    Raises:
        FileNotFoundError: If no such template ships with the package.
    """
    try:
        template = _environment().get_template(f"{template_name}.md")
    except TemplateNotFound as e:
        raise FileNotFoundError(f"Prompt template not found: {template_name}.md") from e
    return template.render(**variables).strip()


def system_prompt(markers: Markers) -> str:
    return render_prompt(
        "system", reasoning_open=markers.open, reasoning_close=markers.close,
    )


def title_prompt(max_words: int) -> str:
    return render_prompt("title", max_words=max_words)
