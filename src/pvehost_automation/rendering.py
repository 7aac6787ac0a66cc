"""Jinja2 rendering for every file the provisioner writes."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import jinja2

TEMPLATE_DIR = Path(__file__).parent / "templates"

_environment: Optional[jinja2.Environment] = None


def environment() -> jinja2.Environment:
    global _environment
    if _environment is None:
        _environment = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
    return _environment


def render(name: str, **context: Any) -> str:
    """Render template ``name`` with ``context``; missing variables raise."""

    return environment().get_template(name).render(**context)
