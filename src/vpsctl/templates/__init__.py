"""Jinja2 template rendering for generated host configuration.

Built-in templates live next to this module (``nginx/``, ``ssh/``,
``fail2ban/``). Operators may shadow any of them by placing a file with the
same relative name under ``templates_dir``.
"""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)


class TemplateRenderError(RuntimeError):
    """Raised when a template is missing or fails to render."""


class TemplateEngine:
    """Render templates with strict variables and optional overrides."""

    def __init__(self, loader: BaseLoader) -> None:
        """Create the Jinja2 environment around ``loader``."""
        self.environment = Environment(
            loader=loader,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,  # noqa: S701 - renders config files, not HTML
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose ``override_dir`` shadows built-in templates."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("vpsctl", "templates"))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template ``name`` with ``context``."""
        try:
            template = self.environment.get_template(name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {name}: {exc}") from exc


__all__ = ["TemplateEngine", "TemplateRenderError"]
