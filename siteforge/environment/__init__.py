from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from typing import Mapping
from typing import TYPE_CHECKING

import jinja2

from siteforge import filters
from siteforge.environment.config import Config
from siteforge.exception import ConfigurationError
from siteforge.exception import TemplateRenderError

if TYPE_CHECKING:
    from _typeshed import StrPath


TemplateValuesType = Mapping[str, Any]


def _autoescape(template_name: str | None) -> bool:
    # Escape markup templates only.  Compiled bodies are usually HTML, so
    # templates of those need ``|safe``.
    if template_name is None:
        return False
    return template_name.endswith((".html", ".htm", ".xml"))


class Environment:
    """The project tree: where the sources, templates and config live."""

    def __init__(self, root_path: StrPath, config: Config | None = None):
        self.root_path = Path(root_path).resolve()
        if config is None:
            config = Config.from_project(self.root_path)
        self.config = config

        templates_path = self.root_path / config.templates_path
        if not templates_path.is_dir():
            raise ConfigurationError(
                f"Templates directory {os.fspath(templates_path)!r} does not exist"
            )
        self.templates_path = templates_path.resolve()

        self.jinja_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(os.fspath(self.templates_path)),
            autoescape=_autoescape,
            keep_trailing_newline=True,
        )
        filters.register(self.jinja_env)

    def get_template_filename(self, template_name: str) -> Path:
        return self.templates_path / template_name

    def render_template(self, template_name: str, values: TemplateValuesType) -> str:
        """Render the named template (relative to the templates directory)."""
        try:
            template = self.jinja_env.get_template(template_name)
            return template.render(values)
        except jinja2.TemplateError as exc:
            raise TemplateRenderError(template_name, exc) from exc
