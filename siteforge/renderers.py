"""Renderers turn an artifact's metadata into the final page text.

A renderer is one of a closed set of variants:

* :class:`LoadAndApplyTemplate` renders a template from the project's
  templates directory with the metadata as context,
* :class:`Pipeline` chains renderers, feeding each stage's output to the next
  stage as ``body``,
* :class:`Custom` wraps an arbitrary :class:`~siteforge.typing.RenderFunc`,
* :data:`null_renderer` renders nothing.  A build action using it copies the
  source file verbatim.

Each variant also knows whether it makes a destination stale.
"""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import Iterable
from typing import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from siteforge.builder import Builder
    from siteforge.typing import Metadata
    from siteforge.typing import RenderFunc


class Renderer:
    def check_mtime(self, builder: Builder, destination: PurePosixPath) -> bool:
        """Whether ``destination`` must be rebuilt on account of this renderer."""
        raise NotImplementedError()

    def render(self, builder: Builder, context: Metadata) -> str:
        raise NotImplementedError()


class LoadAndApplyTemplate(Renderer):
    def __init__(self, template_name: str):
        self.template_name = template_name

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.template_name!r})"

    def check_mtime(self, builder: Builder, destination: PurePosixPath) -> bool:
        template_filename = builder.env.get_template_filename(self.template_name)
        return builder.is_stale(destination, template_filename)

    def render(self, builder: Builder, context: Metadata) -> str:
        return builder.render_with_template(self.template_name, context)


class Pipeline(Renderer):
    def __init__(self, stages: Iterable[Renderer]):
        self.stages: Sequence[Renderer] = tuple(stages)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({list(self.stages)!r})"

    def check_mtime(self, builder: Builder, destination: PurePosixPath) -> bool:
        # every stage is checked, so that all templates get reported
        return any([stage.check_mtime(builder, destination) for stage in self.stages])

    def render(self, builder: Builder, context: Metadata) -> str:
        body = ""
        last = len(self.stages) - 1
        for n, stage in enumerate(self.stages):
            body = stage.render(builder, context)
            if n < last:
                context["body"] = body
        return body


class Custom(Renderer):
    def __init__(self, func: RenderFunc):
        self.func = func

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.func!r})"

    def check_mtime(self, builder: Builder, destination: PurePosixPath) -> bool:
        # we cannot know what a custom renderer depends on
        return True

    def render(self, builder: Builder, context: Metadata) -> str:
        return self.func(builder, context)


class NullRenderer(Renderer):
    def __repr__(self) -> str:
        return "null_renderer"

    def check_mtime(self, builder: Builder, destination: PurePosixPath) -> bool:
        return True

    def render(self, builder: Builder, context: Metadata) -> str:
        return ""


null_renderer = NullRenderer()


def _pass_body(builder: Builder, context: Metadata) -> str:
    return str(context.get("body", ""))


pass_body = Custom(_pass_body)
