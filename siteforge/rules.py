"""Rules are build steps.

A rule is a callable taking the :class:`~siteforge.builder.Builder`; it
registers artifacts with it.  The factories here cover the common cases.
"""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from siteforge.match_patterns import iter_matches
from siteforge.renderers import pass_body
from siteforge.renderers import Renderer
from siteforge.routes import Route

if TYPE_CHECKING:
    from siteforge.builder import Builder
    from siteforge.match_patterns import PatternValue
    from siteforge.typing import Compiler
    from siteforge.typing import Rule

MARKDOWN_EXTENSIONS = frozenset([".md", ".markdown"])


def _iter_sources(builder: Builder, pattern: PatternValue) -> list[PurePosixPath]:
    return list(
        iter_matches(builder.root_path, pattern, exclude=[builder.output_path])
    )


def match_pattern(
    pattern: PatternValue, route: Route, renderer: Renderer, compiler: Compiler
) -> Rule:
    """Compile and render every matching markdown file."""

    def match_pattern_rule(builder: Builder) -> None:
        for path in _iter_sources(builder, pattern):
            if path.suffix not in MARKDOWN_EXTENSIONS:
                continue
            builder.register_compiled(route(path), path, compiler, renderer)

    match_pattern_rule.__qualname__ = f"match_pattern({pattern!r})"
    return match_pattern_rule


def copy(pattern: PatternValue, route: Route) -> Rule:
    """Copy every matching file verbatim."""

    def copy_rule(builder: Builder) -> None:
        for path in _iter_sources(builder, pattern):
            builder.register_copy(path, route(path))

    copy_rule.__qualname__ = f"copy({pattern!r})"
    return copy_rule


def create(
    destination: str | PurePosixPath,
    compiler: Compiler,
    renderer: Renderer = pass_body,
) -> Rule:
    """Create a page which has no source file of its own, e.g. an index."""
    destination = PurePosixPath(destination)

    def create_rule(builder: Builder) -> None:
        builder.register_compiled(destination, destination, compiler, renderer)

    create_rule.__qualname__ = f"create({str(destination)!r})"
    return create_rule


def build_rss_feed(destination: str | PurePosixPath, compiler: Compiler) -> Rule:
    """Write the body produced by an :func:`~siteforge.compilers.rss_feed`
    compiler to ``destination``.
    """
    return create(destination, compiler, pass_body)
