from __future__ import annotations

import importlib
import importlib.util
import os
import sys
from pathlib import Path
from typing import Any
from typing import Callable
from typing import TYPE_CHECKING

import click

from siteforge.builder import Builder
from siteforge.environment.config import Config
from siteforge.environment.config import parse_verbosity
from siteforge.exception import SiteforgeException
from siteforge.reporter import CliReporter

if TYPE_CHECKING:
    from _typeshed import StrPath

SiteFunc = Callable[[Builder], Any]


def load_site_function(value: str, project: StrPath) -> SiteFunc:
    """Load ``FUNC`` from ``SCRIPT:FUNC``.

    ``SCRIPT`` is either a python file (relative to the project) or an
    importable module name.
    """
    script, sep, func_name = value.rpartition(":")
    if not sep or not script or not func_name:
        raise click.BadParameter(
            f"{value!r} is not of the form SCRIPT:FUNC", param_hint="SITE"
        )

    if script.endswith(".py"):
        filename = Path(project, script)
        module_spec = importlib.util.spec_from_file_location(
            f"_siteforge_site_{filename.stem}", filename
        )
        if module_spec is None or module_spec.loader is None or not filename.is_file():
            raise click.BadParameter(f"cannot load {script!r}", param_hint="SITE")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
    else:
        sys.path.insert(0, os.fspath(project))
        try:
            module = importlib.import_module(script)
        except ImportError as exc:
            raise click.BadParameter(
                f"cannot import {script!r}: {exc}", param_hint="SITE"
            ) from exc
        finally:
            sys.path.remove(os.fspath(project))

    try:
        func: SiteFunc = getattr(module, func_name)
    except AttributeError:
        raise click.BadParameter(
            f"{script!r} has no attribute {func_name!r}", param_hint="SITE"
        ) from None
    return func


@click.group()
@click.version_option(package_name="siteforge", prog_name="siteforge")
def cli() -> None:
    """Build static sites from rules written in python."""


@cli.command("build")
@click.argument("site")
@click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="The project root.  Defaults to the current directory.",
)
@click.option(
    "-O",
    "--output-path",
    type=click.Path(file_okay=False),
    default=None,
    help="The output directory, relative to the project root.",
)
@click.option(
    "-f",
    "--force",
    is_flag=True,
    default=None,
    help="Rebuild everything regardless of modification times.",
)
@click.option(
    "-v", "--verbose", "verbosity", count=True, help="Increases the verbosity."
)
@click.option("--url-root", default=None, help="Prefix for absolute urls.")
def build_cmd(
    site: str,
    project: str,
    output_path: str | None,
    force: bool | None,
    verbosity: int,
    url_root: str | None,
) -> None:
    """Builds the site described by SITE, given as SCRIPT:FUNC.

    FUNC is called with the builder and is expected to add rules to it.
    Settings are read from site.ini and the FORCE, VERBOSITY, OUTPUT_DIR and
    URL_ROOT environment variables.  Options take precedence.
    """
    config = Config.from_environ(project)
    if output_path is not None:
        config["PROJECT"]["output_path"] = output_path
    if url_root is not None:
        config["PROJECT"]["url_root"] = url_root
    if force:
        config["BUILD"]["force"] = True
    if verbosity:
        config["BUILD"]["verbosity"] = parse_verbosity(
            config.verbosity + verbosity
        )

    site_func = load_site_function(site, project)
    with CliReporter(verbosity=config.verbosity):
        try:
            builder = Builder(project, config)
            site_func(builder)
            if builder.error is not None:
                raise click.ClickException(f"Build aborted: {builder.error}")
            count = builder.commit()
        except SiteforgeException as exc:
            raise click.ClickException(exc.message) from exc
    click.echo(f"Built {count} file{'s' if count != 1 else ''}.")


def main() -> None:
    cli(prog_name="siteforge")
