from __future__ import annotations

import copy
import os
from typing import Any
from typing import Literal
from typing import Mapping
from typing import overload
from typing import TYPE_CHECKING
from typing import TypedDict

from inifile import IniFile

from siteforge.utils import bool_from_string

if TYPE_CHECKING:
    from _typeshed import StrPath


PROJECT_FILENAME = "site.ini"

DEFAULT_VERBOSITY = 1
MAX_VERBOSITY = 255


class ProjectConfig(TypedDict):
    output_path: str
    url_root: str
    templates_path: str


class BuildConfig(TypedDict):
    force: bool
    verbosity: int


class ConfigValues(TypedDict):
    PROJECT: ProjectConfig
    BUILD: BuildConfig


DEFAULT_CONFIG: ConfigValues = {
    "PROJECT": {
        "output_path": "_site",
        "url_root": "",
        "templates_path": "templates",
    },
    "BUILD": {
        "force": False,
        "verbosity": DEFAULT_VERBOSITY,
    },
}


def parse_verbosity(value: str | int | None) -> int:
    """Parse a verbosity level, falling back to the default on garbage."""
    if value is None:
        return DEFAULT_VERBOSITY
    try:
        verbosity = int(value)
    except (TypeError, ValueError):
        return DEFAULT_VERBOSITY
    if not 0 <= verbosity <= MAX_VERBOSITY:
        return DEFAULT_VERBOSITY
    return verbosity


def update_config_from_ini(config: dict[str, Any], inifile: IniFile) -> None:
    project = inifile.section_as_dict("project")
    for key in ("output_path", "url_root", "templates_path"):
        if key in project:
            config["PROJECT"][key] = project[key]

    build = inifile.section_as_dict("build")
    if "force" in build:
        config["BUILD"]["force"] = bool_from_string(build["force"], False)
    if "verbosity" in build:
        config["BUILD"]["verbosity"] = parse_verbosity(build["verbosity"])


def update_config_from_environ(
    config: dict[str, Any], environ: Mapping[str, str]
) -> None:
    # FORCE is a switch: its presence matters, not its value
    if "FORCE" in environ:
        config["BUILD"]["force"] = True
    if "VERBOSITY" in environ:
        config["BUILD"]["verbosity"] = parse_verbosity(environ["VERBOSITY"])
    if environ.get("OUTPUT_DIR"):
        config["PROJECT"]["output_path"] = environ["OUTPUT_DIR"]
    if "URL_ROOT" in environ:
        config["PROJECT"]["url_root"] = environ["URL_ROOT"]


class Config:
    """The configuration values consumed by the build engine.

    A config is assembled once, before a build starts, and handed to the
    :class:`~siteforge.builder.Builder`.  Nothing below the builder reads
    the process environment.
    """

    def __init__(self, filename: StrPath | None = None):
        self.filename = filename
        self.values = copy.deepcopy(DEFAULT_CONFIG)

        if filename is not None and os.path.isfile(filename):
            inifile = IniFile(os.fspath(filename))
            update_config_from_ini(self.values, inifile)  # type: ignore[arg-type]

    @classmethod
    def from_project(cls, root_path: StrPath) -> Config:
        """Load the project file (if any) found in ``root_path``."""
        return cls(os.path.join(root_path, PROJECT_FILENAME))

    @classmethod
    def from_environ(
        cls, root_path: StrPath, environ: Mapping[str, str] | None = None
    ) -> Config:
        """Load the project file, then apply environment overrides.

        Recognized variables are ``FORCE``, ``VERBOSITY``, ``OUTPUT_DIR``
        and ``URL_ROOT``.
        """
        if environ is None:
            environ = os.environ
        config = cls.from_project(root_path)
        update_config_from_environ(config.values, environ)  # type: ignore[arg-type]
        return config

    @overload
    def __getitem__(self, name: Literal["PROJECT"]) -> ProjectConfig:
        ...

    @overload
    def __getitem__(self, name: Literal["BUILD"]) -> BuildConfig:
        ...

    def __getitem__(self, name: str) -> Any:
        return self.values[name]  # type: ignore[literal-required]

    @property
    def output_path(self) -> str:
        return self["PROJECT"]["output_path"]

    @property
    def templates_path(self) -> str:
        return self["PROJECT"]["templates_path"]

    @property
    def url_root(self) -> str:
        return self["PROJECT"]["url_root"]

    @property
    def force(self) -> bool:
        return self["BUILD"]["force"]

    @property
    def verbosity(self) -> int:
        return self["BUILD"]["verbosity"]
