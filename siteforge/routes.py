"""Mapping source paths to output paths."""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import Callable
from typing import Union

from siteforge.exception import ConfigurationError

PathLike = Union[str, PurePosixPath]


class Route:
    """Explains how to map a project relative source path to a relative
    destination path.
    """

    def __call__(self, path: PathLike) -> PurePosixPath:
        return self.route(PurePosixPath(path))

    def route(self, path: PurePosixPath) -> PurePosixPath:
        raise NotImplementedError()


class IdRoute(Route):
    """Keep the source path as destination."""

    def __repr__(self) -> str:
        return "identity"

    def route(self, path: PurePosixPath) -> PurePosixPath:
        return path


class ConstRoute(Route):
    """Disregard the source path and always use this value."""

    def __init__(self, destination: PathLike):
        self.destination = PurePosixPath(destination)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str(self.destination)!r})"

    def route(self, path: PurePosixPath) -> PurePosixPath:
        return self.destination


class SetExtension(Route):
    """Replace the extension of the source path."""

    def __init__(self, extension: str):
        self.extension = extension.lstrip(".")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.extension!r})"

    def route(self, path: PurePosixPath) -> PurePosixPath:
        if not path.name:
            raise ConfigurationError(f"Cannot set the extension of {str(path)!r}")
        if not self.extension:
            return path.with_suffix("")
        return path.with_suffix(f".{self.extension}")


class CustomRoute(Route):
    def __init__(self, func: Callable[[PurePosixPath], PathLike]):
        self.func = func

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.func!r})"

    def route(self, path: PurePosixPath) -> PurePosixPath:
        return PurePosixPath(self.func(path))


identity = IdRoute()
