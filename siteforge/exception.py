from __future__ import annotations

from typing import cast
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from _typeshed import StrPath


class SiteforgeException(Exception):
    def __init__(self, message: str | None = None):
        super().__init__(message)

    @property
    def message(self) -> str:
        return cast(str, self.args[0])

    def to_json(self) -> dict[str, str]:
        return {
            "type": self.__class__.__name__,
            "message": self.message,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(SiteforgeException):
    """The project layout or configuration is unusable."""


class CompilerError(SiteforgeException):
    """A compiler failed to turn a resource into metadata."""

    def __init__(self, message: str, path: StrPath | None = None):
        if path is not None:
            message = f"{message} (while compiling {str(path)!r})"
        super().__init__(message)
        self.path = path


class TemplateRenderError(SiteforgeException):
    def __init__(self, template_name: str, error: BaseException):
        super().__init__(
            f"Encountered error when trying to render with template "
            f"`{template_name}`: {error}"
        )
        self.template_name = template_name


class NoSuchSnapshotError(SiteforgeException, KeyError):
    def __init__(self, name: str):
        super().__init__(
            f"There are no snapshots with key `{name}`, is the source rule "
            "empty (ie producing no items) or have you typed the name wrong?"
        )
        self.name = name

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.message


class CommitError(SiteforgeException):
    """Writing an artifact to the output directory failed."""

    def __init__(self, destination: StrPath, error: OSError):
        super().__init__(f"Could not write {str(destination)!r}: {error}")
        self.destination = destination


class RegistrationError(SiteforgeException):
    """An artifact was registered at a time when that is not allowed."""


class CopyTargetIsSourceError(SiteforgeException, AssertionError):
    """A copy would overwrite its own source file.

    This always indicates a routing bug and is never recoverable.
    """

    def __init__(self, source: StrPath, destination: StrPath):
        super().__init__(
            f"Refusing to copy {str(source)!r} onto itself "
            f"(destination {str(destination)!r})"
        )
        self.source = source
        self.destination = destination
