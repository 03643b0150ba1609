"""Match files below the project root with regular expressions or literals."""
from __future__ import annotations

import os
import re
from pathlib import Path
from pathlib import PurePosixPath
from typing import Iterable
from typing import Iterator
from typing import Sequence
from typing import TYPE_CHECKING
from typing import Union

if TYPE_CHECKING:
    from _typeshed import StrPath

# Directory names never descended into.
EXCLUDED_DIRNAMES = frozenset([".git", "target"])


class MatchPattern:
    """Matches project relative posix paths."""

    @classmethod
    def from_value(cls, value: PatternValue) -> MatchPattern:
        """Compile a string, pattern or sequence of those.

        Strings which are not valid regular expressions match literally.
        """
        if isinstance(value, MatchPattern):
            return value
        if isinstance(value, str):
            try:
                return RegexPattern(re.compile(value))
            except re.error:
                return LiteralPattern(value)
        return PatternList([cls.from_value(v) for v in value])

    def matches(self, path: PurePosixPath) -> bool:
        raise NotImplementedError()

    def list(
        self, root_path: StrPath, exclude: Iterable[StrPath] = ()
    ) -> Iterator[PurePosixPath]:
        """All matching files below ``root_path``, relative to it."""
        for path in iter_files(root_path, exclude):
            if self.matches(path):
                yield path


class LiteralPattern(MatchPattern):
    def __init__(self, literal: str):
        self.literal = literal

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.literal!r})"

    def matches(self, path: PurePosixPath) -> bool:
        return path.as_posix() == self.literal


class RegexPattern(MatchPattern):
    def __init__(self, regex: re.Pattern[str]):
        self.regex = regex

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.regex.pattern!r})"

    def matches(self, path: PurePosixPath) -> bool:
        return self.regex.search(path.as_posix()) is not None


class PatternList(MatchPattern):
    def __init__(self, patterns: Sequence[MatchPattern]):
        self.patterns = tuple(patterns)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({list(self.patterns)!r})"

    def matches(self, path: PurePosixPath) -> bool:
        return any(pattern.matches(path) for pattern in self.patterns)


PatternValue = Union[str, MatchPattern, Sequence[Union[str, MatchPattern]]]


def iter_files(
    root_path: StrPath, exclude: Iterable[StrPath] = ()
) -> Iterator[PurePosixPath]:
    """Walk the files below ``root_path`` in sorted order.

    Directories named ``.git`` or ``target`` are skipped, as is any
    directory in ``exclude`` (e.g. the output directory).
    """
    root = Path(root_path).resolve()
    excluded = {Path(root, p).resolve() for p in exclude}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            name
            for name in dirnames
            if name not in EXCLUDED_DIRNAMES
            and Path(dirpath, name).resolve() not in excluded
        )
        for filename in sorted(filenames):
            path = Path(dirpath, filename).relative_to(root)
            yield PurePosixPath(path.as_posix())


def iter_matches(
    root_path: StrPath, pattern: PatternValue, exclude: Iterable[StrPath] = ()
) -> Iterator[PurePosixPath]:
    return MatchPattern.from_value(pattern).list(root_path, exclude)
