from __future__ import annotations

import dataclasses
import errno
import hashlib
import json
import os
import sys
from pathlib import Path
from traceback import TracebackException
from typing import TYPE_CHECKING

from marshmallow_dataclass import class_schema

if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from _typeshed import StrPath
    from siteforge.typing import ExcInfo


FAILURES_DIRNAME = ".siteforge/failures"


@dataclasses.dataclass
class BuildFailure:
    rule: str  # description of the rule that failed
    exception: str  # formatted exception name
    traceback: str  # formatted traceback

    @classmethod
    def from_exc_info(cls: type[Self], rule: str, exc_info: ExcInfo) -> Self:
        te = TracebackException(*exc_info)
        return cls(
            rule,
            exception="".join(te.format_exception_only()).strip(),
            traceback="".join(te.format()).strip(),
        )

    def to_json(self) -> dict[str, str]:
        return dataclasses.asdict(self)

    @property
    def data(self) -> dict[str, str]:
        return self.to_json()


BuildFailureSchema = class_schema(BuildFailure)


class FailureController:
    """Keeps the failure of the last build around for inspection."""

    def __init__(self, output_path: StrPath):
        self.path = Path(output_path).resolve() / FAILURES_DIRNAME

    def get_path(self, rule: str) -> Path:
        namehash = hashlib.md5(rule.encode("utf-8")).hexdigest()
        return self.path / f"{namehash}.json"

    def get_filename(self, rule: str) -> str:
        return os.fspath(self.get_path(rule))

    def lookup_failure(self, rule: str) -> BuildFailure | None:
        """Looks up a failure for the given rule."""
        fn = self.get_filename(rule)
        try:
            with open(fn, encoding="utf-8") as f:
                schema = BuildFailureSchema()
                return schema.load(json.load(f))  # type: ignore[no-any-return]
        except OSError as ex:
            if ex.errno == errno.ENOENT:
                return None
            raise

    def iter_failures(self) -> list[BuildFailure]:
        """All stored failures, sorted by rule."""
        schema = BuildFailureSchema()
        failures = []
        for path in self.path.glob("*.json"):
            with path.open(encoding="utf-8") as f:
                failures.append(schema.load(json.load(f)))
        return sorted(failures, key=lambda failure: failure.rule)

    def clear_failure(self, rule: str) -> None:
        """Clears a stored failure."""
        try:
            os.unlink(self.get_filename(rule))
        except OSError as e:
            if e.errno != errno.ENOENT:
                raise

    def clear_all(self) -> None:
        """Clears all stored failures."""
        for path in self.path.glob("*.json"):
            try:
                path.unlink()
            except OSError as e:
                if e.errno != errno.ENOENT:
                    raise

    def store_failure(self, rule: str, exc_info: ExcInfo) -> None:
        """Stores a failure from an exception info tuple."""
        fn = self.get_filename(rule)
        failure = BuildFailure.from_exc_info(rule, exc_info)
        os.makedirs(os.path.dirname(fn), exist_ok=True)
        with open(fn, mode="w", encoding="utf-8") as fp:
            print(json.dumps(failure.to_json()), file=fp)
