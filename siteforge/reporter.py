from __future__ import annotations

import sys
import time
import traceback
import warnings
from contextlib import contextmanager
from traceback import TracebackException
from typing import Any
from typing import Callable
from typing import Iterator
from typing import NamedTuple
from typing import TYPE_CHECKING
from typing import TypedDict

import click
from click import style
from werkzeug.local import LocalProxy
from werkzeug.local import LocalStack

if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if sys.version_info >= (3, 12):
    from typing import Unpack
else:
    from typing_extensions import Unpack

if TYPE_CHECKING:
    from _typeshed import StrPath
    from _typeshed import Unused

    from siteforge.builder import Artifact
    from siteforge.builder import ArtifactId
    from siteforge.builder import Builder
    from siteforge.typing import ExcInfo
    from siteforge.typing import Metadata
    from siteforge.typing import Rule


NOTHING_TO_BUILD_MESSAGE = """\
Nothing to be generated. This might happen if:
- You haven't added any rules.
- You either haven't made any changes to your source files or they weren't \
detected (might be a bug). Rerun with $FORCE environmental variable set to \
ignore mtimes and force generation. Set $VERBOSITY to greater than 1 to get \
more messages."""


class RuleExceptionWarning(UserWarning):
    """Warning issued when a build rule raises an exception."""

    def __init__(self, *args: Any, tb_exc: TracebackException):
        super().__init__(*args)
        self.tb_exc = tb_exc


_reporter_stack: LocalStack[Reporter] = LocalStack()


def describe_rule(rule: Callable[..., Any]) -> str:
    if hasattr(rule, "func"):
        rule = rule.func  # unwrap functools.partial
    try:
        return f"{rule.__module__}.{rule.__qualname__}"
    except AttributeError:
        return repr(rule)


class Reporter:
    def __init__(self, verbosity: int = 0):
        self.verbosity = verbosity

        self.builder_stack: list[Builder] = []
        self.rule_stack: list[Rule] = []

    def push(self) -> None:
        _reporter_stack.push(self)

    @staticmethod
    def pop() -> None:
        _reporter_stack.pop()

    def __enter__(self) -> Self:
        self.push()
        return self

    def __exit__(self, exc_type: Unused, exc_value: Unused, tb: Unused) -> None:
        self.pop()

    @property
    def builder(self) -> Builder | None:
        if self.builder_stack:
            return self.builder_stack[-1]
        return None

    @property
    def current_rule(self) -> Rule | None:
        if self.rule_stack:
            return self.rule_stack[-1]
        return None

    @property
    def show_build_info(self) -> bool:
        return self.verbosity >= 1

    @property
    def show_tracebacks(self) -> bool:
        return self.verbosity >= 1

    @property
    def show_staleness_checks(self) -> bool:
        return self.verbosity >= 2

    @property
    def show_artifact_internals(self) -> bool:
        return self.verbosity >= 3

    @property
    def show_debug_info(self) -> bool:
        return self.verbosity >= 4

    @contextmanager
    def build(self, activity: str, builder: Builder) -> Iterator[None]:
        now = time.time()
        self.builder_stack.append(builder)
        self.start_build(activity)
        try:
            yield
        finally:
            self.builder_stack.pop()
            self.finish_build(activity, now)

    def start_build(self, activity: str) -> None:
        pass

    def finish_build(self, activity: str, start_time: float) -> None:
        pass

    @contextmanager
    def process_rule(self, rule: Rule) -> Iterator[None]:
        now = time.time()
        self.rule_stack.append(rule)
        self.enter_rule()
        try:
            yield
        finally:
            self.leave_rule(now)
            self.rule_stack.pop()

    def enter_rule(self) -> None:
        pass

    def leave_rule(self, start_time: float) -> None:
        pass

    def report_failure(self, exc_info: ExcInfo) -> None:
        # In general, we always want to report exceptions.  Otherwise, if
        # a rule raises in a unit test, we get no indication.
        tb_exc = TracebackException(*exc_info, limit=-6, compact=True)

        message = "".join(tb_exc.format_exception_only())
        if self.current_rule is not None:
            message = f"{message.rstrip()}, in rule {describe_rule(self.current_rule)}\n"

        lines = (message, *tb_exc.format(chain=True))
        full_message = "| ".join(lines).rstrip()

        warnings.warn(RuleExceptionWarning(full_message, tb_exc=tb_exc), stacklevel=2)

    def report_artifact(self, artifact: Artifact, is_current: bool) -> None:
        pass

    def report_staleness_check(
        self, destination: StrPath, source: StrPath, is_stale: bool
    ) -> None:
        pass

    def report_metadata(self, source: StrPath, metadata: Metadata) -> None:
        pass

    def report_snapshot(self, name: str, artifact_id: ArtifactId) -> None:
        pass

    def report_output_path(self, output_path: StrPath) -> None:
        pass

    def report_write(self, artifact: Artifact, dst_filename: StrPath) -> None:
        pass

    def report_copy(self, artifact: Artifact, dst_filename: StrPath) -> None:
        pass

    def report_nothing_to_build(self) -> None:
        pass

    def report_debug_info(self, key: str, value: object) -> None:
        pass


class NullReporter(Reporter):
    pass


class _ReportData(TypedDict, total=False):
    activity: str
    artifact: Artifact
    artifact_id: ArtifactId
    destination: StrPath
    exc_info: ExcInfo
    is_current: bool
    is_stale: bool
    key: str
    message: str
    metadata: Metadata
    name: str
    path: StrPath
    rule: str
    source: StrPath
    value: object


class _Report(NamedTuple):
    event: str
    data: _ReportData


class BufferReporter(Reporter):
    def __init__(self, verbosity: int = 0):
        super().__init__(verbosity)
        self.buffer: list[_Report] = []

    def clear(self) -> None:
        self.buffer.clear()

    def get_major_events(self) -> list[_Report]:
        return [
            report
            for report in self.buffer
            if report.event not in ("debug-info", "staleness-check", "metadata")
        ]

    def get_failures(self) -> list[_ReportData]:
        return [data for event, data in self.buffer if event == "failure"]

    def get_written_artifacts(self) -> list[Artifact]:
        """Artifacts committed to disk, in write order."""
        return [
            data["artifact"]
            for event, data in self.buffer
            if event in ("write", "copy")
        ]

    def _emit(self, _event: str, **extra: Unpack[_ReportData]) -> None:
        self.buffer.append(_Report(_event, extra))

    def start_build(self, activity: str) -> None:
        self._emit("start-build", activity=activity)

    def finish_build(self, activity: str, start_time: float) -> None:
        self._emit("finish-build", activity=activity)

    def enter_rule(self) -> None:
        assert self.current_rule is not None
        self._emit("enter-rule", rule=describe_rule(self.current_rule))

    def leave_rule(self, start_time: float) -> None:
        assert self.current_rule is not None
        self._emit("leave-rule", rule=describe_rule(self.current_rule))

    def report_failure(self, exc_info: ExcInfo) -> None:
        self._emit("failure", exc_info=exc_info)

    def report_artifact(self, artifact: Artifact, is_current: bool) -> None:
        self._emit("artifact", artifact=artifact, is_current=is_current)

    def report_staleness_check(
        self, destination: StrPath, source: StrPath, is_stale: bool
    ) -> None:
        self._emit(
            "staleness-check",
            destination=destination,
            source=source,
            is_stale=is_stale,
        )

    def report_metadata(self, source: StrPath, metadata: Metadata) -> None:
        self._emit("metadata", source=source, metadata=metadata)

    def report_snapshot(self, name: str, artifact_id: ArtifactId) -> None:
        self._emit("snapshot", name=name, artifact_id=artifact_id)

    def report_output_path(self, output_path: StrPath) -> None:
        self._emit("output-path", path=output_path)

    def report_write(self, artifact: Artifact, dst_filename: StrPath) -> None:
        self._emit("write", artifact=artifact, path=dst_filename)

    def report_copy(self, artifact: Artifact, dst_filename: StrPath) -> None:
        self._emit("copy", artifact=artifact, path=dst_filename)

    def report_nothing_to_build(self) -> None:
        self._emit("nothing-to-build", message=NOTHING_TO_BUILD_MESSAGE)

    def report_debug_info(self, key: str, value: object) -> None:
        self._emit("debug-info", key=key, value=value)


class CliReporter(Reporter):
    def __init__(self, verbosity: int = 0):
        super().__init__(verbosity=verbosity)
        self.indentation = 0

    def indent(self) -> None:
        self.indentation += 1

    def outdent(self) -> None:
        self.indentation -= 1

    def _write_line(self, text: str, err: bool = False) -> None:
        click.echo(f"{'  ' * self.indentation} {text}", err=err)

    def _write_kv_info(self, key: str, value: object) -> None:
        self._write_line(f"{key}: {style(str(value), fg='yellow')}")

    def start_build(self, activity: str) -> None:
        self._write_line(style("Started %s" % activity, fg="cyan"))
        if not self.show_build_info:
            return
        builder = self.builder
        if builder is None:
            return
        self._write_line(style(f"  Tree: {builder.root_path}", fg="cyan"))

    def finish_build(self, activity: str, start_time: float) -> None:
        self._write_line(
            style(
                f"Finished {activity} in {time.time() - start_time:.2f} sec",
                fg="cyan",
            )
        )

    def enter_rule(self) -> None:
        if not self.show_artifact_internals:
            return
        assert self.current_rule is not None
        rule_repr = style(describe_rule(self.current_rule), fg="magenta")
        self._write_line(f"Rule {rule_repr}")
        self.indent()

    def leave_rule(self, start_time: float) -> None:
        if self.show_artifact_internals:
            self.outdent()

    def report_failure(self, exc_info: ExcInfo) -> None:
        sign = click.style("E", fg="red")
        err = " ".join(
            "".join(traceback.format_exception_only(*exc_info[:2])).splitlines()
        ).strip()
        where = ""
        if self.current_rule is not None:
            where = f" in rule {describe_rule(self.current_rule)}"
        self._write_line(f"{sign}{where} ({err})", err=True)

        if not self.show_tracebacks:
            return

        tb = traceback.format_exception(*exc_info)
        for line in "".join(tb).splitlines():
            if line.startswith("Traceback "):
                line = click.style(line, fg="red")
            elif line.startswith("  File "):
                line = click.style(line, fg="yellow")
            elif not line.startswith("    "):
                line = click.style(line, fg="red")
            self._write_line("  " + line, err=True)

    def report_artifact(self, artifact: Artifact, is_current: bool) -> None:
        if not self.show_build_info:
            return
        destination = artifact.destination_path
        if is_current:
            sign = click.style("X", fg="cyan")
            self._write_line(f"{sign} {destination} (cached)")
        else:
            sign = click.style("U", fg="green")
            self._write_line(f"{sign} {destination} from {artifact.source_path}")
        if self.show_debug_info:
            self._write_kv_info("  artifact", artifact.artifact_id)

    def report_staleness_check(
        self, destination: StrPath, source: StrPath, is_stale: bool
    ) -> None:
        if self.show_staleness_checks:
            self._write_kv_info(f"checking {source} against {destination}", is_stale)

    def report_metadata(self, source: StrPath, metadata: Metadata) -> None:
        if not self.show_artifact_internals:
            return
        if self.show_debug_info:
            self._write_kv_info(f"metadata for {source}", dict(metadata))
        else:
            self._write_kv_info(f"metadata keys for {source}", ", ".join(metadata))

    def report_snapshot(self, name: str, artifact_id: ArtifactId) -> None:
        if self.show_debug_info:
            self._write_kv_info(f"adding to snapshot {name}", artifact_id)

    def report_output_path(self, output_path: StrPath) -> None:
        if self.show_build_info:
            self._write_line(style(f"  Output path: {output_path}", fg="cyan"))

    def report_write(self, artifact: Artifact, dst_filename: StrPath) -> None:
        if self.show_build_info:
            sign = click.style("W", fg="green")
            self._write_line(f"{sign} {artifact.destination_path}: creating {dst_filename}")

    def report_copy(self, artifact: Artifact, dst_filename: StrPath) -> None:
        if self.show_build_info:
            sign = click.style("C", fg="green")
            self._write_line(f"{sign} {artifact.source_path}: copying to {dst_filename}")

    def report_nothing_to_build(self) -> None:
        self._write_line(style(NOTHING_TO_BUILD_MESSAGE, fg="yellow"))

    def report_debug_info(self, key: str, value: object) -> None:
        if self.show_debug_info:
            self._write_kv_info(key, value)


null_reporter = NullReporter()


reporter: Reporter  # lie about the type


@LocalProxy  # type: ignore[no-redef]
def reporter() -> Reporter:
    rv = _reporter_stack.top
    if rv is None:
        rv = null_reporter
    return rv


@contextmanager
def default_reporter(verbosity: int) -> Iterator[Reporter]:
    """Make sure a reporter is active.

    If none has been pushed, a :class:`CliReporter` with the given
    verbosity is pushed for the duration of the block.
    """
    rv = _reporter_stack.top
    if rv is not None:
        yield rv
        return
    with CliReporter(verbosity=verbosity) as cli_reporter:
        yield cli_reporter
