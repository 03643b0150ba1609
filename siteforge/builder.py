from __future__ import annotations

import datetime
import os
import shutil
import subprocess
import sys
import tempfile
import uuid
from contextlib import contextmanager
from contextlib import suppress
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from pathlib import PurePath
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Callable
from typing import IO
from typing import Iterator
from typing import Mapping
from typing import NamedTuple
from typing import NewType
from typing import Sequence
from typing import TYPE_CHECKING

from siteforge.buildfailures import FailureController
from siteforge.context import Context
from siteforge.environment import Environment
from siteforge.environment.config import Config
from siteforge.exception import CommitError
from siteforge.exception import CompilerError
from siteforge.exception import ConfigurationError
from siteforge.exception import CopyTargetIsSourceError
from siteforge.exception import NoSuchSnapshotError
from siteforge.exception import RegistrationError
from siteforge.exception import SiteforgeException
from siteforge.renderers import null_renderer
from siteforge.renderers import Renderer
from siteforge.reporter import default_reporter
from siteforge.reporter import describe_rule
from siteforge.reporter import reporter
from siteforge.utils import relative_to_root

if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from _typeshed import StrPath

    from siteforge.environment import TemplateValuesType
    from siteforge.typing import Compiler
    from siteforge.typing import Metadata
    from siteforge.typing import Rule

# Identity of an artifact.
#
# This is a name based (v3) UUID of the project relative path of the
# artifact's source, with forward slashes as separators.  Deriving the same
# source path always yields the same id, which is what lets a later rule refer
# to the output of an earlier one.
ArtifactId = NewType("ArtifactId", uuid.UUID)

# Used for ``updated_at`` when no date can be determined for a source.
UNKNOWN_UPDATED_AT = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

UpdatedAtResolver = Callable[[Path], datetime.datetime]


def artifact_id_from_path(path: StrPath | PurePath) -> ArtifactId:
    """The artifact id for a project relative source path."""
    return ArtifactId(uuid.uuid3(uuid.NAMESPACE_OID, PurePath(path).as_posix()))


def _parse_git_date(value: str) -> datetime.datetime | None:
    value = value.strip().strip('"')
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        date = datetime.datetime.fromisoformat(value)
    except ValueError:
        return None
    if date.tzinfo is None:
        date = date.replace(tzinfo=datetime.timezone.utc)
    return date.astimezone(datetime.timezone.utc)


def git_updated_at(filename: Path) -> datetime.datetime:
    """The date of the last commit touching ``filename``.

    Falls back to :data:`UNKNOWN_UPDATED_AT` if ``git`` is unavailable,
    the file is not tracked or the date cannot be parsed.
    """
    cwd = filename.parent
    while not cwd.is_dir() and cwd != cwd.parent:
        cwd = cwd.parent
    try:
        proc = subprocess.run(
            ["git", "log", "-1", "--date=iso-strict", "--format=%ad", "--", filename],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return UNKNOWN_UPDATED_AT
    if proc.returncode != 0:
        return UNKNOWN_UPDATED_AT
    return _parse_git_date(proc.stdout) or UNKNOWN_UPDATED_AT


def _get_last_modified(filename: Path) -> datetime.datetime | None:
    try:
        mtime = filename.stat().st_mtime
    except OSError:
        return None
    return datetime.datetime.fromtimestamp(mtime, tz=datetime.timezone.utc)


def _source_is_newer(dst_filename: Path, src_filename: Path) -> bool:
    """Compare modification times.

    Unreadable times count as newer so that we rebuild.  Equal times do not.
    """
    try:
        dst_mtime = dst_filename.stat().st_mtime_ns
        src_mtime = src_filename.stat().st_mtime_ns
    except OSError:
        return True
    return src_mtime > dst_mtime


def _same_file(a: Path, b: Path) -> bool:
    return a.resolve() == b.resolve()


def _current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


@contextmanager
def _replace_atomically(
    dst_filename: Path, mode_from: Path | None = None
) -> Iterator[IO[bytes]]:
    """Write to a temporary file which is renamed to ``dst_filename`` on
    success, and removed on failure.

    The file gets the permissions of ``mode_from`` if given, otherwise the
    default permissions for new files under the current umask.
    """
    fd, tmp_filename = tempfile.mkstemp(dir=dst_filename.parent, prefix=".__trans")
    try:
        with open(fd, "wb") as f:
            yield f
        if mode_from is not None:
            shutil.copymode(mode_from, tmp_filename)
        else:
            os.chmod(tmp_filename, 0o666 & ~_current_umask())
        os.replace(tmp_filename, dst_filename)
    except BaseException:
        with suppress(OSError):
            os.remove(tmp_filename)
        raise


@dataclass
class Artifact:
    """Various information about a build artifact."""

    artifact_id: ArtifactId
    destination_path: PurePosixPath  # relative to the output directory
    source_path: PurePosixPath  # relative to the project root
    metadata: Metadata = field(default_factory=dict)
    last_modified: datetime.datetime | None = None
    updated_at: datetime.datetime = UNKNOWN_UPDATED_AT


class BuildAction(NamedTuple):
    """Pending work for one destination."""

    artifact_id: ArtifactId
    renderer: Renderer

    @property
    def is_copy(self) -> bool:
        return self.renderer is null_renderer


class SnapshotIndex:
    """Named, insertion ordered lists of artifact ids.

    Compilers add to snapshots while rules run; renderers which aggregate
    artifacts (e.g. feeds) read them later.  No deduplication is done.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, list[ArtifactId]] = {}

    def add(self, name: str) -> None:
        """Initialize an (empty) snapshot."""
        self._snapshots.setdefault(name, [])

    def append(self, name: str, artifact_id: ArtifactId) -> None:
        reporter.report_snapshot(name, artifact_id)
        self._snapshots.setdefault(name, []).append(artifact_id)

    def get(self, name: str) -> Sequence[ArtifactId]:
        try:
            return tuple(self._snapshots[name])
        except KeyError:
            raise NoSuchSnapshotError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._snapshots

    def __iter__(self) -> Iterator[str]:
        return iter(self._snapshots)

    def __len__(self) -> int:
        return len(self._snapshots)


class Builder:
    """The state of a site build.

    Rules are added (and run immediately) with :meth:`add_rule`.  They
    register artifacts, which queue build actions when stale.  Finally,
    :meth:`commit` performs the queued actions.
    """

    def __init__(
        self,
        root_path: StrPath | None = None,
        config: Config | None = None,
        updated_at: UpdatedAtResolver = git_updated_at,
    ):
        if root_path is None:
            root_path = os.getcwd()
        self.env = Environment(root_path, config)
        self.config = self.env.config

        self.force_generate = self.config.force
        self.verbosity = self.config.verbosity
        self.url_root = self.config.url_root

        output_path = self.root_path / self.config.output_path
        try:
            output_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(
                f"Could not create output directory {os.fspath(output_path)!r}: {exc}"
            ) from exc
        self.output_path = output_path.resolve()

        self.failure_controller = FailureController(self.output_path)
        self.snapshots = SnapshotIndex()
        self._artifacts: dict[ArtifactId, Artifact] = {}
        self._build_actions: dict[PurePosixPath, BuildAction] = {}
        self._updated_at = updated_at
        self._error: Exception | None = None
        self._committing = False

    @property
    def root_path(self) -> Path:
        return self.env.root_path

    @property
    def artifacts(self) -> Mapping[ArtifactId, Artifact]:
        """All registered artifacts, by id."""
        return MappingProxyType(self._artifacts)

    @property
    def build_actions(self) -> Mapping[PurePosixPath, BuildAction]:
        """The pending build actions, by destination."""
        return MappingProxyType(self._build_actions)

    @property
    def error(self) -> Exception | None:
        """The error raised by a rule, if any."""
        return self._error

    def set_force_generate(self, force_generate: bool) -> Self:
        self.force_generate = force_generate
        return self

    def set_verbosity(self, verbosity: int) -> Self:
        self.verbosity = verbosity
        return self

    def set_url_root(self, url_root: str) -> Self:
        self.url_root = url_root
        return self

    def add_snapshot(self, name: str) -> None:
        self.snapshots.add(name)

    def add_to_snapshot(self, name: str, artifact_id: ArtifactId) -> None:
        self.snapshots.append(name, artifact_id)

    def to_source_path(self, resource: StrPath | PurePath) -> PurePosixPath:
        """Normalize a resource path to be relative to the project root."""
        return relative_to_root(resource, self.root_path)

    def artifact_id_for(self, resource: StrPath | PurePath) -> ArtifactId:
        return artifact_id_from_path(self.to_source_path(resource))

    def get_source_filename(self, source: StrPath | PurePath) -> Path:
        return self.root_path / source

    def get_destination_filename(self, destination: StrPath | PurePath) -> Path:
        """Returns the output filename for a destination path."""
        return self.output_path / self._to_destination_path(destination)

    def is_stale(
        self, destination: StrPath | PurePath, source: StrPath | PurePath
    ) -> bool:
        """Whether ``destination`` is missing or older than ``source``.

        Always true when forcing generation.
        """
        if self.force_generate:
            return True
        dst_filename = self.get_destination_filename(destination)
        src_filename = self.get_source_filename(source)
        is_stale = _source_is_newer(dst_filename, src_filename)
        reporter.report_staleness_check(dst_filename, src_filename, is_stale)
        return is_stale

    def _check_not_committing(self, destination: StrPath | PurePath) -> None:
        if self._committing:
            raise RegistrationError(
                f"Cannot register {str(destination)!r} while committing"
            )

    def _to_destination_path(self, destination: StrPath | PurePath) -> PurePosixPath:
        path = relative_to_root(destination, self.root_path)
        if path.is_absolute():
            raise ConfigurationError(
                f"Destination {str(destination)!r} is not below the "
                f"project root {os.fspath(self.root_path)!r}"
            )
        return path

    def _get_dates(
        self, src_filename: Path
    ) -> tuple[datetime.datetime | None, datetime.datetime]:
        return _get_last_modified(src_filename), self._updated_at(src_filename)

    def register_copy(
        self, resource: StrPath | PurePath, destination: StrPath | PurePath
    ) -> ArtifactId:
        """Register copying ``resource`` verbatim to ``destination``."""
        self._check_not_committing(destination)
        source = self.to_source_path(resource)
        destination = self._to_destination_path(destination)

        src_filename = self.get_source_filename(source)
        dst_filename = self.get_destination_filename(destination)
        if _same_file(src_filename, dst_filename):
            raise CopyTargetIsSourceError(src_filename, dst_filename)

        artifact_id = artifact_id_from_path(source)
        last_modified, updated_at = self._get_dates(src_filename)
        is_stale = self.is_stale(destination, source)
        # A current copy has nothing to copy from, unless a copy of the same
        # resource to another destination is still queued
        is_queued = any(
            action.artifact_id == artifact_id
            for action in self._build_actions.values()
        )

        artifact = Artifact(
            artifact_id=artifact_id,
            destination_path=destination,
            source_path=source if is_stale or is_queued else destination,
            last_modified=last_modified,
            updated_at=updated_at,
        )
        self._artifacts[artifact_id] = artifact
        if is_stale:
            self._build_actions[destination] = BuildAction(artifact_id, null_renderer)
        reporter.report_artifact(artifact, is_current=not is_stale)
        return artifact_id

    def register_compiled(
        self,
        destination: StrPath | PurePath,
        resource: StrPath | PurePath,
        compiler: Compiler,
        renderer: Renderer,
    ) -> ArtifactId:
        """Register a page compiled from ``resource`` and rendered by
        ``renderer`` into ``destination``.

        The compiler is run even if the destination is current: later rules
        may need the metadata.
        """
        self._check_not_committing(destination)
        source = self.to_source_path(resource)
        destination = self._to_destination_path(destination)
        artifact_id = artifact_id_from_path(source)

        try:
            metadata = dict(compiler(self, source))
        except SiteforgeException:
            raise
        except Exception as exc:
            raise CompilerError(str(exc) or repr(exc), source) from exc
        reporter.report_metadata(source, metadata)

        src_filename = self.get_source_filename(source)
        last_modified, updated_at = self._get_dates(src_filename)
        is_stale = self.is_stale(destination, source)
        # check_mtime also probes every template of the renderer
        is_stale = renderer.check_mtime(self, destination) or is_stale

        artifact = Artifact(
            artifact_id=artifact_id,
            destination_path=destination,
            source_path=source,
            metadata=metadata,
            last_modified=last_modified,
            updated_at=updated_at,
        )
        self._artifacts[artifact_id] = artifact
        if is_stale:
            self._build_actions[destination] = BuildAction(artifact_id, renderer)
        reporter.report_artifact(artifact, is_current=not is_stale)
        return artifact_id

    def add_rule(self, rule: Rule) -> Self:
        """Run ``rule`` now.

        Once a rule has failed, further rules are skipped.  The first error is
        kept and raised by :meth:`commit`.
        """
        if self._error is not None:
            return self
        with default_reporter(self.verbosity), reporter.process_rule(rule):
            try:
                rule(self)
            except CopyTargetIsSourceError:
                raise
            except Exception as exc:
                exc_info = sys.exc_info()
                assert exc_info[0] is not None
                self._error = exc
                self.failure_controller.store_failure(
                    describe_rule(rule), exc_info  # type: ignore[arg-type]
                )
                reporter.report_failure(exc_info)  # type: ignore[arg-type]
        return self

    then = add_rule

    def render_with_template(
        self, template_name: str, context: TemplateValuesType
    ) -> str:
        """Render a context with a specific template and return it."""
        return self.env.render_template(template_name, context)

    def commit(self) -> int:
        """Perform all pending build actions.

        Returns the number of actions performed.
        """
        error, self._error = self._error, None
        if error is not None:
            raise error

        with default_reporter(self.verbosity), reporter.build("commit", self):
            if not self._build_actions:
                reporter.report_nothing_to_build()
                count = 0
            else:
                count = self._commit_actions()
        self.failure_controller.clear_all()
        return count

    finish = commit

    def _commit_actions(self) -> int:
        artifacts = self._artifacts
        self._artifacts = dict(
            sorted(artifacts.items(), key=lambda item: item[1].updated_at)
        )
        # sorted() is stable: equal dates keep registration order
        actions = sorted(
            self._build_actions.items(),
            key=lambda item: artifacts[item[1].artifact_id].updated_at,
        )
        self._build_actions.clear()

        reporter.report_output_path(self.output_path)
        self._committing = True
        try:
            for destination, action in actions:
                self._commit_action(destination, action)
        finally:
            self._committing = False
        return len(actions)

    def _commit_action(self, destination: PurePosixPath, action: BuildAction) -> None:
        artifact = self._artifacts[action.artifact_id]
        dst_filename = self.get_destination_filename(destination)

        contents: str | None = None
        if not action.is_copy:
            metadata = dict(artifact.metadata)
            metadata["ROOT_PREFIX"] = self.url_root
            reporter.report_debug_info("metadata", metadata)
            with Context(self, artifact):
                contents = action.renderer.render(self, metadata)

        try:
            dst_filename.parent.mkdir(parents=True, exist_ok=True)
            if contents is not None:
                reporter.report_write(artifact, dst_filename)
                with _replace_atomically(dst_filename) as f:
                    f.write(contents.encode("utf-8"))
            else:
                src_filename = self.get_source_filename(artifact.source_path)
                if _same_file(src_filename, dst_filename):
                    raise CopyTargetIsSourceError(src_filename, dst_filename)
                reporter.report_copy(artifact, dst_filename)
                with _replace_atomically(
                    dst_filename, mode_from=src_filename
                ) as f, src_filename.open("rb") as sf:
                    shutil.copyfileobj(sf, f)
        except OSError as exc:
            raise CommitError(dst_filename, exc) from exc
