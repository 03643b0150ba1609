from __future__ import annotations

import datetime
import os
import stat
import subprocess
import uuid
from pathlib import PurePosixPath

import pytest

from siteforge.builder import artifact_id_from_path
from siteforge.builder import Builder
from siteforge.builder import git_updated_at
from siteforge.builder import SnapshotIndex
from siteforge.builder import UNKNOWN_UPDATED_AT
from siteforge.compilers import compiler_seq
from siteforge.compilers import rss_feed
from siteforge.compilers import RssChannel
from siteforge.compilers import snapshot
from siteforge.context import get_ctx
from siteforge.exception import CommitError
from siteforge.exception import CompilerError
from siteforge.exception import ConfigurationError
from siteforge.exception import CopyTargetIsSourceError
from siteforge.exception import NoSuchSnapshotError
from siteforge.exception import RegistrationError
from siteforge.renderers import Custom
from siteforge.renderers import LoadAndApplyTemplate
from siteforge.renderers import null_renderer
from siteforge.renderers import pass_body
from siteforge.renderers import Pipeline
from siteforge.routes import SetExtension
from siteforge.rules import build_rss_feed
from siteforge.rules import match_pattern


def read_body(builder, path):
    return {"body": builder.get_source_filename(path).read_text()}


def set_mtime(path, mtime):
    os.utime(path, ns=(mtime, mtime))


NOW_NS = 1_600_000_000 * 10**9


@pytest.fixture
def source(project_path):
    path = project_path / "a.md"
    path.write_text("hello")
    return path


def test_artifact_id_is_deterministic():
    assert artifact_id_from_path("posts/a.md") == artifact_id_from_path("posts/a.md")
    assert artifact_id_from_path("posts/a.md") == artifact_id_from_path(
        PurePosixPath("posts/a.md")
    )
    assert artifact_id_from_path("posts/a.md") != artifact_id_from_path("posts/b.md")
    assert artifact_id_from_path("posts/a.md") == uuid.uuid3(
        uuid.NAMESPACE_OID, "posts/a.md"
    )


class TestIsStale:
    def test_missing_destination(self, builder, source):
        assert builder.is_stale("a.html", "a.md")

    def test_destination_newer(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)
        assert not builder.is_stale("a.html", "a.md")

    def test_source_newer(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS + 10**9)
        set_mtime(dst, NOW_NS)
        assert builder.is_stale("a.html", "a.md")

    def test_equal_mtimes_are_current(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS)
        set_mtime(dst, NOW_NS)
        assert not builder.is_stale("a.html", "a.md")

    def test_missing_source(self, builder, output_path):
        output_path.joinpath("a.html").write_text("")
        assert builder.is_stale("a.html", "missing.md")

    def test_force(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)
        assert builder.set_force_generate(True) is builder
        assert builder.is_stale("a.html", "a.md")

    def test_reports_probe(self, builder, source, reporter):
        builder.is_stale("a.html", "a.md")
        (check,) = [data for event, data in reporter.buffer if event == "staleness-check"]
        assert check["is_stale"]
        assert check["source"] == builder.root_path / "a.md"


class TestRegisterCopy:
    def test_stale_copy_queues_action(self, builder, project_path):
        project_path.joinpath("style.css").write_text("body {}")
        artifact_id = builder.register_copy("style.css", "css/style.css")

        artifact = builder.artifacts[artifact_id]
        assert artifact.source_path == PurePosixPath("style.css")
        assert artifact.destination_path == PurePosixPath("css/style.css")
        action = builder.build_actions[PurePosixPath("css/style.css")]
        assert action.artifact_id == artifact_id
        assert action.is_copy

        assert builder.commit() == 1
        assert builder.output_path.joinpath("css/style.css").read_text() == "body {}"

    def test_current_copy_is_cached(self, builder, project_path, output_path):
        src = project_path / "style.css"
        src.write_text("body {}")
        dst = output_path / "style.css"
        dst.write_text("body {}")
        set_mtime(src, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)

        artifact_id = builder.register_copy("style.css", "style.css")
        assert builder.artifacts[artifact_id].source_path == PurePosixPath("style.css")
        assert builder.artifacts[artifact_id].destination_path == PurePosixPath(
            "style.css"
        )
        assert not builder.build_actions

    def test_cached_copy_records_destination_as_source(
        self, builder, project_path, output_path
    ):
        src = project_path / "main.css"
        src.write_text("body {}")
        dst = output_path / "style.css"
        dst.write_text("body {}")
        set_mtime(src, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)

        artifact_id = builder.register_copy("main.css", "style.css")
        assert builder.artifacts[artifact_id].source_path == PurePosixPath("style.css")

    def test_rooted_resource_is_made_relative(self, builder, project_path):
        project_path.joinpath("style.css").write_text("")
        artifact_id = builder.register_copy(project_path / "style.css", "style.css")
        assert artifact_id == artifact_id_from_path("style.css")
        assert builder.artifacts[artifact_id].source_path == PurePosixPath("style.css")

    def test_copy_onto_itself(self, builder):
        with pytest.raises(CopyTargetIsSourceError):
            builder.register_copy("_site/style.css", "style.css")

    def test_copy_onto_itself_is_not_latched(self, builder):
        def rule(builder):
            builder.register_copy("_site/style.css", "style.css")

        with pytest.raises(CopyTargetIsSourceError):
            builder.add_rule(rule)
        assert builder.error is None

    def test_cached_copy_keeps_queued_copy(self, builder, project_path, output_path):
        src = project_path / "style.css"
        src.write_text("body {}")
        dst = output_path / "old.css"
        dst.write_text("stale")
        set_mtime(src, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)

        builder.register_copy("style.css", "new.css")
        artifact_id = builder.register_copy("style.css", "old.css")
        assert builder.artifacts[artifact_id].source_path == PurePosixPath("style.css")

        assert builder.commit() == 1
        assert output_path.joinpath("new.css").read_text() == "body {}"


class TestRegisterCompiled:
    def test_compiler_runs_for_current_pages(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS)
        set_mtime(builder.env.get_template_filename("default"), NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)

        calls = []

        def compiler(builder, path):
            calls.append(path)
            return {"title": "A", "body": "hello"}

        artifact_id = builder.register_compiled(
            "a.html", "a.md", compiler, LoadAndApplyTemplate("default")
        )
        assert calls == [PurePosixPath("a.md")]
        assert builder.artifacts[artifact_id].metadata == {
            "title": "A",
            "body": "hello",
        }
        assert not builder.build_actions

    def test_template_newer_than_destination(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)
        set_mtime(builder.env.get_template_filename("default"), NOW_NS + 2 * 10**9)

        builder.register_compiled("a.html", "a.md", read_body, LoadAndApplyTemplate("default"))
        assert list(builder.build_actions) == [PurePosixPath("a.html")]

    def test_custom_renderer_is_always_stale(self, builder, source, output_path):
        dst = output_path / "a.html"
        dst.write_text("")
        set_mtime(source, NOW_NS)
        set_mtime(dst, NOW_NS + 10**9)

        builder.register_compiled("a.html", "a.md", read_body, pass_body)
        assert list(builder.build_actions) == [PurePosixPath("a.html")]

    def test_one_action_per_destination(self, builder, project_path):
        for name in "abc":
            project_path.joinpath(f"{name}.md").write_text(name)

        renderer = LoadAndApplyTemplate("default")
        builder.register_compiled("x.html", "a.md", read_body, renderer)
        builder.register_compiled("y.html", "b.md", read_body, renderer)
        c_id = builder.register_compiled("x.html", "c.md", read_body, renderer)

        assert list(builder.build_actions) == [
            PurePosixPath("x.html"),
            PurePosixPath("y.html"),
        ]
        assert builder.build_actions[PurePosixPath("x.html")].artifact_id == c_id
        assert builder.commit() == 2
        assert builder.output_path.joinpath("x.html").read_text() == "<p>c</p>"

    def test_rooted_destination_is_made_relative(self, builder, source, project_path):
        builder.register_compiled(
            project_path / "a.html", "a.md", read_body, pass_body
        )
        assert list(builder.build_actions) == [PurePosixPath("a.html")]

    def test_destination_outside_root(self, builder, source, tmp_path):
        with pytest.raises(ConfigurationError):
            builder.register_compiled(tmp_path / "a.html", "a.md", read_body, pass_body)

    def test_compiler_errors_carry_the_path(self, builder):
        with pytest.raises(CompilerError, match="missing.md"):
            builder.register_compiled("a.html", "missing.md", read_body, pass_body)


def test_snapshot_index():
    snapshots = SnapshotIndex()
    a = artifact_id_from_path("a.md")
    b = artifact_id_from_path("b.md")

    assert "posts" not in snapshots
    with pytest.raises(NoSuchSnapshotError):
        snapshots.get("posts")
    with pytest.raises(KeyError):
        snapshots.get("posts")

    snapshots.add("empty")
    assert snapshots.get("empty") == ()

    snapshots.append("posts", b)
    snapshots.append("posts", a)
    snapshots.append("posts", b)
    assert snapshots.get("posts") == (b, a, b)
    assert list(snapshots) == ["empty", "posts"]


class TestAddRule:
    def test_returns_self(self, builder):
        assert builder.add_rule(lambda builder: None) is builder
        assert builder.then(lambda builder: None) is builder

    def test_first_error_is_latched(self, builder, reporter):
        calls = []

        def failing(builder):
            calls.append("failing")
            raise ValueError("boom")

        def later(builder):
            calls.append("later")

        assert builder.add_rule(failing).add_rule(later) is builder
        assert calls == ["failing"]
        assert isinstance(builder.error, ValueError)
        assert len(reporter.get_failures()) == 1

        with pytest.raises(ValueError, match="boom"):
            builder.commit()
        # the latch is taken by commit
        assert builder.error is None
        assert builder.commit() == 0

    def test_failure_is_stored_until_next_commit(self, builder, reporter):
        def failing(builder):
            raise ValueError("boom")

        builder.add_rule(failing)
        (failure,) = builder.failure_controller.iter_failures()
        assert failure.rule.endswith("failing")
        assert failure.exception == "ValueError: boom"

        with pytest.raises(ValueError):
            builder.commit()
        builder.commit()
        assert builder.failure_controller.iter_failures() == []

    def test_reports_rules(self, builder, reporter):
        def rule(builder):
            pass

        builder.add_rule(rule)
        events = [event for event, data in reporter.get_major_events()]
        assert events == ["enter-rule", "leave-rule"]


@pytest.fixture
def umask_022():
    umask = os.umask(0o022)
    yield
    os.umask(umask)


class TestCommit:
    def test_nothing_to_build(self, builder, reporter):
        assert builder.commit() == 0
        assert [event for event, data in reporter.get_major_events()] == [
            "start-build",
            "nothing-to-build",
            "finish-build",
        ]

    def test_end_to_end(self, project_path, config, reporter):
        project_path.joinpath("posts").mkdir()
        project_path.joinpath("posts/a.md").write_text("hello")

        def site(builder):
            builder.add_rule(
                match_pattern(
                    r"^posts/",
                    SetExtension("html"),
                    LoadAndApplyTemplate("default"),
                    read_body,
                )
            )

        builder = Builder(project_path, config, updated_at=lambda filename: UNKNOWN_UPDATED_AT)
        site(builder)
        assert builder.commit() == 1
        output = project_path / "_site/posts/a.html"
        assert output.read_text() == "<p>hello</p>"

        reporter.clear()
        builder = Builder(project_path, config, updated_at=lambda filename: UNKNOWN_UPDATED_AT)
        site(builder)
        assert builder.commit() == 0
        assert "nothing-to-build" in [event for event, data in reporter.buffer]

    def test_actions_run_in_updated_at_order(self, project_path, config, reporter):
        dates = {
            "old.md": datetime.datetime(2019, 1, 1, tzinfo=datetime.timezone.utc),
            "new.md": datetime.datetime(2021, 1, 1, tzinfo=datetime.timezone.utc),
        }
        for name in ("new.md", "undated.md", "old.md", "undated2.md"):
            project_path.joinpath(name).write_text(name)

        def updated_at(filename):
            return dates.get(filename.name, UNKNOWN_UPDATED_AT)

        builder = Builder(project_path, config, updated_at=updated_at)
        for name in ("new.md", "undated.md", "old.md", "undated2.md"):
            builder.register_compiled(
                PurePosixPath(name).with_suffix(".html"), name, read_body, pass_body
            )
        assert builder.commit() == 4

        written = [
            artifact.source_path.name for artifact in reporter.get_written_artifacts()
        ]
        assert written == ["undated.md", "undated2.md", "old.md", "new.md"]
        assert [a.source_path.name for a in builder.artifacts.values()] == written

    def test_queue_is_drained(self, builder, source):
        builder.register_compiled("a.html", "a.md", read_body, pass_body)
        assert builder.commit() == 1
        assert not builder.build_actions
        assert builder.commit() == 0

    def test_root_prefix_is_injected(self, builder, source):
        def render(builder, context):
            return f"{context['ROOT_PREFIX']}|{context['body']}"

        builder.set_url_root("https://example.org")
        artifact_id = builder.register_compiled("a.html", "a.md", read_body, Custom(render))
        builder.commit()
        assert builder.output_path.joinpath("a.html").read_text() == (
            "https://example.org|hello"
        )
        # the stored metadata is untouched
        assert "ROOT_PREFIX" not in builder.artifacts[artifact_id].metadata

    def test_context_is_pushed_while_rendering(self, builder, source):
        seen = []

        def render(builder, context):
            ctx = get_ctx()
            seen.append((ctx.builder, ctx.artifact.destination_path))
            return ""

        builder.register_compiled("a.html", "a.md", read_body, Custom(render))
        builder.commit()
        assert seen == [(builder, PurePosixPath("a.html"))]
        assert get_ctx() is None

    def test_pipeline(self, builder, source, project_path):
        project_path.joinpath("templates/layout").write_text("<html>{{ body }}</html>")
        renderer = Pipeline(
            [LoadAndApplyTemplate("default"), LoadAndApplyTemplate("layout")]
        )
        builder.register_compiled("a.html", "a.md", read_body, renderer)
        builder.commit()
        assert builder.output_path.joinpath("a.html").read_text() == (
            "<html><p>hello</p></html>"
        )

    def test_registration_while_committing(self, builder, source):
        def render(builder, context):
            builder.register_copy("a.md", "b.md")
            return ""

        builder.register_compiled("a.html", "a.md", read_body, Custom(render))
        with pytest.raises(RegistrationError):
            builder.commit()

    def test_creates_parent_directories(self, builder, source):
        builder.register_compiled("deep/er/a.html", "a.md", read_body, pass_body)
        builder.commit()
        assert builder.output_path.joinpath("deep/er/a.html").read_text() == "hello"

    def test_io_errors_are_wrapped(self, builder, source, output_path):
        output_path.joinpath("deep").write_text("not a directory")
        builder.register_compiled("deep/a.html", "a.md", read_body, pass_body)
        with pytest.raises(CommitError) as exc_info:
            builder.commit()
        assert "deep" in str(exc_info.value)

    def test_overwrites_existing_output(self, builder, source, output_path):
        output_path.joinpath("a.html").write_text("old")
        set_mtime(output_path / "a.html", 0)
        builder.register_compiled("a.html", "a.md", read_body, pass_body)
        builder.commit()
        assert output_path.joinpath("a.html").read_text() == "hello"
        assert [p.name for p in output_path.iterdir() if p.name.startswith(".__")] == []

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    @pytest.mark.usefixtures("umask_022")
    def test_output_permissions(self, builder, source, project_path, output_path):
        style = project_path / "style.css"
        style.write_text("body {}")
        style.chmod(0o640)
        builder.register_copy("style.css", "style.css")
        builder.register_compiled("a.html", "a.md", read_body, pass_body)
        assert builder.commit() == 2

        def mode(name):
            return stat.S_IMODE(output_path.joinpath(name).stat().st_mode)

        assert mode("a.html") == 0o644
        assert mode("style.css") == 0o640

    def test_finish_is_commit(self, builder):
        assert builder.finish() == 0


def test_feed_before_snapshot_is_latched(builder, reporter):
    channel = RssChannel("Blog", "A blog", "https://example.org")
    builder.add_rule(build_rss_feed("rss.xml", rss_feed("posts", channel)))
    with pytest.raises(NoSuchSnapshotError, match="posts"):
        builder.commit()


def test_feed_lists_snapshot(builder, project_path):
    project_path.joinpath("posts").mkdir()
    project_path.joinpath("posts/a.md").write_text("first")
    channel = RssChannel("Blog", "A blog", "https://example.org")

    builder.add_rule(
        match_pattern(
            r"^posts/",
            SetExtension("html"),
            LoadAndApplyTemplate("default"),
            compiler_seq(read_body, snapshot("posts")),
        )
    ).add_rule(build_rss_feed("rss.xml", rss_feed("posts", channel)))
    assert builder.commit() == 2

    feed = builder.output_path.joinpath("rss.xml").read_text()
    assert "<link>https://example.org/posts/a.html</link>" in feed
    assert "<![CDATA[first]]>" in feed


def test_missing_templates_directory(tmp_path):
    with pytest.raises(ConfigurationError, match="templates"):
        Builder(tmp_path)


def test_output_path_is_created(project_path, config):
    config["PROJECT"]["output_path"] = "public/www"
    builder = Builder(project_path, config, updated_at=lambda filename: UNKNOWN_UPDATED_AT)
    assert builder.output_path == project_path.resolve() / "public/www"
    assert builder.output_path.is_dir()


def test_builder_takes_settings_from_config(project_path, config):
    config["BUILD"]["force"] = True
    config["BUILD"]["verbosity"] = 3
    config["PROJECT"]["url_root"] = "/blog"
    builder = Builder(project_path, config)
    assert builder.force_generate
    assert builder.verbosity == 3
    assert builder.url_root == "/blog"
    assert builder.set_verbosity(0) is builder
    assert builder.verbosity == 0


class TestWithoutReporter:
    def test_nothing_to_build_is_shown(self, builder, capsys):
        assert builder.set_verbosity(0).commit() == 0
        assert "Nothing to be generated" in capsys.readouterr().out

    @pytest.mark.parametrize("verbosity, shown", [(0, False), (1, True)])
    def test_verbosity(self, builder, project_path, capsys, verbosity, shown):
        project_path.joinpath("style.css").write_text("body {}")
        builder.set_verbosity(verbosity)
        builder.add_rule(lambda b: b.register_copy("style.css", "style.css"))
        assert builder.commit() == 1
        assert ("copying to" in capsys.readouterr().out) is shown

    def test_failures_go_to_stderr(self, builder, capsys):
        def rule(builder):
            raise ValueError("boom")

        builder.set_verbosity(0).add_rule(rule)
        assert "ValueError: boom" in capsys.readouterr().err


def test_add_snapshot(builder, project_path):
    builder.add_snapshot("posts")
    assert builder.snapshots.get("posts") == ()

    channel = RssChannel("Blog", "A blog", "https://example.org")
    builder.add_rule(build_rss_feed("rss.xml", rss_feed("posts", channel)))
    assert builder.error is None
    assert builder.commit() == 1
    feed = builder.output_path.joinpath("rss.xml").read_text()
    assert "<item>" not in feed


class TestGitUpdatedAt:
    def test_parses_date(self, tmp_path, monkeypatch):
        def run(args, **kwargs):
            assert args[:2] == ["git", "log"]
            return subprocess.CompletedProcess(args, 0, "2020-01-02T03:04:05+02:00\n", "")

        monkeypatch.setattr(subprocess, "run", run)
        assert git_updated_at(tmp_path / "a.md") == datetime.datetime(
            2020, 1, 2, 1, 4, 5, tzinfo=datetime.timezone.utc
        )

    def test_utc_suffix(self, tmp_path, monkeypatch):
        def run(args, **kwargs):
            return subprocess.CompletedProcess(args, 0, "2020-01-02T03:04:05Z\n", "")

        monkeypatch.setattr(subprocess, "run", run)
        assert git_updated_at(tmp_path / "a.md") == datetime.datetime(
            2020, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc
        )

    @pytest.mark.parametrize("stdout", ["", "yesterday\n"])
    def test_unparsable(self, tmp_path, monkeypatch, stdout):
        def run(args, **kwargs):
            return subprocess.CompletedProcess(args, 0, stdout, "")

        monkeypatch.setattr(subprocess, "run", run)
        assert git_updated_at(tmp_path / "a.md") == UNKNOWN_UPDATED_AT

    def test_git_failure(self, tmp_path, monkeypatch):
        def run(args, **kwargs):
            return subprocess.CompletedProcess(args, 128, "", "not a git repository")

        monkeypatch.setattr(subprocess, "run", run)
        assert git_updated_at(tmp_path / "a.md") == UNKNOWN_UPDATED_AT

    def test_git_missing(self, tmp_path, monkeypatch):
        def run(args, **kwargs):
            raise FileNotFoundError("git")

        monkeypatch.setattr(subprocess, "run", run)
        assert git_updated_at(tmp_path / "a.md") == UNKNOWN_UPDATED_AT


def test_null_renderer_build_action_is_copy(builder, project_path):
    project_path.joinpath("a.txt").write_text("text")
    builder.register_copy("a.txt", "a.txt")
    assert builder.build_actions[PurePosixPath("a.txt")].renderer is null_renderer
