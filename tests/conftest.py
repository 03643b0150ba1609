from __future__ import annotations

import pytest

from siteforge.builder import Builder
from siteforge.builder import UNKNOWN_UPDATED_AT
from siteforge.environment.config import Config
from siteforge.reporter import BufferReporter


def no_git(filename):
    return UNKNOWN_UPDATED_AT


@pytest.fixture
def project_path(tmp_path):
    path = tmp_path / "project"
    templates = path / "templates"
    templates.mkdir(parents=True)
    templates.joinpath("default").write_text("<p>{{ body }}</p>")
    return path


@pytest.fixture
def config(project_path):
    return Config.from_project(project_path)


@pytest.fixture
def builder(project_path, config):
    return Builder(project_path, config, updated_at=no_git)


@pytest.fixture
def output_path(builder):
    return builder.output_path


@pytest.fixture
def reporter():
    with BufferReporter(verbosity=4) as reporter:
        yield reporter
