from __future__ import annotations

import sys
from functools import cached_property
from typing import TYPE_CHECKING

from werkzeug.local import LocalProxy
from werkzeug.local import LocalStack

if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from _typeshed import Unused

    from siteforge.builder import Artifact
    from siteforge.builder import Builder
    from siteforge.environment import Environment
    from siteforge.environment.config import Config


_ctx_stack = LocalStack["Context"]()


def get_ctx() -> Context | None:
    """Returns the current context."""
    return _ctx_stack.top


@LocalProxy
def config_proxy() -> Config | None:
    """Returns the config of the current build."""
    ctx = get_ctx()
    if ctx is not None:
        return ctx.builder.config
    return None


class Context:
    """The context is a thread local object that tells renderers and template
    helpers which artifact is being produced, and by which builder.

    A context is pushed by the builder around the rendering of each pending
    artifact during commit.
    """

    def __init__(self, builder: Builder, artifact: Artifact):
        self.builder = builder
        self.artifact = artifact

    @cached_property
    def env(self) -> Environment:
        """The environment of the context."""
        return self.builder.env

    def push(self) -> None:
        _ctx_stack.push(self)

    @staticmethod
    def pop() -> None:
        _ctx_stack.pop()

    def __enter__(self) -> Self:
        self.push()
        return self

    def __exit__(self, exc_type: Unused, exc_value: Unused, tb: Unused) -> None:
        self.pop()
