from __future__ import annotations

from pathlib import PurePosixPath
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Dict
from typing import Optional
from typing import Protocol
from typing import Tuple
from typing import Type
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from siteforge.builder import Builder

ExcInfo = Tuple[Type[BaseException], BaseException, Optional[TracebackType]]

# Ordered key/value map of JSON-like values produced by a compiler.
Metadata = Dict[str, Any]

Rule = Callable[["Builder"], None]


class Compiler(Protocol):
    """Turns a resource into metadata.

    Compilers used with a rendering pipeline must provide a ``body`` entry.
    """

    def __call__(self, builder: Builder, path: PurePosixPath) -> Metadata:
        ...


class RenderFunc(Protocol):
    """A custom render stage."""

    def __call__(self, builder: Builder, context: Metadata) -> str:
        ...
