from __future__ import annotations

from pathlib import Path
from pathlib import PurePath
from pathlib import PurePosixPath
from typing import Any
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from _typeshed import StrPath


def bool_from_string(val: Any, default: bool | None = None) -> bool | None:
    if val in (True, False, 1, 0):
        return bool(val)
    if isinstance(val, str):
        val = val.lower()
        if val in ("true", "yes", "1"):
            return True
        if val in ("false", "no", "0"):
            return False
    return default


def relative_to_root(path: StrPath | PurePath, root_path: StrPath) -> PurePosixPath:
    """Make ``path`` relative to ``root_path`` if it is rooted below it.

    Relative paths, and absolute paths outside the root, are returned
    unchanged (as posix paths).
    """
    path = Path(path)
    if path.is_absolute():
        try:
            path = path.relative_to(root_path)
        except ValueError:
            pass
    return PurePosixPath(path.as_posix())

