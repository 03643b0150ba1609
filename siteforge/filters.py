from __future__ import annotations

import datetime
from typing import Any
from typing import Mapping

import jinja2
from jinja2.runtime import Context as TemplateContext

from siteforge.context import config_proxy
from siteforge.context import get_ctx


def sort_by_key(value: Any, attr: str) -> list[Any]:
    """Sort a list of mappings by the value stored under ``attr``.

    Items lacking the key sort first, in their original order.
    """
    if isinstance(value, (str, bytes, Mapping)) or not hasattr(value, "__iter__"):
        raise jinja2.TemplateRuntimeError("sort_by_key: value is not a list")
    values = list(value)
    if not all(isinstance(item, Mapping) for item in values):
        raise jinja2.TemplateRuntimeError(
            "sort_by_key: value is not a dictionary/map"
        )

    def key(item: Mapping[str, Any]) -> tuple[int, Any]:
        if attr not in item or item[attr] is None:
            return (0, 0)
        return (1, item[attr])

    try:
        return sorted(values, key=key)
    except TypeError as exc:
        raise jinja2.TemplateRuntimeError(
            f"sort_by_key: values of {attr!r} are not comparable"
        ) from exc


DATE_INPUT_FORMAT = "%Y-%m-%d %H:%M:%S"


def date_fmt(value: Any, format: str) -> str:
    """Format a timestamp with a ``strftime`` format string.

    Usage: ``{{ date|date_fmt("%Y-%m-%d") }}``.  The value may be an integer
    unix timestamp, a ``datetime`` or a string in ``%Y-%m-%d %H:%M:%S`` form.
    """
    if isinstance(value, datetime.datetime):
        date = value
    elif isinstance(value, bool):
        raise jinja2.TemplateRuntimeError("date_fmt: unsupported date value")
    elif isinstance(value, int):
        date = datetime.datetime.fromtimestamp(value)
    elif isinstance(value, str):
        try:
            date = datetime.datetime.strptime(value, DATE_INPUT_FORMAT)
        except ValueError as exc:
            raise jinja2.TemplateRuntimeError(
                f"date_fmt: cannot parse date {value!r}"
            ) from exc
    else:
        raise jinja2.TemplateRuntimeError("date_fmt: unsupported date value")
    return date.strftime(format)


@jinja2.pass_context
def url_prefix(context: TemplateContext) -> str:
    """The URL root prefix injected into every rendered page."""
    prefix = context.get("ROOT_PREFIX")
    if prefix is None:
        return ""
    return str(prefix)


def url_to(path: str | None = None) -> str:
    """URL of ``path``, or of the artifact being rendered, below the URL root."""
    ctx = get_ctx()
    if ctx is None:
        raise RuntimeError("No context found")
    if path is None:
        path = ctx.artifact.destination_path.as_posix()
    root = ctx.builder.url_root.rstrip("/")
    return f"{root}/{path.lstrip('/')}"


def register(jinja_env: jinja2.Environment) -> None:
    jinja_env.filters["sort_by_key"] = sort_by_key
    jinja_env.filters["date_fmt"] = date_fmt
    jinja_env.globals["url_prefix"] = url_prefix
    jinja_env.globals["url_to"] = url_to
    jinja_env.globals["config"] = config_proxy
