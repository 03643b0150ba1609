"""Compilers turn a resource into metadata.

A compiler is called as ``compiler(builder, path)`` with the project relative
path of the resource and returns a dictionary.  Compilers whose output is
rendered must put the rendered text into the ``body`` entry.
"""
from __future__ import annotations

import dataclasses
import datetime
import json
import os
import subprocess
from pathlib import PurePosixPath
from typing import Any
from typing import Iterable
from typing import TYPE_CHECKING

import jinja2
import mistune
import yaml
from markupsafe import Markup

from siteforge.exception import CompilerError

if TYPE_CHECKING:
    from siteforge.builder import Builder
    from siteforge.typing import Compiler
    from siteforge.typing import Metadata


PANDOC = "pandoc"


def _run_pandoc(args: list[str], path: PurePosixPath) -> str:
    try:
        proc = subprocess.run(
            [PANDOC, *args],
            capture_output=True,
            text=True,
            encoding="utf-8",
            check=False,
        )
    except OSError as exc:
        raise CompilerError(f"failed to execute pandoc: {exc}", path) from exc
    if proc.returncode != 0:
        raise CompilerError(
            f"pandoc exited with status {proc.returncode}: {proc.stderr.strip()}",
            path,
        )
    return proc.stdout


def _flatten_inlines(inlines: Iterable[Any]) -> str:
    return "".join(_flatten_inline(inline) for inline in inlines)


def _flatten_inline(inline: dict[str, Any]) -> str:
    tag = inline.get("t")
    if tag == "Str":
        return str(inline["c"])
    if tag == "Space":
        return " "
    if tag in ("SoftBreak", "LineBreak"):
        return "\n"
    if tag in (
        "Emph",
        "Strong",
        "Strikeout",
        "Superscript",
        "Subscript",
        "SmallCaps",
        "Underline",
    ):
        return _flatten_inlines(inline["c"])
    # Quoted, Cite, Code, Math, links, images, notes, spans...
    return ""


def flatten_meta_value(value: dict[str, Any]) -> Any:
    """Converts a pandoc ``MetaValue`` into a plain JSON value.

    Inline runs become strings, block content is dropped.
    """
    tag = value.get("t")
    content = value.get("c")
    if tag == "MetaMap":
        return {key: flatten_meta_value(v) for key, v in content.items()}
    if tag == "MetaList":
        return [flatten_meta_value(v) for v in content]
    if tag == "MetaBool":
        return bool(content)
    if tag == "MetaString":
        return str(content)
    if tag == "MetaInlines":
        return _flatten_inlines(content)
    return ""


def pandoc() -> Compiler:
    """Compile a pandoc markdown file with optional metadata in its preamble:

    .. code-block:: text

        ---
        title: example title
        author: Jane Doe
        date: June 15, 2019
        ---

        Lorem ipsum.
    """

    def compile_pandoc(builder: Builder, path: PurePosixPath) -> Metadata:
        filename = os.fspath(builder.get_source_filename(path))
        output = _run_pandoc(["-t", "json", filename], path)
        try:
            document = json.loads(output)
            meta = document.get("meta", {})
            metadata = {key: flatten_meta_value(v) for key, v in meta.items()}
        except (ValueError, AttributeError, KeyError, TypeError) as exc:
            raise CompilerError(f"malformed pandoc output: {exc}", path) from exc
        metadata["body"] = _run_pandoc([filename], path)
        return metadata

    return compile_pandoc


def _split_front_matter(text: str) -> tuple[str | None, str]:
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip() != "---":
        return None, text
    for n, line in enumerate(lines[1:], 1):
        if line.rstrip() in ("---", "..."):
            return "".join(lines[1:n]), "".join(lines[n + 1 :])
    return None, text


def _plain_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _plain_value(v) for key, v in value.items()}
    if isinstance(value, list):
        return [_plain_value(v) for v in value]
    if isinstance(value, datetime.datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, datetime.date):
        return value.isoformat()
    return value


def markdown() -> Compiler:
    """Compile markdown with ``mistune``, reading metadata from YAML front
    matter delimited by ``---`` lines.
    """
    render = mistune.create_markdown()

    def compile_markdown(builder: Builder, path: PurePosixPath) -> Metadata:
        filename = builder.get_source_filename(path)
        text = filename.read_text(encoding="utf-8")
        front_matter, body = _split_front_matter(text)
        metadata: Metadata = {}
        if front_matter is not None:
            try:
                data = yaml.safe_load(front_matter)
            except yaml.YAMLError as exc:
                raise CompilerError(f"invalid front matter: {exc}", path) from exc
            if data is not None and not isinstance(data, dict):
                raise CompilerError("front matter must be a mapping", path)
            metadata.update(_plain_value(data or {}))
        metadata["body"] = render(body)
        return metadata

    return compile_markdown


def compiler_seq(*compilers: Compiler) -> Compiler:
    """Run several compilers on the same resource and merge their results.

    Later compilers win on conflicting keys.
    """

    def compile_seq(builder: Builder, path: PurePosixPath) -> Metadata:
        metadata: Metadata = {}
        for compiler in compilers:
            metadata.update(compiler(builder, path))
        return metadata

    return compile_seq


def snapshot(name: str) -> Compiler:
    """Record the resource's artifact in the snapshot ``name``."""

    def compile_snapshot(builder: Builder, path: PurePosixPath) -> Metadata:
        builder.add_to_snapshot(name, builder.artifact_id_for(path))
        return {}

    return compile_snapshot


@dataclasses.dataclass
class RssChannel:
    title: str
    description: str
    link: str
    ttl: int = 1800


@dataclasses.dataclass
class RssItem:
    title: str
    description: str
    link: str
    pub_date: str


EPOCH_RFC822 = "Thu, 01 Jan 1970 00:00:00 +0000"

RSS_TEMPLATE = """\
<?xml version="1.0" encoding="UTF-8" ?>
<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom">
<channel>
  <title>{{ channel.title }}</title>
  <description><![CDATA[{{ channel.description|cdata }}]]></description>
  <link>{{ channel.link }}</link>
  <atom:link href="{{ channel.link }}/{{ path }}" rel="self" type="application/rss+xml" />
  <pubDate>{{ epoch }}</pubDate>
  <ttl>{{ channel.ttl }}</ttl>
{%- for item in items %}
  <item>
    <title>{{ item.title }}</title>
    <description><![CDATA[{{ item.description|cdata }}]]></description>
    <link>{{ item.link }}</link>
    <guid>{{ item.link }}</guid>
    <pubDate>{{ item.pub_date }}</pubDate>
  </item>
{%- endfor %}
</channel>
</rss>
"""


def _cdata(value: str) -> Markup:
    return Markup(str(value).replace("]]>", "]]]]><![CDATA[>"))


def _rss_environment() -> jinja2.Environment:
    env = jinja2.Environment(autoescape=True, keep_trailing_newline=True)
    env.filters["cdata"] = _cdata
    return env


def _string_value(metadata: Metadata, key: str, default: str) -> str:
    value = metadata.get(key)
    return value if isinstance(value, str) else default


def rss_feed(snapshot_name: str, channel: RssChannel) -> Compiler:
    """Render an RSS 2.0 feed of the artifacts in a snapshot into ``body``.

    Each item takes its ``title``, ``body`` and ``date`` from the artifact's
    metadata.
    """
    template = _rss_environment().from_string(RSS_TEMPLATE)

    def compile_rss_feed(builder: Builder, path: PurePosixPath) -> Metadata:
        # raises NoSuchSnapshotError if no rule populated it
        artifact_ids = builder.snapshots.get(snapshot_name)
        items = []
        for artifact_id in artifact_ids:
            artifact = builder.artifacts[artifact_id]
            metadata = artifact.metadata
            items.append(
                RssItem(
                    title=_string_value(
                        metadata, "title", f"No title, uuid: {artifact_id}"
                    ),
                    description=_string_value(metadata, "body", ""),
                    link=f"{channel.link}/{artifact.destination_path.as_posix()}",
                    pub_date=_string_value(metadata, "date", EPOCH_RFC822),
                )
            )
        body = template.render(
            channel=channel, items=items, path=path.as_posix(), epoch=EPOCH_RFC822
        )
        return {"body": body}

    return compile_rss_feed
