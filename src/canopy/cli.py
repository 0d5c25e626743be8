"""CLI entrypoint for canopy."""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import click
from pydantic import ValidationError

from canopy.config.models import EngineSettings
from canopy.config.store import SettingsStore
from canopy.engine import TreeEngine
from canopy.flattener import FlatEntry
from canopy.paths import settings_path
from canopy.runtime_logging import configure_runtime_logging
from canopy.sizes import Known
from canopy.sources.base import HierarchicalDataSource
from canopy.sources.filesystem import FileSystemDataSource, FsEntry
from canopy.sources.memory import TreeData, TreeDataSource
from canopy.version import __version__


@dataclass(frozen=True, slots=True)
class JsonNode:
    id: str
    label: str


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--log-level", default=None, help="off, error, warning, info or debug")
@click.option("--log-file", default=None, help="JSONL log destination, - for stderr")
def main(log_level: str | None, log_file: str | None) -> None:
    """canopy: lazy, virtualized views over large trees."""
    if log_level is not None or log_file is not None:
        configure_runtime_logging(level=log_level, log_file=log_file)


@main.command()
def about() -> None:
    """Show version and project summary."""
    payload = {
        "name": "canopy",
        "version": __version__,
        "description": "Hierarchical lazy-loading data virtualization engine",
    }
    click.echo(json.dumps(payload, indent=2))


@main.command("settings-path")
def settings_path_command() -> None:
    """Print settings file path."""
    click.echo(str(settings_path()))


@main.group()
def settings() -> None:
    """Inspect or change engine settings."""


@settings.command("show")
def settings_show() -> None:
    for key, value in SettingsStore().load().setting_items():
        click.echo(f"{key} = {value}")


@settings.command("set")
@click.argument("key")
@click.argument("value")
def settings_set(key: str, value: str) -> None:
    """Set a dotted KEY (e.g. fetch.page_size) to VALUE."""
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    try:
        SettingsStore().update(key, parsed)
    except KeyError as exc:
        raise click.ClickException(str(exc.args[0]))
    except ValidationError as exc:
        raise click.ClickException(f"Invalid value for {key}: {exc.errors()[0]['msg']}")
    click.echo(f"{key} = {parsed}")


@settings.command("reset")
@click.argument("key")
def settings_reset(key: str) -> None:
    """Restore a dotted KEY to its default value."""
    try:
        updated = SettingsStore().reset(key)
    except KeyError as exc:
        raise click.ClickException(str(exc.args[0]))
    value = dict(updated.setting_items())[key]
    click.echo(f"{key} = {value}")


@main.command()
@click.argument("directory", required=False, default=".")
@click.option("--depth", type=int, default=0, show_default=True, help="Directory levels to expand")
@click.option("--start", type=int, default=0, show_default=True, help="First flat row to print")
@click.option("--count", type=int, default=40, show_default=True, help="Rows to print")
@click.option("--page-size", type=int, default=None, help="Override fetch.page_size")
@click.option("--ignore", "ignores", multiple=True, help="Extra gitignore-style pattern")
def browse(
    directory: str,
    depth: int,
    start: int,
    count: int,
    page_size: int | None,
    ignores: tuple[str, ...],
) -> None:
    """Print a window of a directory tree, loading only what is shown."""
    root = Path(directory).expanduser().resolve()
    if not root.is_dir():
        raise click.ClickException(f"Not a directory: {root}")
    source = FileSystemDataSource(root, extra_ignores=list(ignores))
    lines = asyncio.run(
        _render(source, _settings(page_size), depth if depth > 0 else None, start, count, _fs_label)
    )
    for line in lines:
        click.echo(line)


@main.command()
@click.argument("path")
@click.option("--depth", type=int, default=0, show_default=True, help="Levels to expand")
@click.option("--expand-all", is_flag=True, help="Expand every level")
@click.option("--flattened", is_flag=True, help="Serve the tree pre-flattened")
@click.option("--start", type=int, default=0, show_default=True, help="First flat row to print")
@click.option("--count", type=int, default=40, show_default=True, help="Rows to print")
@click.option("--page-size", type=int, default=None, help="Override fetch.page_size")
def dump(
    path: str,
    depth: int,
    expand_all: bool,
    flattened: bool,
    start: int,
    count: int,
    page_size: int | None,
) -> None:
    """Print a window of a nested JSON tree ({"name": ..., "children": [...]})."""
    file_path = Path(path).expanduser().resolve()
    if not file_path.exists():
        raise click.ClickException(f"File not found: {file_path}")
    try:
        tree = load_json_tree(file_path)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON in {file_path}: {exc}")
    source = TreeDataSource(tree, hierarchy_format="flattened" if flattened else "nested")
    levels: int | None = None if expand_all else (depth if depth > 0 else None)
    lines = asyncio.run(
        _render(source, _settings(page_size), levels, start, count, _json_label, expand_all=expand_all)
    )
    for line in lines:
        click.echo(line)


def load_json_tree(path: Path) -> TreeData[JsonNode]:
    data = json.loads(path.read_text(encoding="utf-8"))
    roots = data if isinstance(data, list) else [data]
    tree: TreeData[JsonNode] = TreeData(id_getter=lambda node: node.id)
    ids = itertools.count()
    stack: list[tuple[JsonNode | None, list[Any]]] = [(None, roots)]
    while stack:
        parent, batch = stack.pop()
        for raw in batch:
            if isinstance(raw, dict):
                label = str(raw.get("name", raw.get("id", "?")))
                children = list(raw.get("children") or [])
            else:
                label, children = str(raw), []
            node = JsonNode(id=str(next(ids)), label=label)
            tree.add_item(parent, node)
            if children:
                stack.append((node, children))
    return tree


def _settings(page_size: int | None) -> EngineSettings:
    settings = SettingsStore().load()
    if page_size is None:
        return settings
    data = settings.model_dump()
    data["fetch"]["page_size"] = page_size
    data["cache"]["max_cached_rows"] = max(data["cache"]["max_cached_rows"], page_size)
    try:
        return EngineSettings.model_validate(data)
    except ValidationError as exc:
        raise click.ClickException(f"Invalid --page-size: {exc.errors()[0]['msg']}")


async def _render(
    source: HierarchicalDataSource[Any],
    settings: EngineSettings,
    levels: int | None,
    start: int,
    count: int,
    label: Callable[[Any], str],
    *,
    expand_all: bool = False,
) -> list[str]:
    engine = TreeEngine(source, settings)
    try:
        if levels is not None or expand_all:
            await engine.ensure_loaded(0, 1)
            roots = engine.total_size()
            if isinstance(roots, Known):
                await engine.ensure_loaded(0, roots.count)
                items = [entry.item for entry in engine.flatten(0, roots.count) if entry.loaded]
                await engine.expand_recursively(items, None if expand_all else levels - 1)
        await engine.request_viewport(start, count)
        return [_format(engine, entry, label) for entry in engine.flatten(start, start + count)]
    finally:
        engine.close()


def _format(engine: TreeEngine, entry: FlatEntry, label: Callable[[Any], str]) -> str:
    indent = "  " * entry.depth
    if not entry.loaded or entry.identity is None:
        return f"{indent}  ..."
    if engine.is_expanded(entry.identity):
        marker = "-"
    elif engine.source.has_children(entry.item):
        marker = "+"
    else:
        marker = " "
    return f"{indent}{marker} {label(entry.item)}  [{engine.key_of(entry.identity)}]"


def _fs_label(item: FsEntry) -> str:
    return f"{item.name}/" if item.is_dir else item.name


def _json_label(item: JsonNode) -> str:
    return item.label


if __name__ == "__main__":
    main()
