"""
CLI interface for trove.

Usage:
    trove add "Title" --content "Body text" -t tag1 -t tag2
    trove search "query text"
    trove list --type article
    trove reconcile
"""

import json
import os
import sys
import time
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import KnowledgeBase
from .errors import TroveError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Note, NoteRow, SearchResult

# Set TROVE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("TROVE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="trove",
    help="Personal knowledge store with keyword and semantic search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="TROVE_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Personal knowledge store with keyword and semantic search."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

TypeOption = Annotated[
    Optional[str],
    typer.Option("--type", "-T", help="Content type (note, article, journal, ...)")
]

LimitOption = Annotated[
    int,
    typer.Option("--limit", "-n", help="Maximum results to return")
]

TagOption = Annotated[
    Optional[list[str]],
    typer.Option("--tag", "-t", help="Tag (repeatable)")
]


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------

def _note_dict(note: Note, include_content: bool = True) -> dict:
    data = note.metadata.to_frontmatter()
    data["file_path"] = note.file_path
    if include_content:
        data["content"] = note.content
    return data


def _row_dict(row: NoteRow) -> dict:
    return {
        "id": row.id,
        "type": row.type,
        "title": row.title,
        "created": row.created,
        "updated": row.updated,
        "tags": row.tag_list,
        "category": row.category,
        "status": row.status,
        "file_path": row.file_path,
    }


def _format_note(note: Note) -> str:
    meta = note.metadata
    lines = [f"{meta.title}  ({meta.id})", f"  type: {meta.type}  category: {meta.category}"]
    if meta.tags:
        lines.append(f"  tags: {', '.join(meta.tags)}")
    if meta.links:
        lines.append(f"  links: {', '.join(meta.links)}")
    if meta.status:
        lines.append(f"  status: {meta.status}")
    lines.append(f"  file: {note.file_path}")
    if note.content.strip():
        lines.append("")
        lines.append(note.content.rstrip())
    return "\n".join(lines)


def _format_row(row: NoteRow) -> str:
    return f"{row.created[:10]}  {row.id}  [{row.type}] {row.title}"


def _format_result(result: SearchResult) -> str:
    meta = result.note.metadata
    line = f"{result.score:.4f}  {meta.id}  [{meta.type}] {meta.title}"
    for highlight in result.highlights:
        line += f"\n          {highlight}"
    return line


def _get_kb() -> KnowledgeBase:
    """Open the store, handling errors gracefully."""
    import atexit

    try:
        kb = KnowledgeBase(_store_override)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(kb.close)
    return kb


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Note title")],
    content: Annotated[Optional[str], typer.Option(
        "--content", "-c",
        help="Note body (read from stdin if omitted and stdin is piped)"
    )] = None,
    type: Annotated[str, typer.Option("--type", "-T", help="Content type")] = "note",
    tag: TagOption = None,
    category: Annotated[Optional[str], typer.Option("--category", "-C")] = None,
    source_url: Annotated[Optional[str], typer.Option("--url", help="Source URL")] = None,
    author: Annotated[Optional[str], typer.Option("--author")] = None,
    gist: Annotated[Optional[str], typer.Option("--gist", help="One-line summary")] = None,
):
    """
    Add a note.

    \b
    Examples:
        trove add "Meeting notes" -c "Discussed roadmap" -t work
        cat article.md | trove add "Article" --type article --url https://...
    """
    if content is None and not sys.stdin.isatty():
        content = sys.stdin.read()
    kb = _get_kb()
    try:
        note = kb.create(
            title,
            content or "",
            type=type,
            tags=tag,
            category=category,
            source_url=source_url,
            author=author,
            gist=gist,
            input_source="text",
        )
    except TroveError as e:
        _fail(str(e))
    if _get_json_output():
        typer.echo(json.dumps(_note_dict(note), indent=2))
    else:
        typer.echo(f"Added {note.id}: {note.file_path}")


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Note id")],
):
    """Show a note."""
    kb = _get_kb()
    note = kb.get(id)
    if note is None:
        _fail(f"Note not found: {id}")
    if _get_json_output():
        typer.echo(json.dumps(_note_dict(note), indent=2))
    else:
        typer.echo(_format_note(note))


@app.command("list")
def list_notes(
    type: TypeOption = None,
    status: Annotated[Optional[str], typer.Option("--status", help="saved, read or archived")] = None,
    category: Annotated[Optional[str], typer.Option("--category", "-C")] = None,
    since: Annotated[Optional[str], typer.Option("--since", help="Created on or after (YYYY-MM-DD)")] = None,
    until: Annotated[Optional[str], typer.Option("--until", help="Created on or before (YYYY-MM-DD)")] = None,
    limit: LimitOption = 20,
    offset: Annotated[int, typer.Option("--offset")] = 0,
):
    """List notes, newest first."""
    kb = _get_kb()
    rows = kb.list(
        type=type,
        status=status,
        category=category,
        date_from=since,
        date_to=until,
        limit=limit,
        offset=offset,
    )
    if _get_json_output():
        typer.echo(json.dumps([_row_dict(r) for r in rows], indent=2))
    else:
        for row in rows:
            typer.echo(_format_row(row))


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    mode: Annotated[str, typer.Option(
        "--mode", "-m",
        help="keyword, semantic or hybrid"
    )] = "hybrid",
    type: TypeOption = None,
    limit: LimitOption = 10,
):
    """
    Search notes.

    \b
    Examples:
        trove search "sourdough"                 # Hybrid (keyword + semantic)
        trove search "sourdough" -m keyword      # Full-text only
        trove search "bread" --type article
    """
    kb = _get_kb()
    try:
        results = kb.search(query, mode=mode, type=type, limit=limit)
    except TroveError as e:
        _fail(str(e))
    if _get_json_output():
        typer.echo(json.dumps([
            {**_note_dict(r.note, include_content=False), "score": r.score, "highlights": r.highlights}
            for r in results
        ], indent=2))
    else:
        for result in results:
            typer.echo(_format_result(result))


@app.command()
def update(
    id: Annotated[str, typer.Argument(help="Note id")],
    title: Annotated[Optional[str], typer.Option("--title")] = None,
    content: Annotated[Optional[str], typer.Option("--content", "-c")] = None,
    tag: TagOption = None,
    category: Annotated[Optional[str], typer.Option("--category", "-C")] = None,
):
    """Change a note's title, body, tags or category."""
    changes = {}
    if title is not None:
        changes["title"] = title
    if tag:
        changes["tags"] = list(tag)
    if category is not None:
        changes["category"] = category
    if not changes and content is None:
        _fail("Nothing to update")
    kb = _get_kb()
    try:
        note = kb.update(id, content=content, **changes)
    except TroveError as e:
        _fail(str(e))
    if _get_json_output():
        typer.echo(json.dumps(_note_dict(note), indent=2))
    else:
        typer.echo(f"Updated {note.id}")


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Note id")],
):
    """Delete a note from all stores."""
    kb = _get_kb()
    try:
        kb.delete(id)
    except TroveError as e:
        _fail(str(e))
    typer.echo(f"Deleted {id}")


@app.command()
def link(
    id_a: Annotated[str, typer.Argument(help="First note id")],
    id_b: Annotated[str, typer.Argument(help="Second note id")],
):
    """Link two notes to each other."""
    kb = _get_kb()
    try:
        a, b = kb.link(id_a, id_b)
    except TroveError as e:
        _fail(str(e))
    typer.echo(f"Linked {a.metadata.title!r} <-> {b.metadata.title!r}")


@app.command()
def status(
    id: Annotated[str, typer.Argument(help="Note id")],
    value: Annotated[str, typer.Argument(help="saved, read or archived")],
):
    """Set a note's lifecycle status."""
    kb = _get_kb()
    try:
        note = kb.set_status(id, value)
    except TroveError as e:
        _fail(str(e))
    typer.echo(f"{note.id}: {note.metadata.status}")


@app.command()
def reconcile():
    """Re-sync the index and vectors with the note files."""
    kb = _get_kb()
    stats = kb.reconcile()
    if _get_json_output():
        typer.echo(json.dumps(stats.to_dict(), indent=2))
    else:
        typer.echo(
            f"scanned {stats.scanned}, added {stats.added}, updated {stats.updated}, "
            f"skipped {stats.skipped}, deleted {stats.deleted}"
        )
        if stats.unreadable:
            typer.echo(f"{stats.unreadable} unreadable file(s), see log", err=True)


@app.command()
def watch(
    initial: Annotated[bool, typer.Option(
        "--initial/--no-initial",
        help="Run a full reconciliation before watching"
    )] = True,
):
    """Watch the note tree and reconcile changes until interrupted."""
    kb = _get_kb()
    if initial:
        stats = kb.reconcile()
        typer.echo(f"Initial pass: {stats.to_dict()}", err=True)
    watcher = kb.watch()
    typer.echo(f"Watching {kb.file_store.base_dir} (Ctrl+C to stop)", err=True)
    try:
        while watcher.is_running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        kb.close()


@app.command()
def config():
    """Show the store configuration."""
    kb = _get_kb()
    cfg = kb.config
    data = {
        "store": str(cfg.path),
        "config_file": str(cfg.config_path),
        "knowledge": str(cfg.knowledge_path),
        "database": str(cfg.database_path),
        "vectors": str(cfg.vectors_path),
        "embedding": cfg.embedding.name,
        "dimension": cfg.dimension,
        "notes": kb.index_store.count(),
        "vector_count": kb.vector_index.count(),
    }
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
    else:
        for key, value in data.items():
            typer.echo(f"{key}: {value}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="trove CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
