"""
CLI interface for journal recall.

Usage:
    recall add "Couldn't sleep again before the presentation" -t work
    recall find "trouble sleeping"
    recall grep "presentation"
    recall get %3f2a9c81d0e4
"""

import hashlib
import json
import os
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .api import Recall
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Document, EmotionLabel, EmotionSignal

# Characters of entry text shown per result line
PREVIEW_CHARS = 80


# Quiet by default; RECALL_VERBOSE=1 enables debug logging
if os.environ.get("RECALL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"recall {version('recall-engine')}")
        raise typer.Exit()


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


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="recall",
    help="Journal recall with chunk-aware semantic and full-text search.",
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
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="RECALL_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Journal recall with chunk-aware semantic and full-text search."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    Optional[int],
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return (default: [search] k)"
    )
]

BoostOption = Annotated[
    Optional[float],
    typer.Option(
        "--recency",
        min=0.0, max=1.0,
        help="Recency weight in [0, 1] (default: [search] recency_boost)"
    )
]


def _get_recall() -> Recall:
    """Open the store, turning setup errors into a clean exit."""
    import atexit

    try:
        rc = Recall(_get_store_override())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(rc.close)
    return rc


def _text_content_id(content: str) -> str:
    """Content-addressed entry id: %{sha256[:12]}."""
    return "%" + hashlib.sha256(content.encode("utf-8")).hexdigest()[:12]


def _parse_timestamp(value: str) -> float:
    """Epoch seconds, or an ISO 8601 date/datetime (naive means UTC)."""
    try:
        return float(value)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _preview(text: str) -> str:
    line = " ".join(text.split())
    if len(line) > PREVIEW_CHARS:
        line = line[:PREVIEW_CHARS - 3] + "..."
    return line


def _print_matches(rc: Recall, matches: list, *, chunks: bool = False) -> None:
    """Print (id, score[, chunk_id]) results with a text preview."""
    docs = rc.get_many([m[0] for m in matches])
    if _get_json_output():
        rows = []
        for m in matches:
            row: dict[str, Any] = {"id": m[0], "score": round(m[1], 6)}
            if chunks:
                row["chunk_id"] = m.chunk_id
                row["source"] = m.source
            doc = docs.get(m[0])
            row["text"] = doc.text if doc else None
            rows.append(row)
        typer.echo(json.dumps(rows, indent=2))
        return
    if not matches:
        typer.echo("No results.", err=True)
        return
    width = max(len(m[0]) for m in matches)
    for m in matches:
        doc = docs.get(m[0])
        preview = _preview(doc.text) if doc else ""
        typer.echo(f"{m[1]:.3f}  {m[0]:<{width}}  {preview}")


def _document_dict(doc: Document, chunk_ids: list[str]) -> dict:
    return {
        "id": doc.id,
        "timestamp": doc.timestamp,
        "text": doc.text,
        "emotion": {
            "label": doc.emotion.label.value,
            "confidence": doc.emotion.confidence,
            "valence": doc.emotion.valence,
            "arousal": doc.emotion.arousal,
            "prosody": doc.emotion.prosody,
        },
        "tags": list(doc.tags),
        "duration": doc.duration,
        "chunks": chunk_ids,
    }


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    text: Annotated[str, typer.Argument(help="Entry text, or '-' to read stdin")],
    id: Annotated[Optional[str], typer.Option(
        "--id", "-i",
        help="Entry id (default: content hash)"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag (repeatable)"
    )] = None,
    emotion: Annotated[EmotionLabel, typer.Option(
        "--emotion", "-e",
        help="Emotion label"
    )] = EmotionLabel.NEUTRAL,
    confidence: Annotated[float, typer.Option(help="Emotion confidence in [0, 1]")] = 0.5,
    valence: Annotated[float, typer.Option(help="Valence in [-1, 1]")] = 0.0,
    arousal: Annotated[float, typer.Option(help="Arousal in [0, 1]")] = 0.5,
    timestamp: Annotated[Optional[str], typer.Option(
        "--timestamp",
        help="Authored time: epoch seconds or ISO 8601 (default: now)"
    )] = None,
    duration: Annotated[Optional[float], typer.Option(
        "--duration",
        help="Audio duration in seconds"
    )] = None,
    defer: Annotated[bool, typer.Option(
        "--defer",
        help="Queue embeddings for 'recall pending' instead of embedding now"
    )] = False,
):
    """
    Add a journal entry (or replace an entry with the same id).

    \b
    Examples:
        recall add "Rough day, the deadline moved up" -t work -e anxious --confidence 0.8
        cat entry.txt | recall add - --id 2026-10-18
    """
    if text == "-":
        text = sys.stdin.read()
    doc = Document(
        id=id or _text_content_id(text),
        text=text,
        emotion=EmotionSignal(emotion, confidence, valence, arousal),
        timestamp=_parse_timestamp(timestamp) if timestamp else datetime.now(timezone.utc).timestamp(),
        tags=tuple(tag or ()),
        duration=duration,
    )

    rc = _get_recall()
    result = rc.add(doc, defer=defer)

    if _get_json_output():
        typer.echo(json.dumps(asdict(result), indent=2))
        return
    typer.echo(doc.id)
    if result.queued:
        typer.echo(
            f"{result.embedded}/{result.chunks} chunks embedded, "
            f"{result.queued} queued (run 'recall pending')",
            err=True,
        )


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Search query text")],
    limit: LimitOption = None,
    recency: BoostOption = None,
):
    """
    Find entries by meaning, falling back to full-text search.

    \b
    Examples:
        recall find "worried about money"
        recall find "exam stress" -n 10 --recency 0.0
    """
    rc = _get_recall()
    hits = rc.find(query, limit, recency_boost=recency)
    _print_matches(rc, hits, chunks=True)


@app.command()
def grep(
    query: Annotated[str, typer.Argument(help="Words or \"quoted phrases\"")],
    limit: LimitOption = None,
    recency: BoostOption = None,
):
    """Full-text (BM25) search, blended with recency."""
    rc = _get_recall()
    _print_matches(rc, rc.search_text(query, limit, recency_boost=recency))


@app.command()
def tags(
    tag: Annotated[Optional[list[str]], typer.Argument(
        help="Tags to search for (omit to list all tags)"
    )] = None,
    exact: Annotated[bool, typer.Option(
        "--exact", "-x",
        help="Match whole tags only (default: substring)"
    )] = False,
    limit: LimitOption = None,
):
    """List tags, or find the most recent entries with any of the given tags."""
    rc = _get_recall()
    if not tag:
        all_tags = rc.list_tags()
        if _get_json_output():
            typer.echo(json.dumps(all_tags))
        else:
            for t in all_tags:
                typer.echo(t)
        return
    _print_matches(rc, rc.search_by_tags(tag, limit, exact=exact))


@app.command()
def emotion(
    label: Annotated[EmotionLabel, typer.Argument(help="Emotion label")],
    limit: LimitOption = None,
):
    """Entries with an emotion, ranked by confidence and recency."""
    rc = _get_recall()
    _print_matches(rc, rc.search_by_emotion(label, limit))


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Entry id")],
):
    """Show an entry and its embedded chunks."""
    rc = _get_recall()
    doc = rc.get(id)
    if doc is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    chunk_ids = rc.chunk_ids(id)

    if _get_json_output():
        typer.echo(json.dumps(_document_dict(doc, chunk_ids), indent=2))
        return
    typer.echo(f"id: {doc.id}")
    typer.echo(f"time: {_format_time(doc.timestamp)}")
    typer.echo(
        f"emotion: {doc.emotion.label.value} ({doc.emotion.confidence:.2f}), "
        f"valence {doc.emotion.valence:+.2f}, arousal {doc.emotion.arousal:.2f}"
    )
    if doc.tags:
        typer.echo(f"tags: {', '.join(doc.tags)}")
    if doc.duration is not None:
        typer.echo(f"duration: {doc.duration:.1f}s")
    typer.echo(f"chunks: {len(chunk_ids)} embedded")
    typer.echo("")
    typer.echo(doc.text)


@app.command("del")
def delete(
    id: Annotated[str, typer.Argument(help="Entry id")],
):
    """Delete an entry and its embeddings."""
    rc = _get_recall()
    if not rc.delete(id):
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {id}")


@app.command()
def tag(
    id: Annotated[str, typer.Argument(help="Entry id")],
    tags: Annotated[list[str], typer.Argument(help="New tags (replace existing)")],
):
    """Replace an entry's tags."""
    rc = _get_recall()
    doc = rc.tag(id, tags)
    if doc is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{id}: {', '.join(doc.tags)}")


@app.command()
def stats():
    """Show store statistics."""
    rc = _get_recall()
    info = rc.stats()
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    for key, value in info.items():
        typer.echo(f"{key}: {value}")


@app.command()
def pending(
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum chunks to embed in this run"
    )] = 50,
    retry: Annotated[bool, typer.Option(
        "--retry",
        help="Move failed (dead letter) chunks back to the queue first"
    )] = False,
    list_failed: Annotated[bool, typer.Option(
        "--list-failed",
        help="List failed chunks and exit"
    )] = False,
):
    """Embed queued chunks."""
    rc = _get_recall()

    if list_failed:
        failed = rc.list_failed()
        if _get_json_output():
            typer.echo(json.dumps(failed, indent=2))
        else:
            for item in failed:
                typer.echo(f"{item['id']}  attempts={item['attempts']}  {item['last_error']}")
        return

    if retry:
        count = rc.retry_failed()
        typer.echo(f"Requeued {count} failed chunks", err=True)

    result = rc.process_pending(limit=limit)
    if _get_json_output():
        typer.echo(json.dumps(result, indent=2))
        return
    typer.echo(
        f"processed {result['processed']}, failed {result['failed']}, "
        f"abandoned {result['abandoned']}, remaining {rc.pending_count()}"
    )
    for error in result["errors"]:
        typer.echo(f"  {error}", err=True)


@app.command()
def migrate():
    """Apply pending schema migrations to the store database."""
    from .database import Database
    from .migrations import SCHEMA_VERSION

    store_path = _get_store_override() or get_default_store_path()
    config = load_or_create_config(Path(store_path).resolve())
    with Database(config.db_path, migrate=False) as db:
        applied = db.migrate()

    if _get_json_output():
        typer.echo(json.dumps({"applied": applied, "version": SCHEMA_VERSION}))
    elif applied:
        typer.echo(f"Applied migrations {', '.join(map(str, applied))}; schema is at version {SCHEMA_VERSION}")
    else:
        typer.echo(f"Schema is up to date (version {SCHEMA_VERSION})")


def _config_dict(cfg: StoreConfig) -> dict:
    return {
        "file": str(cfg.config_path),
        "store": str(cfg.path),
        "embedding_dimension": cfg.embedding_dimension,
        "embedding": asdict(cfg.embedding) if cfg.embedding else None,
        "chunking": asdict(cfg.chunking),
        "search": asdict(cfg.search),
    }


@app.command()
def config(
    path: Annotated[Optional[str], typer.Argument(
        help="Config value to get (e.g. 'file', 'search', 'search.recency_boost')"
    )] = None,
):
    """
    Show configuration. Optionally get a specific value by path.

    \b
    Examples:
        recall config                 # Show all config
        recall config file            # Config file location
        recall config chunking.max_tokens_per_chunk
    """
    store_path = _get_store_override() or get_default_store_path()
    cfg = load_or_create_config(Path(store_path).resolve())
    value: Any = _config_dict(cfg)

    if path:
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                typer.echo(f"Unknown config path: {path}", err=True)
                raise typer.Exit(1)
            value = value[part]

    if isinstance(value, (dict, list)):
        typer.echo(json.dumps(value, indent=2))
    else:
        typer.echo(value)


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        # Full traceback to file, clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="recall CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
