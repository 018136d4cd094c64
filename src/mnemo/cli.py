"""mnemo CLI -- store, search and maintain memories from the terminal.

Exit codes: 0 success, 1 error, 2 conflicts detected on add.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from mnemo import __version__
from mnemo.config import Config, mnemo_home
from mnemo.embedding import describe_embedder, download_model, has_onnx_model, model_dir_for
from mnemo.errors import MnemoError, ValidationError
from mnemo.memory_store import MemoryStore
from mnemo.project import detect_project

logger = logging.getLogger("mnemo.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFLICT = 2

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format=LOG_FORMAT,
    )
    logging.getLogger("mnemo").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(args) -> Config:
    config = Config.load(path=getattr(args, "config", None))
    if getattr(args, "db_path", None):
        config = config.with_overrides(database_path=args.db_path)
    return config


def _open_store(args) -> MemoryStore:
    config = _load_config(args)
    project_id = detect_project(getattr(args, "project", None))
    logger.debug("Using project %s, database %s", project_id, config.database_path)
    return MemoryStore(config, project_id=project_id)


def _emit(args, payload: Any, text: Optional[str] = None) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    elif text is not None:
        print(text)


def _parse_metadata(raw: Optional[str]):
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"metadata is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ValidationError("metadata must be a JSON object")
    return value


def _format_age(created_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format a datetime as relative age string (e.g. '2d ago', '1w ago')."""
    if not created_at:
        return ""
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    seconds = int((now - created_at).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    days = seconds // 86400
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def _preview(content: str, width: int = 100) -> str:
    flat = content.replace("\n", " ")
    return flat if len(flat) <= width else flat[: width - 3] + "..."


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_add(args) -> int:
    """Store a memory, refusing near-duplicates unless --force."""
    with _open_store(args) as store:
        result = store.add(" ".join(args.content), _parse_metadata(args.metadata), bypass_conflict=args.force)
    if result.is_added:
        _emit(args, result.to_dict(), f"Added {result.id}")
        return EXIT_OK

    lines = [f"Conflicts with {len(result.conflicts)} existing memor{'y' if len(result.conflicts) == 1 else 'ies'}:"]
    for c in result.conflicts:
        lines.append(f"  {c.similarity:.3f}  {c.id}  {_preview(c.content, 80)}")
    lines.append("Use --force to add anyway, or 'mnemo update <id> <text>' to replace one.")
    _emit(args, result.to_dict(), "\n".join(lines))
    return EXIT_CONFLICT


def cmd_search(args) -> int:
    """Search memories by meaning (and keywords with --hybrid)."""
    with _open_store(args) as store:
        results = store.search(
            " ".join(args.query),
            limit=args.limit,
            recency_weight=args.recency,
            hybrid=args.hybrid,
        )
    payload = {"results": [r.to_dict() for r in results], "count": len(results)}
    if results:
        rows = [
            f"{r.score:7.4f}  {_format_age(r.created_at):>9}  {r.id}  {_preview(r.content)}"
            for r in results
        ]
        text = "\n".join(rows) + f"\n\n{len(results)} result(s)"
    else:
        text = "No results."
    _emit(args, payload, text)
    return EXIT_OK


def cmd_get(args) -> int:
    """Show one memory."""
    with _open_store(args) as store:
        record = store.get(args.id)
    lines = [
        f"id:         {record.id}",
        f"project:    {record.project_id}",
        f"created:    {record.created_at.isoformat()} ({_format_age(record.created_at)})",
        f"updated:    {record.updated_at.isoformat()}",
    ]
    if record.metadata:
        lines.append(f"metadata:   {json.dumps(record.metadata, ensure_ascii=False)}")
    lines.extend(["", record.content])
    _emit(args, record.to_dict(), "\n".join(lines))
    return EXIT_OK


def cmd_list(args) -> int:
    """List recent memories, newest first."""
    with _open_store(args) as store:
        records = store.list(limit=args.limit, all_projects=args.all)
    payload = {"memories": [r.to_dict() for r in records], "count": len(records)}
    if records:
        text = "\n".join(
            f"{_format_age(r.created_at):>9}  {r.id}  "
            + (f"[{r.project_id}] " if args.all else "")
            + _preview(r.content)
            for r in records
        )
    else:
        text = "No memories."
    _emit(args, payload, text)
    return EXIT_OK


def cmd_update(args) -> int:
    """Replace the text (and optionally metadata) of a memory."""
    with _open_store(args) as store:
        record = store.update(args.id, " ".join(args.content), _parse_metadata(args.metadata))
    _emit(
        args,
        {"status": "updated", "id": record.id, "updated_at": record.updated_at.isoformat()},
        f"Updated {record.id}",
    )
    return EXIT_OK


def cmd_delete(args) -> int:
    """Delete a memory."""
    with _open_store(args) as store:
        store.delete(args.id)
    _emit(args, {"status": "deleted", "id": args.id}, f"Deleted {args.id}")
    return EXIT_OK


def cmd_export(args) -> int:
    """Write memories to a JSON file."""
    with _open_store(args) as store:
        result = store.export_to_file(Path(args.path), all_projects=args.all)
    _emit(args, result, f"Exported {result['count']} memories to {result['filepath']}")
    return EXIT_OK


def cmd_import(args) -> int:
    """Load memories from a JSON file, skipping near-duplicates."""
    with _open_store(args) as store:
        stats = store.import_from_file(Path(args.path), bypass_conflict=args.force)
    text = (
        f"Imported {stats['imported']} of {stats['total']} "
        f"({stats['skipped_duplicates']} duplicate(s), {stats['skipped_invalid']} invalid)"
    )
    if stats["projects"]:
        text += f"\nProjects: {', '.join(stats['projects'])}"
    _emit(args, stats, text)
    return EXIT_OK


def cmd_validate(args) -> int:
    """Validate database integrity: SQLite PRAGMA + FTS5 checks."""
    with _open_store(args) as store:
        report = store.db.check_integrity()
        if not report["ok"] and args.repair:
            store.db.rebuild_lexical_index()
            report = store.db.check_integrity()
            report["repaired"] = True
        report["projects"] = store.db.projects()
    lines = [
        f"SQLite integrity:  {report['sqlite']}",
        f"FTS5 integrity:    {report['fts']}",
        f"Rows / indexed:    {report['rows']} / {report['indexed']}",
    ]
    for project_id, n in report["projects"].items():
        lines.append(f"  {project_id}: {n}")
    lines.append("OK" if report["ok"] else "FAILED (try --repair)")
    _emit(args, report, "\n".join(lines))
    return EXIT_OK if report["ok"] else EXIT_ERROR


def cmd_setup(args) -> int:
    """Create the data directory and database; optionally fetch the embedding model."""
    config = _load_config(args)
    home = mnemo_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    model_dir = model_dir_for(config.model_cache, config.embedding_model)
    if args.download_model:
        download_model(config.embedding_model, model_dir, quiet=args.json)

    with MemoryStore(config, project_id=detect_project(args.project)) as store:
        count = store.db.count()
        embedder = describe_embedder(store.embedder) if has_onnx_model(model_dir) else "not downloaded"
    payload = {
        "home": str(home),
        "database": str(config.database_path),
        "memories": count,
        "model_dir": str(model_dir),
        "model": embedder,
    }
    _emit(args, payload, "\n".join(f"{k:9} {v}" for k, v in payload.items()))
    return EXIT_OK


def cmd_version(args) -> int:
    _emit(args, {"version": __version__}, f"mnemo {__version__}")
    return EXIT_OK


# ---------------------------------------------------------------------------


class _Parser(argparse.ArgumentParser):
    """Usage errors exit 1; exit status 2 is reserved for conflicts."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_ERROR, f"{self.prog}: error: {message}\n")


def _add_global_options(parser: argparse.ArgumentParser, top_level: bool) -> None:
    """Options accepted both before and after the subcommand.

    Subcommand copies default to SUPPRESS so they never overwrite a value
    given before the subcommand.
    """
    def default(value):
        return value if top_level else argparse.SUPPRESS

    parser.add_argument("--json", action="store_true", default=default(False), help="Output as JSON")
    parser.add_argument("-p", "--project", default=default(None), help="Project scope (default: auto-detect)")
    parser.add_argument("--db-path", default=default(None), help="Database file (overrides config)")
    parser.add_argument(
        "--config", default=default(None), help="Config file (default: ~/.config/mnemo/config.toml)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=default(False), help="Debug logging")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    _add_global_options(common, top_level=False)

    parser = _Parser(
        prog="mnemo",
        description="mnemo -- local semantic memory with conflict detection",
    )
    _add_global_options(parser, top_level=True)
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    add_parser = subparsers.add_parser("add", parents=[common], help="Store a memory")
    add_parser.add_argument("content", nargs="+", help="Memory text")
    add_parser.add_argument("-m", "--metadata", help="JSON object stored alongside")
    add_parser.add_argument("-f", "--force", action="store_true", help="Skip conflict detection")

    search_parser = subparsers.add_parser("search", parents=[common], help="Search memories")
    search_parser.add_argument("query", nargs="+", help="Search text")
    search_parser.add_argument("-l", "--limit", type=int, default=10, help="Max results (default: 10)")
    search_parser.add_argument("--recency", type=float, default=None, help="Recency weight 0..1 (default: config)")
    search_parser.add_argument("--hybrid", action="store_true", help="Fuse semantic and keyword rankings")

    get_parser = subparsers.add_parser("get", parents=[common], help="Show a memory by id")
    get_parser.add_argument("id")

    list_parser = subparsers.add_parser("list", parents=[common], help="List recent memories")
    list_parser.add_argument("-l", "--limit", type=int, default=10, help="Max memories (default: 10)")
    list_parser.add_argument("--all", action="store_true", help="Across all projects")

    update_parser = subparsers.add_parser("update", parents=[common], help="Replace a memory's text")
    update_parser.add_argument("id")
    update_parser.add_argument("content", nargs="+", help="New text")
    update_parser.add_argument("-m", "--metadata", help="Replacement JSON metadata")

    delete_parser = subparsers.add_parser("delete", parents=[common], help="Delete a memory")
    delete_parser.add_argument("id")

    export_parser = subparsers.add_parser("export", parents=[common], help="Export memories to JSON")
    export_parser.add_argument("path")
    export_parser.add_argument("--all", action="store_true", help="Export every project")

    import_parser = subparsers.add_parser("import", parents=[common], help="Import memories from JSON")
    import_parser.add_argument("path")
    import_parser.add_argument("-f", "--force", action="store_true", help="Import near-duplicates too")

    validate_parser = subparsers.add_parser("validate", parents=[common], help="Check SQLite + FTS5 integrity")
    validate_parser.add_argument("--repair", action="store_true", help="Rebuild the FTS5 index if it is inconsistent")

    setup_parser = subparsers.add_parser("setup", parents=[common], help="Initialize data directory and database")
    setup_parser.add_argument("--download-model", action="store_true", help="Download the ONNX embedding model")

    subparsers.add_parser("version", parents=[common], help="Show version")
    return parser


commands = {
    "add": cmd_add,
    "search": cmd_search,
    "get": cmd_get,
    "list": cmd_list,
    "update": cmd_update,
    "delete": cmd_delete,
    "export": cmd_export,
    "import": cmd_import,
    "validate": cmd_validate,
    "setup": cmd_setup,
    "version": cmd_version,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command not in commands:
        parser.print_help()
        return EXIT_ERROR

    try:
        return commands[args.command](args)
    except (MnemoError, OSError) as e:
        if args.json:
            print(json.dumps({"error": str(e), "kind": type(e).__name__}))
        else:
            print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
