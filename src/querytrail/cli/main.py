"""
querytrail CLI

Command-line interface for analysing a project and browsing its queries.

Usage::

    querytrail analyse ./myproject          # Index + analyse, store the document
    querytrail search users ./myproject     # Queries containing "users"
    querytrail tree "findById (...)"        # Caller tree for one label
    querytrail import analysis.json         # Make a JSON document current
    querytrail stats                        # Show index statistics
    querytrail mcp                          # Start the MCP server
"""

import logging
import time
from pathlib import Path

import click

from querytrail.core.config import QuerytrailConfig
from querytrail.core.document import AnalysisDocument, DocumentStore
from querytrail.core.search import QuerySearchEngine, ResultFormatter
from querytrail.exceptions import DocumentError, IndexNotFoundError, QuerytrailError


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool, config: QuerytrailConfig | None = None) -> None:
    """Set up logging for the CLI session."""
    cfg = config or QuerytrailConfig.from_env()
    level = logging.DEBUG if verbose else getattr(logging, cfg.log_level, logging.INFO)
    logging.basicConfig(level=level, format=cfg.log_format)
    # Suppress noisy HTTP loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


# ---------------------------------------------------------------------------
# Top-level group
# ---------------------------------------------------------------------------

@click.group()
@click.version_option(package_name="querytrail")
@click.option(
    "--seed-layer",
    default=None,
    envvar="QUERYTRAIL_SEED_LAYER",
    help="Path substring selecting seed functions (default: '/repository/').",
)
@click.option(
    "--ambiguous-owner",
    type=click.Choice(["first", "reject"]),
    default=None,
    envvar="QUERYTRAIL_AMBIGUOUS_OWNER",
    help="What to do when several functions could own a query.",
)
@click.pass_context
def cli(ctx: click.Context, seed_layer: str | None, ambiguous_owner: str | None):
    """querytrail: trace SQL queries back to their entry points."""
    ctx.ensure_object(dict)
    config = QuerytrailConfig.from_env()
    if seed_layer:
        config.seed_layer = seed_layer
    if ambiguous_owner:
        config.ambiguous_owner_policy = ambiguous_owner
    ctx.obj["config"] = config


def _config(ctx: click.Context) -> QuerytrailConfig:
    return ctx.obj["config"]


# ---------------------------------------------------------------------------
# querytrail index
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("directory", default=".", type=click.Path(exists=True, file_okay=False))
@click.option("--cache-dir", type=click.Path(), default=None,
              help="Override sidecar index directory (default: DIRECTORY/.querytrail).")
@click.option("--force", is_flag=True, help="Force re-index all files, even if unchanged.")
@click.option("--dry-run", is_flag=True, help="Analyse code without writing the index.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def index(ctx: click.Context, directory: str, cache_dir: str | None,
          force: bool, dry_run: bool, verbose: bool):
    """Index functions and call sites in DIRECTORY.

    The index is stored in a .querytrail/ directory; source files are
    never modified.
    """
    config = _config(ctx)
    _configure_logging(verbose, config)

    from querytrail.core.indexer import IndexingPipeline  # noqa: E402

    pipeline = IndexingPipeline(
        root_dir=Path(directory).resolve(),
        cache_dir=Path(cache_dir).resolve() if cache_dir else None,
        dry_run=dry_run,
        force_reindex=force,
        config=config,
    )
    try:
        result = pipeline.run()
    finally:
        pipeline.index.close()
    click.echo(
        f"  {result.files_processed:,} processed, {result.files_skipped:,} up-to-date, "
        f"{result.files_removed:,} removed, "
        f"{result.functions_found:,} functions, {result.errors:,} errors"
    )


# ---------------------------------------------------------------------------
# querytrail analyse
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("directory", default=".", type=click.Path(exists=True, file_okay=False))
@click.option("-o", "--output", type=click.Path(dir_okay=False), default=None,
              help="Also write the analysis document to this file.")
@click.option("--layer", default=None, help="Seed layer for this run only.")
@click.option("--timeout", type=float, default=None,
              help="Seconds allowed for the call-graph build.")
@click.option("--no-reindex", is_flag=True, help="Use the existing index as-is.")
@click.option("--force", is_flag=True, help="Re-extract every source file.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def analyse(ctx: click.Context, directory: str, output: str | None, layer: str | None,
            timeout: float | None, no_reindex: bool, force: bool, verbose: bool):
    """Build the caller graph and query owners for DIRECTORY.

    The result becomes the current analysis document for 'search' and
    'tree'.
    """
    config = _config(ctx)
    if layer:
        config.seed_layer = layer
    _configure_logging(verbose, config)

    from querytrail.client import Querytrail  # noqa: E402

    client = Querytrail(config=config)
    try:
        result = client.analyse(
            directory, reindex=not no_reindex, force=force,
            timeout=timeout, show_progress=True,
        )
    except QuerytrailError as exc:
        _fail(str(exc))

    if output:
        Path(output).write_text(result.document.to_json(indent=2), encoding="utf-8")

    s = result.stats
    click.echo("─" * 50)
    click.echo("  QUERYTRAIL — Analysis")
    click.echo("─" * 50)
    click.echo(f"  Seed functions    {s['seeds']:>8,}")
    click.echo(f"  References        {s['references']:>8,}")
    click.echo(f"  Mapper documents  {s['mapper_documents']:>8,}")
    click.echo(f"  Queries           {s['queries']:>8,}")
    for kind, count in sorted(result.report.counts().items()):
        click.echo(f"  {kind:<18}{count:>8,}")
    click.echo(f"  Document          {s.get('document', '-')}")
    if output:
        click.echo(f"  Exported to       {output}")
    click.echo("─" * 50)


# ---------------------------------------------------------------------------
# querytrail import
# ---------------------------------------------------------------------------

@cli.command("import")
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option("--path", "project", default=".", type=click.Path(file_okay=False),
              help="Project whose current document to replace (default: .).")
@click.pass_context
def import_document(ctx: click.Context, source, project: str):
    """Make the JSON document in SOURCE (or '-' for stdin) current."""
    config = _config(ctx)
    store = DocumentStore.for_project(Path(project).resolve(), config)
    try:
        document = store.import_text(source.read())
    except DocumentError as exc:
        _fail(str(exc))
    click.echo(
        f"  Imported {len(document.call_relations):,} relations and "
        f"{len(document.queries):,} queries into {store.path}"
    )


# ---------------------------------------------------------------------------
# querytrail search / tree
# ---------------------------------------------------------------------------

def _load_engine(config: QuerytrailConfig, project: str, document: str | None) -> QuerySearchEngine:
    try:
        if document:
            doc = AnalysisDocument.from_json(Path(document).read_text(encoding="utf-8"))
        else:
            store = DocumentStore.for_project(Path(project).resolve(), config)
            doc = store.load()
    except (DocumentError, OSError) as exc:
        _fail(str(exc))
    return QuerySearchEngine(doc)


@cli.command()
@click.argument("text", default="")
@click.argument("project", default=".", type=click.Path(file_okay=False))
@click.option("--document", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Search this JSON document instead of the stored one.")
@click.option("-f", "--format", "fmt",
              type=click.Choice(["console", "json", "html"]),
              default="console", help="Output format.")
@click.option("-d", "--max-depth", type=int, default=None,
              help="Stop expanding caller trees below this depth.")
@click.option("--no-color", is_flag=True, help="Plain console output.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def search(ctx: click.Context, text: str, project: str, document: str | None,
           fmt: str, max_depth: int | None, no_color: bool, verbose: bool):
    """Show queries in PROJECT whose text contains TEXT (all when omitted)."""
    config = _config(ctx)
    _configure_logging(verbose, config)
    t0 = time.perf_counter()

    engine = _load_engine(config, project, document)
    hits = engine.search(text, max_depth=max_depth)
    common = engine.common_path
    elapsed = time.perf_counter() - t0

    formatter = ResultFormatter()
    if fmt == "json":
        click.echo(formatter.format_json(hits, common))
    elif fmt == "html":
        click.echo(formatter.format_html(hits, common))
    else:
        click.echo(f"  {len(hits)} matching queries ({elapsed:.3f} seconds)")
        click.echo(formatter.format_console(hits, common, color=not no_color))


@cli.command()
@click.argument("label")
@click.argument("project", default=".", type=click.Path(file_okay=False))
@click.option("--document", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Read this JSON document instead of the stored one.")
@click.option("-f", "--format", "fmt", type=click.Choice(["console", "json"]),
              default="console", help="Output format.")
@click.option("-d", "--max-depth", type=int, default=None,
              help="Stop expanding below this depth.")
@click.pass_context
def tree(ctx: click.Context, label: str, project: str, document: str | None,
         fmt: str, max_depth: int | None):
    """Print the caller tree rooted at LABEL."""
    import json

    engine = _load_engine(_config(ctx), project, document)
    node = engine.tree(label, max_depth=max_depth)
    if fmt == "json":
        click.echo(json.dumps(node.to_dict(), ensure_ascii=False, indent=2))
    else:
        click.echo(ResultFormatter.format_tree(node, engine.common_path))


# ---------------------------------------------------------------------------
# querytrail open
# ---------------------------------------------------------------------------

@cli.command("open")
@click.argument("label")
@click.pass_context
def open_label(ctx: click.Context, label: str):
    """Open LABEL's file and line in a running JetBrains IDE."""
    from querytrail.core.editor import open_in_editor  # noqa: E402

    config = _config(ctx)
    if not open_in_editor(label, config.editor_url, config.editor_timeout):
        click.echo(f"  No editor answered at {config.editor_url}.", err=True)


# ---------------------------------------------------------------------------
# querytrail stats
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("project", default=".", type=click.Path(file_okay=False))
@click.pass_context
def stats(ctx: click.Context, project: str):
    """Show querytrail index statistics."""
    from querytrail.client import Querytrail  # noqa: E402

    config = _config(ctx)
    try:
        s = Querytrail(config=config).stats(project)
    except IndexNotFoundError as exc:
        _fail(str(exc))

    click.echo("─" * 50)
    click.echo("  QUERYTRAIL — Index Statistics")
    click.echo("─" * 50)
    click.echo(f"  Index location : {Path(project).resolve() / config.index_dir}")
    click.echo()
    click.echo(f"  Indexed files     {s['indexed_files']:>8,}")
    click.echo(f"  Indexed functions {s['indexed_functions']:>8,}")
    click.echo(f"  Call edges        {s['call_edges']:>8,}")
    click.echo("─" * 50)


# ---------------------------------------------------------------------------
# querytrail mcp
# ---------------------------------------------------------------------------

@cli.command()
@click.option("--transport", type=click.Choice(["stdio", "sse"]),
              default="stdio", help="MCP transport (default: stdio).")
@click.option("-v", "--verbose", is_flag=True)
@click.pass_context
def mcp(ctx: click.Context, transport: str, verbose: bool):
    """Start the querytrail MCP server."""
    config = _config(ctx)
    _configure_logging(verbose, config)
    try:
        from querytrail.mcp.server import create_server  # noqa: E402
    except ImportError:
        _fail(
            "MCP dependencies not installed.\n"
            "Install with:  pip install 'querytrail[mcp]'"
        )
    server = create_server(config)
    server.run(transport=transport)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli(obj={})
