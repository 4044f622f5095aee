"""
querytrail MCP Server

Exposes project analysis and query search as tools that AI agents can
invoke natively via the Model Context Protocol.

Start with::

    querytrail mcp                      # stdio transport (default)
    querytrail mcp --transport sse      # SSE transport

Or programmatically::

    from querytrail.mcp.server import create_server
    server = create_server()
    server.run()
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Annotated

# FastMCP uses pydantic for validation, so Field is available with it
from pydantic import Field  # type: ignore[import-untyped]

from querytrail.client import Querytrail
from querytrail.core.config import QuerytrailConfig
from querytrail.core.search import ResultFormatter
from querytrail.exceptions import QuerytrailError

logger = logging.getLogger(__name__)


def create_server(config: QuerytrailConfig | None = None):
    """
    Build and return a configured FastMCP server instance.

    All tool invocations share one configuration.

    Args:
        config: Instance-based configuration.  Defaults to
            ``QuerytrailConfig.from_env()`` so that the server respects
            the same environment variables as the CLI.

    Raises ``ImportError`` if ``fastmcp`` is not installed (install
    via ``pip install 'querytrail[mcp]'``).
    """
    from fastmcp import FastMCP  # type: ignore[import-untyped]

    cfg = config or QuerytrailConfig.from_env()
    client = Querytrail(config=cfg)

    mcp = FastMCP("querytrail")

    # ==================================================================
    # Helpers
    # ==================================================================

    def _resolve_path(path: str) -> str:
        """When path is '.', use QUERYTRAIL_DEFAULT_PATH if set (e.g. /data in Docker)."""
        if path == ".":
            default = os.environ.get("QUERYTRAIL_DEFAULT_PATH", "").strip()
            if default:
                return default
        return path

    # ==================================================================
    # Tool: analyse_project
    # ==================================================================

    @mcp.tool()
    def analyse_project(
        path: Annotated[
            str,
            Field(default=".", description="Project root to analyse. Source files are indexed incrementally into <path>/.querytrail/ and never modified.")
        ] = ".",
        seed_layer: Annotated[
            str | None,
            Field(default=None, description="Path substring selecting the functions the caller graph grows from (default '/repository/').")
        ] = None,
        timeout: Annotated[
            float | None,
            Field(default=None, description="Seconds allowed for the call-graph build. The analysis fails when it runs out.")
        ] = None,
    ) -> str:
        """Build the caller graph and query owners for a project and make
        the result the current analysis document for search_queries.

        Returns:
            JSON with run statistics and the issues that were skipped
            (unresolvable callers, mapper tags without owners, ...).
        """
        try:
            root = Path(_resolve_path(path)).resolve()
            if not root.is_dir():
                return json.dumps({"error": f"'{path}' is not a directory."})
            runner = client
            if seed_layer:
                runner = Querytrail(config=replace(cfg, seed_layer=seed_layer))
            result = runner.analyse(root, timeout=timeout)
            return json.dumps(result.to_dict(), ensure_ascii=False)
        except QuerytrailError as e:
            return json.dumps({"error": str(e)})

    # ==================================================================
    # Tool: search_queries
    # ==================================================================

    @mcp.tool()
    def search_queries(
        text: Annotated[
            str,
            Field(default="", description="Case-sensitive literal to look for in the SQL of each mapper query (e.g. 'users' or 'UPDATE orders'). Empty returns every query.")
        ] = "",
        path: Annotated[
            str,
            Field(default=".", description="Project root whose current analysis document to search.")
        ] = ".",
        max_depth: Annotated[
            int | None,
            Field(default=None, description="Stop expanding caller trees below this depth. Use 3-5 on large projects to keep the answer small.")
        ] = None,
    ) -> str:
        """Find mapper queries whose SQL contains the given text, each
        with the tree of functions that (transitively) call its owner.

        Returns:
            JSON with the common path prefix and one result per query:
            decoded SQL, owner label, highlight spans, and caller tree.
        """
        try:
            root = _resolve_path(path)
            hits = client.search(text, path=root, max_depth=max_depth)
            return ResultFormatter.format_json(hits, client.common_path(root))
        except QuerytrailError as e:
            return json.dumps({"error": str(e), "results": []})

    # ==================================================================
    # Tool: get_call_tree
    # ==================================================================

    @mcp.tool()
    def get_call_tree(
        label: Annotated[
            str,
            Field(description="Reference label as it appears in search results, e.g. 'findById (src/.../UserRepository.kt:12)'.")
        ],
        path: Annotated[
            str,
            Field(default=".", description="Project root whose current analysis document to read.")
        ] = ".",
        max_depth: Annotated[
            int | None,
            Field(default=None, description="Stop expanding below this depth.")
        ] = None,
    ) -> str:
        """Return the caller tree rooted at one label.

        Returns:
            JSON tree of ``{label, children, cycle?}`` nodes.
        """
        try:
            node = client.tree(label, path=_resolve_path(path), max_depth=max_depth)
            return json.dumps(node.to_dict(), ensure_ascii=False)
        except QuerytrailError as e:
            return json.dumps({"error": str(e)})

    # ==================================================================
    # Tool: get_index_stats
    # ==================================================================

    @mcp.tool()
    def get_index_stats(
        path: Annotated[
            str,
            Field(default=".", description="Project root whose index to inspect (<path>/.querytrail/index.db).")
        ] = ".",
    ) -> str:
        """Return statistics about the querytrail index for a directory.

        Returns:
            JSON with indexed_files, indexed_functions and call_edges.
        """
        try:
            return json.dumps(client.stats(_resolve_path(path)))
        except QuerytrailError as e:
            return json.dumps({"error": str(e)})

    # ==================================================================
    # Tool: health (readiness check)
    # ==================================================================

    @mcp.tool()
    def health() -> str:
        """Check that the querytrail MCP server is running and responsive."""
        return json.dumps({"status": "ok", **client.health()})

    # ==================================================================
    # Prompt
    # ==================================================================

    @mcp.prompt()
    def trace_table(table: str, path: str = ".") -> str:
        """Pre-built prompt: which entry points touch a table."""
        return (
            f"Call search_queries with text '{table}' for '{path}'. For each "
            "result, list the controller-level roots of its caller tree and "
            "the SQL statement kind (select/insert/update/delete)."
        )

    return mcp
