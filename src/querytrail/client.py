"""
querytrail Client Facade

Single entry point for programmatic use of querytrail.  Wraps indexing,
analysis, the stored analysis document, and search behind an
instance-based API with optional async support.

Usage::

    from querytrail import Querytrail

    # From environment variables
    client = Querytrail()

    # With explicit configuration
    from querytrail.core.config import QuerytrailConfig
    client = Querytrail(config=QuerytrailConfig(seed_layer="/dao/"))

    # Analyse a project (indexes incrementally, stores the document)
    result = client.analyse("./myproject")
    print(f"{result.stats['queries']} queries, {len(result.report)} issues")

    # Search
    for hit in client.search("users", path="./myproject"):
        print(hit.owner)

    # Async variants (for FastAPI / Django async views)
    result = await client.aanalyse("./myproject")
    hits   = await client.asearch("users", path="./myproject")
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from querytrail.core.analysis import AnalysisPipeline, AnalysisResult
from querytrail.core.config import QuerytrailConfig
from querytrail.core.document import AnalysisDocument, DocumentStore
from querytrail.core.engine import IndexResult
from querytrail.core.search import QueryHit, QuerySearchEngine, TreeNode
from querytrail.exceptions import IndexNotFoundError

logger = logging.getLogger(__name__)


class Querytrail:
    """
    High-level querytrail client.

    Each instance carries its own :class:`QuerytrailConfig` and never
    touches global state.

    Args:
        config: Explicit configuration object.  When *None*, a config
            is built from environment variables or keyword overrides.
        validate_on_init: If True, call :meth:`QuerytrailConfig.validate`
            in __init__ so invalid settings surface immediately.
        **kwargs: Forwarded to :class:`QuerytrailConfig` when *config* is
            ``None`` (e.g. ``seed_layer="/dao/"``).
    """

    def __init__(
        self,
        config: QuerytrailConfig | None = None,
        *,
        validate_on_init: bool = False,
        **kwargs,
    ):
        if config is not None:
            self._config = config
        elif kwargs:
            # Build a config from env, then overlay keyword overrides
            base = QuerytrailConfig.from_env()
            merged = {
                f.name: kwargs.get(f.name, getattr(base, f.name))
                for f in base.__dataclass_fields__.values()
            }
            self._config = QuerytrailConfig(**merged)
        else:
            self._config = QuerytrailConfig.from_env()

        if validate_on_init:
            self._config.validate()

        # Search engines per document file, keyed with the file's mtime
        self._engines: Dict[Path, Tuple[int, QuerySearchEngine]] = {}
        self._engines_lock = threading.Lock()

    # ── Configuration ─────────────────────────────────────────────

    @property
    def config(self) -> QuerytrailConfig:
        """The active configuration for this client."""
        return self._config

    # ── Indexing & analysis ───────────────────────────────────────

    def index(
        self,
        directory: str | Path,
        *,
        force: bool = False,
        dry_run: bool = False,
        show_progress: bool = False,
    ) -> IndexResult:
        """
        Index all supported source files in *directory*.

        Creates a ``.querytrail/`` sidecar directory with the SQLite index.
        Source files are **never** modified.
        """
        from querytrail.core.indexer import IndexingPipeline

        root = Path(directory).resolve()
        pipeline = IndexingPipeline(
            root_dir=root,
            dry_run=dry_run,
            force_reindex=force,
            config=self._config,
            show_progress=show_progress,
        )
        try:
            return pipeline.run()
        finally:
            pipeline.index.close()

    def analyse(
        self,
        directory: str | Path,
        *,
        reindex: bool = True,
        force: bool = False,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
        store: bool = True,
        show_progress: bool = False,
    ) -> AnalysisResult:
        """
        Run a full analysis of *directory*.

        Args:
            directory: Project root.
            reindex: Refresh the sidecar index first (incremental).
            force: Re-extract every source file.
            timeout: Seconds allowed for the call-graph build.
            cancel_event: Set from another thread to stop the build.
            store: Make the resulting document the current one for
                :meth:`search` and :meth:`tree`.

        Raises:
            AnalysisCancelledError: The build ran out of time or was cancelled.
            IndexNotFoundError: ``reindex=False`` and no index exists.
        """
        root = Path(directory).resolve()
        pipeline = AnalysisPipeline(
            root, self._config,
            reindex=reindex, force_reindex=force, show_progress=show_progress,
        )
        result = pipeline.run(timeout=timeout, cancel_event=cancel_event)
        if store:
            saved = self._store(root).save(result.document)
            result.stats["document"] = str(saved)
        return result

    # ── Analysis document ─────────────────────────────────────────

    def load_document(self, path: str | Path = ".") -> AnalysisDocument:
        """
        The current analysis document for *path*.

        Raises:
            DocumentNotFoundError: Nothing analysed or imported yet.
            DocumentError: The stored file is malformed.
        """
        return self._store(Path(path).resolve()).load()

    def import_document(self, text: str, *, path: str | Path = ".") -> AnalysisDocument:
        """Validate *text* and make it the current document for *path*."""
        return self._store(Path(path).resolve()).import_text(text)

    # ── Search ────────────────────────────────────────────────────

    def search(
        self,
        text: str = "",
        *,
        path: str | Path = ".",
        max_depth: int | None = None,
    ) -> List[QueryHit]:
        """
        Queries whose text contains *text*, each with its caller tree.

        Args:
            text: Case-sensitive literal; ``""`` returns every query.
            path: Project root whose current document to search.
            max_depth: Stop expanding caller trees below this depth.
        """
        return self._get_engine(Path(path).resolve()).search(text, max_depth=max_depth)

    def tree(self, label: str, *, path: str | Path = ".",
             max_depth: int | None = None) -> TreeNode:
        """Caller tree rooted at *label*."""
        return self._get_engine(Path(path).resolve()).tree(label, max_depth=max_depth)

    def common_path(self, path: str | Path = ".") -> str:
        """Path prefix shared by every label in the current document."""
        return self._get_engine(Path(path).resolve()).common_path

    def open_in_editor(self, label: str) -> bool:
        """Ask a running IDE to open *label*'s location."""
        from querytrail.core.editor import open_in_editor

        return open_in_editor(label, self._config.editor_url, self._config.editor_timeout)

    # ── Statistics ────────────────────────────────────────────────

    def stats(self, path: str | Path = ".") -> Dict[str, int]:
        """
        Return index statistics for the given directory.

        Raises:
            IndexNotFoundError: If no index exists at *path*.
        """
        from querytrail.core.engine import ReferenceIndex

        cache_dir = Path(path).resolve() / self._config.index_dir
        db = self._config.get_cache_path(cache_dir)
        if not db.exists():
            raise IndexNotFoundError(
                f"No querytrail index found at {db}. "
                "Run 'querytrail index <dir>' or client.index() first."
            )

        index = ReferenceIndex(db)
        try:
            return index.get_stats()
        finally:
            index.close()

    # ── Async variants ────────────────────────────────────────────
    # These use asyncio.to_thread() to run sync operations off the
    # event loop. They raise the same exceptions as the sync methods.

    async def aindex(
        self,
        directory: str | Path,
        *,
        force: bool = False,
        dry_run: bool = False,
    ) -> IndexResult:
        """Async variant of :meth:`index`."""
        return await asyncio.to_thread(
            self.index, directory, force=force, dry_run=dry_run,
        )

    async def aanalyse(
        self,
        directory: str | Path,
        *,
        reindex: bool = True,
        force: bool = False,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
        store: bool = True,
    ) -> AnalysisResult:
        """Async variant of :meth:`analyse`."""
        return await asyncio.to_thread(
            self.analyse, directory,
            reindex=reindex, force=force, timeout=timeout,
            cancel_event=cancel_event, store=store,
        )

    async def asearch(
        self,
        text: str = "",
        *,
        path: str | Path = ".",
        max_depth: int | None = None,
    ) -> List[QueryHit]:
        """Async variant of :meth:`search`."""
        return await asyncio.to_thread(self.search, text, path=path, max_depth=max_depth)

    async def atree(self, label: str, *, path: str | Path = ".",
                    max_depth: int | None = None) -> TreeNode:
        """Async variant of :meth:`tree`."""
        return await asyncio.to_thread(self.tree, label, path=path, max_depth=max_depth)

    async def aimport_document(self, text: str, *, path: str | Path = ".") -> AnalysisDocument:
        """Async variant of :meth:`import_document`."""
        return await asyncio.to_thread(self.import_document, text, path=path)

    async def astats(self, path: str | Path = ".") -> Dict[str, int]:
        """Async variant of :meth:`stats`."""
        return await asyncio.to_thread(self.stats, path)

    # ── Health (for agents / status endpoints) ─────────────────────

    def health(self) -> Dict[str, object]:
        """Small status dict; needs no index or network."""
        return {
            "version": __import__("querytrail", fromlist=["__version__"]).__version__,
            "seed_layer": self._config.seed_layer,
            "ambiguous_owner_policy": self._config.ambiguous_owner_policy,
        }

    # ── Internal helpers ──────────────────────────────────────────

    def _store(self, root: Path) -> DocumentStore:
        return DocumentStore.for_project(root, self._config)

    def _get_engine(self, root: Path) -> QuerySearchEngine:
        """Engine for *root*'s current document, rebuilt when the file changes."""
        store = self._store(root)
        document_path = store.path
        mtime: Optional[int] = (
            document_path.stat().st_mtime_ns if document_path.is_file() else None
        )
        with self._engines_lock:
            cached = self._engines.get(document_path)
            if cached is not None and cached[0] == mtime:
                return cached[1]
        engine = QuerySearchEngine(store.load())
        with self._engines_lock:
            self._engines[document_path] = (mtime, engine)
        return engine
