"""
querytrail Analysis Pipeline

One full analysis run over a project:

  1. Bring the reference index up to date (incremental)
  2. Pick seed functions from the configured layer
  3. Grow the caller graph from the seeds
  4. Parse mapper XML and attribute every query to its owner
  5. Assemble the analysis document

Every run is a full rebuild of the graph; only the source index is
incremental.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from querytrail.core.config import QuerytrailConfig
from querytrail.core.document import AnalysisDocument
from querytrail.core.engine import FunctionRecord, ReferenceIndex, scan_directory
from querytrail.core.graph import CallerElement, build_call_graph, select_seeds
from querytrail.core.labels import Reference
from querytrail.core.mappers import read_mapper_documents, resolve_query_owners
from querytrail.core.report import AnalysisReport
from querytrail.exceptions import AnalysisError, IndexNotFoundError

logger = logging.getLogger(__name__)


class SourceIndex(Protocol):
    """What the analysis needs from a code index."""

    def iter_functions(self) -> Sequence[FunctionRecord]:
        ...

    def lookup_callers(self, reference: Reference) -> Iterable[CallerElement]:
        ...


@dataclass
class AnalysisResult:
    document: AnalysisDocument
    report: AnalysisReport
    stats: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "stats": self.stats,
            "report": self.report.to_dict(),
        }


class AnalysisPipeline:
    """
    Runs one analysis of *root_dir*.

    Args:
        root_dir: Project root.
        config: Configuration; defaults to :meth:`QuerytrailConfig.from_env`.
        index: Use this source index instead of the sidecar SQLite one.
        cache_dir: Override directory for the sidecar index.
        reindex: Refresh the sidecar index before analysing.  With False
            an existing index is used as-is.
        force_reindex: Re-extract every file, changed or not.
        show_progress: Show the indexing progress bar.
    """

    def __init__(self, root_dir: Path, config: QuerytrailConfig | None = None,
                 *, index: Optional[SourceIndex] = None, cache_dir: Path | None = None,
                 reindex: bool = True, force_reindex: bool = False,
                 show_progress: bool = False):
        self.root_dir = root_dir
        self.config = config or QuerytrailConfig.from_env()
        self.config.validate()
        self.cache_dir = cache_dir if cache_dir else (root_dir / self.config.index_dir)
        self.index = index
        self.reindex = reindex
        self.force_reindex = force_reindex
        self.show_progress = show_progress

    def run(self, timeout: float | None = None,
            cancel_event: threading.Event | None = None) -> AnalysisResult:
        """
        Execute the analysis.

        Args:
            timeout: Seconds allowed for the call-graph build; falls back
                to ``config.analysis_timeout``.
            cancel_event: Set from another thread to stop the build.

        Raises:
            AnalysisCancelledError: The build ran out of time or was cancelled.
            IndexNotFoundError: ``reindex=False`` and no index exists.
        """
        started = time.monotonic()
        stats: dict = {"root_dir": str(self.root_dir)}
        report = AnalysisReport()

        index, owned = self._open_index(stats)
        try:
            functions = list(index.iter_functions())
            seeds = select_seeds(functions, self.config.seed_layer)
            logger.info(f"{len(seeds):,} seed functions under '{self.config.seed_layer}'")
            if not seeds:
                logger.warning(f"No functions found under '{self.config.seed_layer}'.")

            limit = timeout if timeout is not None else self.config.analysis_timeout
            deadline = time.monotonic() + limit if limit is not None else None
            call_graph = build_call_graph(
                seeds, index.lookup_callers,
                report=report, deadline=deadline, cancel_event=cancel_event,
            )

            mapper_files = scan_directory(
                self.root_dir, self.config, extensions=self.config.mapper_extensions,
            )
            mapper_documents = read_mapper_documents(
                mapper_files,
                report=report,
                mapper_tag=self.config.mapper_tag,
                namespace_attribute=self.config.namespace_attribute,
                id_attribute=self.config.id_attribute,
                query_tags=self.config.query_tags,
            )
            mappings = resolve_query_owners(
                mapper_documents, functions,
                report=report, policy=self.config.ambiguous_owner_policy,
            )
        finally:
            if owned is not None:
                owned.close()

        document = AnalysisDocument.from_results(call_graph, mappings)
        stats.update({
            "functions": len(functions),
            "seeds": len(seeds),
            "references": len(call_graph),
            "mapper_documents": len(mapper_documents),
            "queries": len(mappings),
            "issues": len(report),
            "elapsed_seconds": round(time.monotonic() - started, 3),
        })
        logger.info(
            f"Analysis done: {stats['references']:,} references, "
            f"{stats['queries']:,} queries, {stats['issues']:,} issues"
        )
        return AnalysisResult(document=document, report=report, stats=stats)

    def _open_index(self, stats: dict):
        """Return ``(index, owned)``; *owned* is closed after the run."""
        if self.index is not None:
            return self.index, None

        if self.reindex:
            from querytrail.core.indexer import IndexingPipeline

            pipeline = IndexingPipeline(
                root_dir=self.root_dir,
                cache_dir=self.cache_dir,
                force_reindex=self.force_reindex,
                config=self.config,
                show_progress=self.show_progress,
            )
            result = pipeline.run()
            if result.errors:
                logger.warning(f"{result.errors} files failed to index")
            stats["index"] = result.to_dict()
            return pipeline.index, pipeline.index

        db = self.config.get_cache_path(self.cache_dir)
        if not db.exists():
            raise IndexNotFoundError(
                f"No querytrail index found at {db}. "
                "Run 'querytrail index <dir>' first or allow reindexing."
            )
        try:
            index = ReferenceIndex(db)
        except sqlite3.Error as e:
            raise AnalysisError(f"Cannot open index {db}: {e}") from e
        return index, index


def analyse_project(root_dir: Path, config: QuerytrailConfig | None = None,
                    **options) -> AnalysisResult:
    """Shorthand for ``AnalysisPipeline(root_dir, config, **options).run()``."""
    timeout = options.pop("timeout", None)
    cancel_event = options.pop("cancel_event", None)
    return AnalysisPipeline(root_dir, config, **options).run(
        timeout=timeout, cancel_event=cancel_event,
    )

