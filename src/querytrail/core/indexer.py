"""
querytrail Batch Indexer

Crawls a project, extracts functions and call sites from every supported
source file, and stores them in a sidecar SQLite index
(``.querytrail/index.db``).  The index is the "who calls this symbol"
collaborator the call graph builder queries.

**Source files are never modified.**

- Incremental indexing (only processes changed files, by SHA-256)
- Concurrent processing with a thread pool
- Progress tracking and statistics
- Dry-run mode for testing
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from threading import Lock

from tqdm import tqdm

from querytrail.core.config import QuerytrailConfig
from querytrail.core.engine import (
    CodeAnalyzer, IndexResult, ReferenceIndex, scan_directory,
)

logger = logging.getLogger(__name__)


class IndexingPipeline:
    """
    Orchestrates the full indexing process.

    All extracted data is stored in a sidecar SQLite database inside the
    ``.querytrail/`` directory.
    """

    def __init__(self, root_dir: Path, cache_dir: Path | None = None,
                 dry_run: bool = False, force_reindex: bool = False,
                 config: QuerytrailConfig | None = None,
                 show_progress: bool = True):
        """
        Args:
            root_dir: Directory to index.
            cache_dir: Override directory for the sidecar index.
                       Defaults to ``root_dir / .querytrail``.
            dry_run: If True, run analysis but don't persist to the index.
            force_reindex: If True, re-index even unchanged files.
            config: Configuration; defaults to :meth:`QuerytrailConfig.from_env`.
            show_progress: Show a tqdm progress bar.
        """
        self.root_dir = root_dir
        self.dry_run = dry_run
        self.force_reindex = force_reindex
        self.config = config or QuerytrailConfig.from_env()
        self.show_progress = show_progress

        self.cache_dir = cache_dir if cache_dir else (root_dir / self.config.index_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.index = ReferenceIndex(self.config.get_cache_path(self.cache_dir))
        self.analyzer = CodeAnalyzer()

        self._stats_lock = Lock()
        self.result = IndexResult(root_dir=str(root_dir), index_dir=str(self.cache_dir))

    def run(self) -> IndexResult:
        """
        Execute the full indexing pipeline.

        Steps:
          1. Scan directories for source files
          2. Drop index entries for files that no longer exist
          3. Filter files (skip already-indexed unless forced)
          4. For each file: extract functions and call sites
          5. Store them in the sidecar SQLite index
        """
        logger.info(f"Indexing {self.root_dir} -> {self.cache_dir}"
                    + (" (dry-run)" if self.dry_run else "")
                    + (" (force)" if self.force_reindex else ""))

        source_files = scan_directory(self.root_dir, self.config)
        self.result.files_scanned = len(source_files)
        logger.info(f"  Found {len(source_files):,} source files")

        if not self.dry_run:
            self.result.files_removed = len(self.index.purge_missing(source_files))

        if not source_files:
            logger.warning("No source files found to index.")
            return self.result

        if not self.force_reindex:
            files_to_process = [f for f in source_files if not self.index.is_file_indexed(f)]
            self.result.files_skipped = len(source_files) - len(files_to_process)
        else:
            files_to_process = source_files

        logger.info(
            f"  {len(files_to_process):,} to process, "
            f"{self.result.files_skipped:,} up-to-date"
        )
        if not files_to_process:
            return self.result

        workers = self.config.max_concurrent_workers
        with tqdm(total=len(files_to_process), desc="Indexing files", unit="file",
                  disable=not self.show_progress) as pbar:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._process_file, file_path): file_path
                    for file_path in files_to_process
                }
                for future in as_completed(futures):
                    file_path = futures[future]
                    try:
                        if future.result():
                            with self._stats_lock:
                                self.result.files_processed += 1
                    except Exception as e:
                        logger.error(f"Error processing {file_path}: {e}")
                        with self._stats_lock:
                            self.result.errors += 1
                    finally:
                        pbar.update(1)

        logger.info(
            f"Indexed {self.result.files_processed:,} files, "
            f"{self.result.functions_found:,} functions, "
            f"{self.result.call_sites_found:,} call sites"
        )
        return self.result

    def _process_file(self, file_path: Path) -> bool:
        """Extract and store one source file. Returns False on failure."""
        try:
            source_code = file_path.read_text(encoding="utf-8")
            analysis = self.analyzer.analyze(source_code, str(file_path))
            functions = analysis.functions
            scopes = analysis.anonymous_scopes

            with self._stats_lock:
                self.result.functions_found += len(functions)
                self.result.call_sites_found += (
                    sum(len(f.call_sites) for f in functions)
                    + sum(len(s.call_sites) for s in scopes)
                )

            if self.dry_run:
                return True

            relative = os.path.relpath(file_path, self.root_dir).replace("\\", "/")
            self.index.clear_file_entries(file_path)
            for func in functions:
                self.index.add_function(file_path, func, relative_path=relative)
                self.index.add_call_edges(file_path, func.name, func.start_line, func.call_sites)
            for scope in scopes:
                self.index.add_anonymous_scope(file_path, scope)
            self.index.mark_file_indexed(file_path, len(functions))

            logger.debug(f"  ✓ {file_path}  ({len(functions)} functions)")
            return True

        except Exception as e:
            logger.error(f"Failed to process {file_path}: {e}")
            return False
        finally:
            self.index.close()
