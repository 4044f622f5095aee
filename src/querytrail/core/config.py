"""
querytrail Configuration Module

Centralized configuration for indexing, analysis, search, and the
open-in-editor action.  Each :class:`QuerytrailConfig` instance is
self-contained and is passed through the call stack; nothing in the
package reads global configuration state.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

AMBIGUOUS_OWNER_POLICIES = ("first", "reject")


def _optional_float(raw: str | None) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass
class QuerytrailConfig:
    """
    Instance-based configuration for querytrail.

    Create from environment variables::

        config = QuerytrailConfig.from_env()

    Or with explicit values::

        config = QuerytrailConfig(seed_layer="/dao/", ambiguous_owner_policy="reject")
    """

    # ── File Processing ───────────────────────────────────────────
    source_extensions: frozenset = frozenset((".py", ".kt"))
    mapper_extensions: frozenset = frozenset((".xml",))
    exclude_dirs: frozenset = frozenset((
        "__pycache__", ".git", ".venv", "venv", ".idea", ".gradle",
        ".pytest_cache", "node_modules", "dist", "build", "out", "target",
        ".querytrail",
    ))
    max_file_size_mb: int = 5
    max_concurrent_workers: int = 4

    # ── Sidecar Index ─────────────────────────────────────────────
    index_dir: str = ".querytrail"
    cache_db_name: str = "index.db"
    document_name: str = "analysis.json"

    # ── Analysis ──────────────────────────────────────────────────
    seed_layer: str = "/repository/"
    """Path substring selecting the functions the call graph is grown from."""
    mapper_tag: str = "mapper"
    namespace_attribute: str = "namespace"
    id_attribute: str = "id"
    query_tags: frozenset = frozenset(("select", "insert", "update", "delete"))
    ambiguous_owner_policy: str = "first"
    """``first`` takes the first candidate in scan order; ``reject`` drops the query."""
    analysis_timeout: Optional[float] = None
    """Wall-clock limit in seconds for one call-graph build (None = unbounded)."""

    # ── Editor Integration ────────────────────────────────────────
    editor_url: str = "http://localhost:63342"
    editor_timeout: float = 2.0

    # ── Logging ───────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # ── Factory ───────────────────────────────────────────────────

    @classmethod
    def from_env(cls) -> "QuerytrailConfig":
        """Build a config snapshot from current environment variables."""
        return cls(
            index_dir=os.getenv("QUERYTRAIL_INDEX_DIR", ".querytrail"),
            max_concurrent_workers=int(os.getenv("QUERYTRAIL_WORKERS", "4")),
            seed_layer=os.getenv("QUERYTRAIL_SEED_LAYER", "/repository/"),
            ambiguous_owner_policy=os.getenv("QUERYTRAIL_AMBIGUOUS_OWNER", "first").lower(),
            analysis_timeout=_optional_float(os.getenv("QUERYTRAIL_TIMEOUT")),
            editor_url=os.getenv("QUERYTRAIL_EDITOR_URL", "http://localhost:63342"),
            log_level=os.getenv("QUERYTRAIL_LOG_LEVEL", "INFO").upper(),
        )

    # ── Validation & Accessors ────────────────────────────────────

    def validate(self) -> bool:
        """
        Check settings that would otherwise fail deep inside a run.

        Raises :class:`~querytrail.exceptions.ConfigError` on failure.
        """
        from querytrail.exceptions import ConfigError

        if self.ambiguous_owner_policy not in AMBIGUOUS_OWNER_POLICIES:
            raise ConfigError(
                f"Unknown ambiguous-owner policy '{self.ambiguous_owner_policy}'. "
                f"Supported: {', '.join(AMBIGUOUS_OWNER_POLICIES)}.\n"
                "  Set via: export QUERYTRAIL_AMBIGUOUS_OWNER=first"
            )
        if not self.seed_layer:
            raise ConfigError("seed_layer must be a non-empty path substring.")
        if self.max_concurrent_workers < 1:
            raise ConfigError("max_concurrent_workers must be at least 1.")
        if self.analysis_timeout is not None and self.analysis_timeout <= 0:
            raise ConfigError("analysis_timeout must be positive when set.")
        return True

    def get_cache_path(self, base_dir: Path) -> Path:
        """Get the path to the index database inside *base_dir*."""
        return base_dir / self.cache_db_name

    def get_document_path(self, base_dir: Path) -> Path:
        """Get the path to the stored analysis document inside *base_dir*."""
        return base_dir / self.document_name
