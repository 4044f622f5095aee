"""
querytrail: which entry points end up running this SQL?

The ``querytrail`` package indexes a project's functions and call sites,
grows the caller graph upward from the data-access layer, attributes
every MyBatis-style mapper query to the function that issues it, and
lets you search query text and browse the resulting caller trees.

Quick start (programmatic API)::

    from querytrail import Querytrail

    client = Querytrail()                       # reads env vars
    client.analyse("./myproject")               # index + analyse + store
    hits = client.search("users", path="./myproject")

Quick start (CLI)::

    querytrail analyse ./myproject
    querytrail search users ./myproject

Configuration override::

    from querytrail import Querytrail, QuerytrailConfig

    config = QuerytrailConfig(seed_layer="/dao/")
    client = Querytrail(config=config)
"""

__version__ = "1.0.0"

# Primary public API — the Querytrail facade
from querytrail.client import Querytrail

# Configuration
from querytrail.core.config import QuerytrailConfig

# Core data types that callers interact with
from querytrail.core.analysis import AnalysisResult
from querytrail.core.document import AnalysisDocument
from querytrail.core.engine import IndexResult
from querytrail.core.labels import Reference
from querytrail.core.search import QueryHit, TreeNode

# Exception hierarchy
from querytrail.exceptions import (
    AnalysisCancelledError,
    AnalysisError,
    ConfigError,
    DocumentError,
    DocumentNotFoundError,
    IndexingError,
    IndexNotFoundError,
    MapperParseError,
    QuerytrailError,
)


def health(config: QuerytrailConfig | None = None) -> dict:
    """
    Return a small status dict for agents or health checks (no index/network).

    When *config* is None, uses :meth:`QuerytrailConfig.from_env()` for the snapshot.
    """
    cfg = config or QuerytrailConfig.from_env()
    return {
        "version": __version__,
        "seed_layer": cfg.seed_layer,
        "ambiguous_owner_policy": cfg.ambiguous_owner_policy,
    }


__all__ = [
    "__version__",
    # Facade
    "Querytrail",
    # Config
    "QuerytrailConfig",
    # Data types
    "AnalysisResult",
    "AnalysisDocument",
    "IndexResult",
    "Reference",
    "QueryHit",
    "TreeNode",
    # Exceptions
    "QuerytrailError",
    "ConfigError",
    "IndexNotFoundError",
    "IndexingError",
    "AnalysisError",
    "AnalysisCancelledError",
    "MapperParseError",
    "DocumentError",
    "DocumentNotFoundError",
    # Status
    "health",
]
