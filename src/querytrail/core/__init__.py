"""
querytrail Core — configuration, source indexing, graph building, query
resolution, and search.

Re-exports the primary classes for convenience::

    from querytrail.core import AnalysisPipeline, QuerySearchEngine
"""

from querytrail.core.analysis import AnalysisPipeline, AnalysisResult, SourceIndex
from querytrail.core.config import QuerytrailConfig
from querytrail.core.document import AnalysisDocument, DocumentStore
from querytrail.core.engine import (
    AnonymousScope,
    CallSite,
    CodeAnalyzer,
    FileAnalysis,
    FunctionMetadata,
    FunctionRecord,
    IndexResult,
    ReferenceIndex,
    scan_directory,
)
from querytrail.core.graph import build_call_graph, merge_call_graphs, select_seeds
from querytrail.core.labels import Reference
from querytrail.core.mappers import (
    QueryMapping,
    decode_query_text,
    encode_query_text,
    resolve_query_owners,
)
from querytrail.core.report import AnalysisReport, Issue, IssueKind
from querytrail.core.search import (
    QueryHit,
    QuerySearchEngine,
    ResultFormatter,
    TreeNode,
    build_tree,
    common_path_prefix,
)

__all__ = [
    "AnalysisPipeline",
    "AnalysisResult",
    "SourceIndex",
    "QuerytrailConfig",
    "AnalysisDocument",
    "DocumentStore",
    "AnonymousScope",
    "CallSite",
    "CodeAnalyzer",
    "FileAnalysis",
    "FunctionMetadata",
    "FunctionRecord",
    "IndexResult",
    "ReferenceIndex",
    "scan_directory",
    "build_call_graph",
    "merge_call_graphs",
    "select_seeds",
    "Reference",
    "QueryMapping",
    "decode_query_text",
    "encode_query_text",
    "resolve_query_owners",
    "AnalysisReport",
    "Issue",
    "IssueKind",
    "QueryHit",
    "QuerySearchEngine",
    "ResultFormatter",
    "TreeNode",
    "build_tree",
    "common_path_prefix",
]
