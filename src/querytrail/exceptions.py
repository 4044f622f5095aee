"""
querytrail Exception Hierarchy

Structured exceptions for clear error handling across CLI, API, and MCP
consumers.  Each exception type maps to a specific failure mode so that
callers can handle errors precisely without parsing message strings.

Analysis-time problems with individual elements (a caller that cannot be
classified, a mapper tag without an ``id``) are *not* raised; they are
collected in an :class:`~querytrail.core.report.AnalysisReport` and the
run continues.  The exceptions below are for failures of a whole operation.

Usage::

    from querytrail.exceptions import QuerytrailError, DocumentError

    try:
        hits = client.search("users")
    except DocumentError as exc:
        print(f"Cannot read analysis document: {exc}")
    except QuerytrailError as exc:
        print(f"querytrail error: {exc}")
"""


class QuerytrailError(Exception):
    """Base exception for all querytrail errors."""


class ConfigError(QuerytrailError, ValueError):
    """Configuration is invalid (e.g. unknown ambiguity policy)."""


class IndexNotFoundError(QuerytrailError, FileNotFoundError):
    """No reference index exists at the expected path."""


class IndexingError(QuerytrailError):
    """Fatal error during the indexing pipeline."""


class AnalysisError(QuerytrailError):
    """Fatal error during a project analysis run."""


class AnalysisCancelledError(AnalysisError):
    """The caller-supplied deadline passed or the cancel event was set."""


class MapperParseError(AnalysisError):
    """A mapper XML file could not be parsed."""


class DocumentError(QuerytrailError, ValueError):
    """An analysis document is malformed (not JSON, wrong shape, bad encoding)."""


class DocumentNotFoundError(DocumentError, FileNotFoundError):
    """No analysis document has been imported or produced yet."""
