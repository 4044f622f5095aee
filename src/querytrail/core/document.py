"""
The analysis document: the single artifact passed from analysis to search.

Wire format::

    {
        "callRelations": [[label, caller_label, ...], ...],
        "queries": [[base64_query_text, owner_label], ...]
    }

Rows keep discovery order.  The document is plain immutable data; a new
analysis or import replaces it wholesale.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Sequence, Tuple

from querytrail.core.config import QuerytrailConfig
from querytrail.core.labels import Reference
from querytrail.core.mappers import QueryMapping
from querytrail.exceptions import DocumentError, DocumentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisDocument:
    call_relations: Tuple[Tuple[str, ...], ...] = ()
    queries: Tuple[Tuple[str, str], ...] = ()

    # ── Construction ──────────────────────────────────────────────

    @classmethod
    def from_results(
        cls,
        call_graph: Mapping[Reference, Sequence[Reference]],
        mappings: Iterable[QueryMapping],
    ) -> "AnalysisDocument":
        """Render builder and resolver output through the label format."""
        relations = tuple(
            (ref.render(),) + tuple(caller.render() for caller in callers)
            for ref, callers in call_graph.items()
        )
        queries = tuple((m.encoded_text, m.owner.render()) for m in mappings)
        return cls(call_relations=relations, queries=queries)

    @classmethod
    def from_dict(cls, data: object) -> "AnalysisDocument":
        if not isinstance(data, dict):
            raise DocumentError("Analysis document must be a JSON object.")
        relations = data.get("callRelations")
        queries = data.get("queries")
        if not isinstance(relations, list) or not isinstance(queries, list):
            raise DocumentError(
                "Analysis document needs 'callRelations' and 'queries' arrays."
            )

        rows: List[Tuple[str, ...]] = []
        for i, row in enumerate(relations):
            if not isinstance(row, list) or not row or not all(isinstance(x, str) for x in row):
                raise DocumentError(f"callRelations[{i}] must be a non-empty array of labels.")
            rows.append(tuple(row))

        pairs: List[Tuple[str, str]] = []
        for i, row in enumerate(queries):
            if (not isinstance(row, list) or len(row) != 2
                    or not all(isinstance(x, str) for x in row)):
                raise DocumentError(f"queries[{i}] must be [encodedText, ownerLabel].")
            pairs.append((row[0], row[1]))

        return cls(call_relations=tuple(rows), queries=tuple(pairs))

    @classmethod
    def from_json(cls, text: str) -> "AnalysisDocument":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise DocumentError(f"Analysis document is not valid JSON: {e}") from e
        return cls.from_dict(data)

    # ── Serialization ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "callRelations": [list(row) for row in self.call_relations],
            "queries": [list(row) for row in self.queries],
        }

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)

    # ── Views ─────────────────────────────────────────────────────

    def relations_map(self) -> dict:
        """``label -> (caller labels)``; the first row for a label wins."""
        out: dict = {}
        for row in self.call_relations:
            if row[0] not in out:
                out[row[0]] = row[1:]
        return out

    def labels(self) -> List[str]:
        """Every reference label: all call-relation cells plus query owners."""
        out = [label for row in self.call_relations for label in row]
        out.extend(owner for _, owner in self.queries)
        return out


class DocumentStore:
    """
    Keeps "the current" analysis document under a fixed file name.

    Saving always replaces the previous document as a whole.
    """

    def __init__(self, directory: Path, name: str = "analysis.json"):
        self.directory = directory
        self.path = directory / name

    @classmethod
    def for_project(cls, root: Path, config: QuerytrailConfig) -> "DocumentStore":
        """The store for *root*'s current document, at the configured location."""
        path = config.get_document_path(root / config.index_dir)
        return cls(path.parent, path.name)

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, document: AnalysisDocument) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".analysis-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(document.to_json())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug(f"Stored analysis document at {self.path}")
        return self.path

    def load(self) -> AnalysisDocument:
        if not self.exists():
            raise DocumentNotFoundError(
                f"No analysis document at {self.path}. "
                "Run 'querytrail analyse <dir>' or 'querytrail import <file>' first."
            )
        return AnalysisDocument.from_json(self.path.read_text(encoding="utf-8"))

    def import_text(self, text: str) -> AnalysisDocument:
        """Validate pasted/imported JSON and make it the current document."""
        document = AnalysisDocument.from_json(text)
        self.save(document)
        return document
