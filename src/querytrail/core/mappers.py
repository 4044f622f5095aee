"""
Query owner resolution for MyBatis-style XML mappers.

A mapper document looks like::

    <mapper namespace="com.example.user">
        <select id="findById">SELECT * FROM users WHERE id = #{id}</select>
    </mapper>

Each query tag is attributed to the function that issues it: a function
named after the tag's ``id``, living in a file with the same base name
as the mapper XML, under a directory matching the namespace.  The tag's
full source text travels Base64-encoded so it fits in one JSON string.
"""

import base64
import binascii
import codecs
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence
from xml.parsers import expat

from querytrail.core.config import AMBIGUOUS_OWNER_POLICIES
from querytrail.core.labels import Reference, normalize_path
from querytrail.core.report import AnalysisReport, IssueKind
from querytrail.exceptions import ConfigError, DocumentError, MapperParseError

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TAGS = frozenset(("select", "insert", "update", "delete"))


# =============================================================================
# Text encoding
# =============================================================================

def encode_query_text(text: str) -> str:
    """Base64 over UTF-8."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_query_text(encoded: str) -> str:
    """Exact inverse of :func:`encode_query_text`."""
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise DocumentError(f"Query text is not valid Base64-encoded UTF-8: {e}") from e


# =============================================================================
# Mapper documents
# =============================================================================

@dataclass
class QueryTag:
    kind: str
    query_id: Optional[str]
    text: str
    """Exact source text of the tag, from ``<kind`` through its end tag."""
    line: int
    offset: int

    def reference(self, mapper_path: str) -> Reference:
        return Reference(f"<{self.kind}>", mapper_path, self.line,
                         disambiguator=f"xml {self.offset:x}")


@dataclass
class MapperDocument:
    path: str
    namespace: Optional[str]
    line: int
    offset: int = 0
    query_tags: List[QueryTag] = field(default_factory=list)

    def reference(self) -> Reference:
        return Reference("<mapper>", self.path, self.line,
                         disambiguator=f"xml {self.offset:x}")


_XML_ENCODING_RE = re.compile(
    rb"\A\s*<\?xml[^>]*?\bencoding\s*=\s*([\"'])([A-Za-z][A-Za-z0-9._-]*)\1"
)
_UTF8_CODECS = frozenset(("utf-8", "ascii"))


def _as_utf8(data: bytes, path: Path) -> bytes:
    """
    Transcode a mapper declared in another encoding (Shift_JIS, EUC-KR,
    Latin-1, UTF-16...) to UTF-8 so byte offsets slice whole characters.
    The XML declaration is rewritten to match.
    """
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        declared = "utf-16"
    else:
        match = _XML_ENCODING_RE.match(data)
        if match is None:
            return data
        declared = match.group(2).decode("ascii")
    try:
        codec = codecs.lookup(declared).name
    except LookupError as e:
        raise MapperParseError(f"Cannot parse {path}: unknown encoding {declared!r}") from e
    if codec in _UTF8_CODECS:
        return data
    try:
        text = data.decode(codec)
    except UnicodeDecodeError as e:
        raise MapperParseError(f"Cannot parse {path}: not valid {declared}: {e}") from e
    text = text.lstrip("\ufeff")
    text = re.sub(r"\A(\s*<\?xml[^>]*?\bencoding\s*=\s*)([\"'])[^\"']*\2",
                  r'\1"UTF-8"', text, count=1)
    logger.debug(f"Transcoded {path} from {declared} to UTF-8")
    return text.encode("utf-8")


def read_mapper_document(
    path: Path,
    *,
    mapper_tag: str = "mapper",
    namespace_attribute: str = "namespace",
    id_attribute: str = "id",
    query_tags: Iterable[str] = DEFAULT_QUERY_TAGS,
) -> Optional[MapperDocument]:
    """
    Parse one XML file.

    Returns ``None`` when the root element is not a mapper (most XML in a
    project is something else).  Raises :class:`MapperParseError` when
    the file is not well-formed.
    """
    data = _as_utf8(path.read_bytes(), path)
    kinds = frozenset(query_tags)
    doc_path = normalize_path(str(path))
    parser = expat.ParserCreate()

    depth = 0
    document: Optional[MapperDocument] = None
    pending: List[tuple] = []  # (kind, query_id, line, start) for open query tags

    def start(name, attrs):
        nonlocal depth, document
        depth += 1
        if depth == 1 and name == mapper_tag:
            document = MapperDocument(
                path=doc_path,
                namespace=attrs.get(namespace_attribute),
                line=parser.CurrentLineNumber,
                offset=parser.CurrentByteIndex,
            )
        elif depth == 2 and document is not None and name in kinds:
            pending.append((name, attrs.get(id_attribute), parser.CurrentLineNumber,
                            parser.CurrentByteIndex))

    def end(name):
        nonlocal depth
        if depth == 2 and document is not None and pending and pending[-1][0] == name:
            kind, query_id, line, begin = pending.pop()
            index = parser.CurrentByteIndex
            if data.startswith(b"</", index):
                stop = data.index(b">", index) + 1
            else:
                # Self-closing tag: the end event sits on the start tag.
                stop = data.index(b">", begin) + 1
            document.query_tags.append(QueryTag(
                kind=kind,
                query_id=query_id,
                text=data[begin:stop].decode("utf-8"),
                line=line,
                offset=begin,
            ))
        depth -= 1

    parser.StartElementHandler = start
    parser.EndElementHandler = end
    try:
        parser.Parse(data, True)
    except (expat.ExpatError, ValueError) as e:
        raise MapperParseError(f"Cannot parse {path}: {e}") from e
    return document


def read_mapper_documents(
    paths: Iterable[Path],
    *,
    report: Optional[AnalysisReport] = None,
    **options,
) -> List[MapperDocument]:
    """Parse every path, reporting and skipping the unreadable ones."""
    documents: List[MapperDocument] = []
    for path in paths:
        try:
            document = read_mapper_document(path, **options)
        except (MapperParseError, OSError) as e:
            if report is not None:
                report.add(IssueKind.UNREADABLE_MAPPER, normalize_path(str(path)), str(e))
            else:
                logger.warning(str(e))
            continue
        if document is not None:
            documents.append(document)
    return documents


# =============================================================================
# Resolution
# =============================================================================

@dataclass(frozen=True)
class QueryMapping:
    encoded_text: str
    owner: Reference
    query_id: str = ""


def find_owner_candidates(
    query_id: str,
    mapper_path: str,
    namespace: str,
    functions_by_name: Dict[str, List],
) -> List:
    """Functions matching name, file stem, and namespace path, in scan order."""
    namespace_path = namespace.replace(".", "/")
    stem = Path(mapper_path).stem
    return [
        fn for fn in functions_by_name.get(query_id, [])
        if namespace_path in normalize_path(fn.file_path)
        and Path(normalize_path(fn.file_path)).stem == stem
    ]


def resolve_query_owners(
    mapper_documents: Iterable[MapperDocument],
    functions: Sequence,
    *,
    report: Optional[AnalysisReport] = None,
    policy: str = "first",
) -> List[QueryMapping]:
    """
    Attribute every query tag to its owning function.

    Args:
        mapper_documents: Parsed mapper XML files.
        functions: Objects exposing ``name``, ``file_path`` and
            ``reference()``, in scan order.
        report: Collects skipped mappers and tags.
        policy: ``first`` takes the first candidate when several match;
            ``reject`` drops such queries.

    Returns:
        One :class:`QueryMapping` per resolved tag, in document order.
    """
    if policy not in AMBIGUOUS_OWNER_POLICIES:
        raise ConfigError(f"Unknown ambiguous-owner policy '{policy}'.")
    report = report if report is not None else AnalysisReport()

    by_name: Dict[str, List] = {}
    for fn in functions:
        by_name.setdefault(fn.name, []).append(fn)

    mappings: List[QueryMapping] = []
    for document in mapper_documents:
        if document.namespace is None:
            report.add(IssueKind.MISSING_ATTRIBUTE, document.reference().render(),
                       "No namespace attribute on mapper tag")
            continue

        for tag in document.query_tags:
            tag_label = tag.reference(document.path).render()
            if tag.query_id is None:
                report.add(IssueKind.MISSING_ATTRIBUTE, tag_label,
                           "No id attribute on query tag")
                continue

            candidates = find_owner_candidates(
                tag.query_id, document.path, document.namespace, by_name,
            )
            if not candidates:
                report.add(IssueKind.NO_OWNER, tag_label,
                           f"No function found for query '{document.namespace}.{tag.query_id}'")
                continue
            if len(candidates) > 1:
                names = ", ".join(c.reference().render() for c in candidates)
                if policy == "reject":
                    report.add(IssueKind.AMBIGUOUS_OWNER, tag_label,
                               f"Ambiguous owner, query dropped ({names})")
                    continue
                report.add(IssueKind.AMBIGUOUS_OWNER, tag_label,
                           f"Ambiguous owner, taking the first ({names})")

            mappings.append(QueryMapping(
                encoded_text=encode_query_text(tag.text),
                owner=candidates[0].reference(),
                query_id=tag.query_id,
            ))

    logger.debug(f"Resolved {len(mappings)} query owners")
    return mappings
