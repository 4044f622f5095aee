"""
querytrail Search Engine

Reads an :class:`~querytrail.core.document.AnalysisDocument` and answers
"which call chains end in a query containing this text?".

- Substring search over decoded query text, with highlight spans
- On-demand reconstruction of caller trees, cycle-safe per render
- Common-path compression of labels for display
- Console, JSON, and HTML output
"""

import html
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import click

from querytrail.core.document import AnalysisDocument
from querytrail.core.labels import label_path, strip_disambiguator
from querytrail.core.mappers import decode_query_text
from querytrail.exceptions import DocumentError

logger = logging.getLogger(__name__)

Span = Tuple[int, int]

LAYERS = ("repository", "service", "controller")


# =============================================================================
# Common-path compression
# =============================================================================

def document_labels(document: AnalysisDocument) -> List[str]:
    """Every call-relation label and every query owner (never query text)."""
    return document.labels()


def common_path_segments(labels: Iterable[str]) -> List[str]:
    """
    Longest run of leading path segments shared by every label.

    The first label's path is the pivot; the longest prefix of it that
    every other path also starts with wins.  Labels without a
    ``(path:line)`` part are ignored; no labels yields ``[]``.
    """
    paths = [p.split("/") for p in (label_path(label) for label in labels) if p is not None]
    if not paths:
        return []
    pivot = paths[0]
    for k in range(len(pivot), -1, -1):
        prefix = pivot[:k]
        if all(len(path) >= k and path[:k] == prefix for path in paths):
            return prefix
    return []


def common_path_prefix(labels: Iterable[str]) -> str:
    return "/".join(common_path_segments(labels))


def display_label(label: str, common_path: str = "") -> str:
    """Label text for display: no disambiguator, common prefix removed."""
    text = strip_disambiguator(label)
    if common_path:
        if f"({common_path}/" in text:
            text = text.replace(f"({common_path}/", "(", 1)
        else:
            text = text.replace(f"({common_path}", "(", 1)
    return text


def layer_of(label: str) -> Optional[str]:
    """Architectural layer named in the label's path, if any."""
    for layer in LAYERS:
        if f"/{layer}/" in label:
            return layer
    return None


# =============================================================================
# Highlighting
# =============================================================================

def highlight_spans(text: str, needle: str) -> List[Span]:
    """Non-overlapping, case-sensitive literal occurrences of *needle*."""
    if not needle:
        return []
    spans: List[Span] = []
    start = 0
    while True:
        index = text.find(needle, start)
        if index < 0:
            break
        spans.append((index, index + len(needle)))
        start = index + len(needle)
    return spans


def escape_markup(text: str) -> str:
    return html.escape(text, quote=True)


def render_highlighted(text: str, spans: Sequence[Span],
                       open_tag: str = "<em>", close_tag: str = "</em>") -> str:
    """Escape *text* and wrap each span in the given tags."""
    out: List[str] = []
    cursor = 0
    for start, end in spans:
        out.append(escape_markup(text[cursor:start]))
        out.append(open_tag + escape_markup(text[start:end]) + close_tag)
        cursor = end
    out.append(escape_markup(text[cursor:]))
    return "".join(out)


# =============================================================================
# Tree reconstruction
# =============================================================================

@dataclass
class TreeNode:
    label: str
    children: List["TreeNode"] = field(default_factory=list)
    cycle: bool = False
    """True when the label is already being expanded higher up this branch."""
    truncated: bool = False
    """True when expansion stopped at the depth limit."""

    def walk(self) -> Iterator[Tuple["TreeNode", int]]:
        """Pre-order ``(node, depth)`` pairs."""
        stack: List[Tuple[TreeNode, int]] = [(self, 0)]
        while stack:
            node, depth = stack.pop()
            yield node, depth
            stack.extend((child, depth + 1) for child in reversed(node.children))

    def to_dict(self) -> dict:
        """Nested dict form (built without recursion)."""
        root: dict = {}
        stack: List[Tuple[TreeNode, dict]] = [(self, root)]
        while stack:
            node, out = stack.pop()
            out["label"] = node.label
            if node.cycle:
                out["cycle"] = True
            if node.truncated:
                out["truncated"] = True
            out["children"] = []
            for child in node.children:
                child_out: dict = {}
                out["children"].append(child_out)
                stack.append((child, child_out))
        return root


def build_tree(root: str, relations: Mapping[str, Sequence[str]],
               max_depth: Optional[int] = None) -> TreeNode:
    """
    Rebuild the caller tree under *root*.

    The set of labels on the path from the root to the node being
    expanded is tracked explicitly; a caller already on that path becomes
    a leaf marked ``cycle``.  Labels with no entry in *relations* are
    leaves.  *relations* is only read.
    """
    root_node = TreeNode(root)
    if max_depth is not None and max_depth <= 0:
        root_node.truncated = bool(relations.get(root))
        return root_node
    stack: List[Tuple[TreeNode, Iterator[str], int]] = [
        (root_node, iter(relations.get(root, ())), 0)
    ]
    ancestors = {root}

    while stack:
        node, callers, depth = stack[-1]
        label = next(callers, None)
        if label is None:
            stack.pop()
            ancestors.discard(node.label)
            continue
        if label in ancestors:
            node.children.append(TreeNode(label, cycle=True))
            continue
        child = TreeNode(label)
        node.children.append(child)
        if max_depth is not None and depth + 1 >= max_depth:
            child.truncated = bool(relations.get(label))
            continue
        ancestors.add(label)
        stack.append((child, iter(relations.get(label, ())), depth + 1))

    return root_node


# =============================================================================
# Search
# =============================================================================

@dataclass
class QueryHit:
    """One query whose decoded text matched, with its owner's caller tree."""
    encoded_text: str
    query_text: str
    owner: str
    spans: List[Span]
    tree: TreeNode

    def to_dict(self, common_path: str = "") -> dict:
        return {
            "query": self.query_text,
            "owner": self.owner,
            "owner_display": display_label(self.owner, common_path),
            "spans": [list(s) for s in self.spans],
            "tree": self.tree.to_dict(),
        }


class QuerySearchEngine:
    """
    Search over one immutable analysis document.

    The engine only reads the document, so any number of searches may
    run concurrently against the same instance.
    """

    def __init__(self, document: AnalysisDocument):
        self.document = document
        self._relations: Optional[Dict[str, Sequence[str]]] = None
        self._common_path: Optional[str] = None

    @property
    def relations(self) -> Dict[str, Sequence[str]]:
        if self._relations is None:
            self._relations = self.document.relations_map()
        return self._relations

    @property
    def common_path(self) -> str:
        if self._common_path is None:
            self._common_path = common_path_prefix(document_labels(self.document))
        return self._common_path

    def search(self, text: str = "", max_depth: Optional[int] = None) -> List[QueryHit]:
        """
        Every query whose decoded text contains *text* (``""`` matches all),
        each with a caller tree rooted at the query's owner.
        """
        hits: List[QueryHit] = []
        for encoded, owner in self.document.queries:
            try:
                decoded = decode_query_text(encoded)
            except DocumentError as e:
                logger.warning(f"Skipping query owned by {owner}: {e}")
                continue
            if text not in decoded:
                continue
            hits.append(QueryHit(
                encoded_text=encoded,
                query_text=decoded,
                owner=owner,
                spans=highlight_spans(decoded, text),
                tree=self.tree(owner, max_depth=max_depth),
            ))
        logger.debug(f"Search '{text}': {len(hits)} of {len(self.document.queries)} queries")
        return hits

    def tree(self, label: str, max_depth: Optional[int] = None) -> TreeNode:
        return build_tree(label, self.relations, max_depth=max_depth)


# =============================================================================
# Result Formatting
# =============================================================================

class ResultFormatter:
    """Format search hits for different output modes."""

    _LAYER_COLORS = {"repository": "green", "service": "yellow", "controller": "cyan"}

    @staticmethod
    def format_tree(tree: TreeNode, common_path: str = "", color: bool = True) -> str:
        """One line per node, box-drawing connectors, common prefix removed."""
        lines: List[str] = []
        # (node, prefix for this node's line, prefix for its children)
        stack: List[Tuple[TreeNode, str, str]] = [(tree, "", "")]
        while stack:
            node, prefix, child_prefix = stack.pop()
            text = display_label(node.label, common_path)
            layer = layer_of(node.label)
            if layer and color:
                text = click.style(text, fg=ResultFormatter._LAYER_COLORS[layer])
            if node.cycle:
                text += " (cycle)"
            if node.truncated:
                text += " …"
            lines.append(prefix + text)
            count = len(node.children)
            for i in range(count - 1, -1, -1):
                last = i == count - 1
                stack.append((
                    node.children[i],
                    child_prefix + ("└── " if last else "├── "),
                    child_prefix + ("    " if last else "│   "),
                ))
        return "\n".join(lines)

    @staticmethod
    def format_console(hits: List[QueryHit], common_path: str = "",
                       color: bool = True) -> str:
        if not hits:
            return "  No matching queries."
        out: List[str] = []
        if common_path:
            out.append(f"  Common path: {common_path}")
            out.append("")
        for n, hit in enumerate(hits, start=1):
            out.append(f"─── [{n}] " + "─" * 40)
            query = hit.query_text
            if color:
                pieces, cursor = [], 0
                for start, end in hit.spans:
                    pieces.append(query[cursor:start])
                    pieces.append(click.style(query[start:end], bold=True, underline=True))
                    cursor = end
                pieces.append(query[cursor:])
                query = "".join(pieces)
            out.extend("    " + line for line in query.splitlines())
            out.append("")
            out.append(ResultFormatter.format_tree(hit.tree, common_path, color))
            out.append("")
        return "\n".join(out)

    @staticmethod
    def format_json(hits: List[QueryHit], common_path: str = "") -> str:
        return json.dumps({
            "common_path": common_path,
            "results": [hit.to_dict(common_path) for hit in hits],
        }, ensure_ascii=False, indent=2)

    @staticmethod
    def format_html(hits: List[QueryHit], common_path: str = "") -> str:
        """Nested ``<ul>`` trees with ``<pre>`` queries; all text is escaped."""
        out: List[str] = ["<ul>"]
        for hit in hits:
            out.append("<li>")
            out.append("<pre>" + render_highlighted(hit.query_text, hit.spans) + "</pre>")
            # depth changes drive the open/close of nested lists
            current = -1
            for node, depth in hit.tree.walk():
                while current < depth:
                    out.append("<ul>")
                    current += 1
                while current > depth:
                    out.append("</ul>")
                    current -= 1
                css = layer_of(node.label) or ""
                out.append(
                    f'<li class="{css}">' if css else "<li>"
                )
                out[-1] += escape_markup(display_label(node.label, common_path)) + "</li>"
            while current >= 0:
                out.append("</ul>")
                current -= 1
            out.append("</li>")
        out.append("</ul>")
        return "\n".join(out)
