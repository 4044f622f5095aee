"""
Reference graph builder.

Grows the caller relation outward from a set of seed functions and
records it as a finite adjacency map ``Reference -> [caller Reference]``.
The underlying relation may contain cycles (mutual recursion, indirect
loops through interfaces); termination comes from memoization alone: a
reference that is already a key of the map is never looked up again.

The map is owned by the caller.  Pass one in to extend it, or let
:func:`build_call_graph` create a fresh one.  A single map must not be
shared between threads; build per-seed maps and combine them with
:func:`merge_call_graphs` instead.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import (
    Callable, Dict, Iterable, List, MutableMapping, Optional, Protocol, Sequence,
)

from querytrail.core.labels import Reference, normalize_path
from querytrail.core.report import AnalysisReport, IssueKind
from querytrail.exceptions import AnalysisCancelledError

logger = logging.getLogger(__name__)

CallGraph = Dict[Reference, List[Reference]]


# =============================================================================
# Caller elements
# =============================================================================

class CallerElement(Protocol):
    """Anything a caller lookup can return.

    The one capability every variant offers is extracting the underlying
    reference; ``None`` means the element could not be classified.
    """

    def to_reference(self) -> Optional[Reference]:
        ...


@dataclass(frozen=True)
class FunctionElement:
    """A caller that is a named function or method."""
    name: str
    file_path: str
    line: int

    def to_reference(self) -> Optional[Reference]:
        return Reference(self.name, normalize_path(self.file_path), self.line)


@dataclass(frozen=True)
class AnonymousScopeElement:
    """
    A caller with no name of its own: a top-level statement, an ``init``
    block, a property initializer.  *scope* is the placeholder name
    (``<module>``, ``<init>``, ...); *column* tells apart scopes that
    start on the same line.
    """
    scope: str
    file_path: str
    line: int
    column: int = 0

    def to_reference(self) -> Optional[Reference]:
        return Reference(self.scope, normalize_path(self.file_path), self.line,
                         disambiguator=f"col {self.column}")


@dataclass(frozen=True)
class UnresolvedElement:
    """A call edge whose caller cannot be located in the index."""
    description: str

    def to_reference(self) -> Optional[Reference]:
        return None


LookupCallers = Callable[[Reference], Iterable[CallerElement]]


# =============================================================================
# Traversal
# =============================================================================

def _check_budget(deadline: Optional[float], cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError("Call graph build was cancelled.")
    if deadline is not None and time.monotonic() > deadline:
        raise AnalysisCancelledError("Call graph build exceeded its deadline.")


def _classify(
    owner: Reference,
    elements: Iterable[CallerElement],
    report: Optional[AnalysisReport],
) -> List[Reference]:
    callers: List[Reference] = []
    for element in elements:
        ref = element.to_reference()
        if ref is None:
            if report is not None:
                report.add(
                    IssueKind.UNRESOLVABLE_NODE,
                    f"{element} (caller of {owner.render()})",
                    "Caller element could not be classified",
                )
            else:
                logger.warning(f"Dropping unclassifiable caller of {owner.render()}: {element}")
            continue
        callers.append(ref)
    return callers


def build_call_graph(
    seeds: Iterable[Reference],
    lookup_callers: LookupCallers,
    call_relations: Optional[MutableMapping[Reference, List[Reference]]] = None,
    *,
    report: Optional[AnalysisReport] = None,
    deadline: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> MutableMapping[Reference, List[Reference]]:
    """
    Depth-first, memoized caller traversal from every seed.

    Args:
        seeds: Starting references, visited in iteration order.
        lookup_callers: Returns the direct callers of a reference.  May
            block; it is called exactly once per distinct reference.
        call_relations: Existing map to extend.  Keys already present are
            treated as done and are not looked up again.
        report: Receives an ``unresolvable_node`` issue for every caller
            element that cannot be turned into a reference.
        deadline: ``time.monotonic()`` value after which the build stops.
        cancel_event: Stops the build when set.

    Returns:
        The (possibly newly created) map, with keys in discovery order.

    Raises:
        AnalysisCancelledError: When *deadline* passes or *cancel_event*
            is set.  The map keeps everything discovered so far.
    """
    relations: MutableMapping[Reference, List[Reference]] = (
        call_relations if call_relations is not None else {}
    )
    lookups = 0

    for seed in seeds:
        stack: List[Reference] = [seed]
        while stack:
            node = stack.pop()
            if node in relations:
                continue
            _check_budget(deadline, cancel_event)
            callers = _classify(node, lookup_callers(node), report)
            lookups += 1
            relations[node] = callers
            # Reversed so callers are expanded in their listed order.
            stack.extend(reversed(callers))

    logger.debug(f"Call graph: {len(relations)} references after {lookups} lookups")
    return relations


def merge_call_graphs(*graphs: MutableMapping[Reference, List[Reference]]) -> CallGraph:
    """Combine independently built maps; the first map to own a key wins."""
    merged: CallGraph = {}
    for graph in graphs:
        for ref, callers in graph.items():
            if ref not in merged:
                merged[ref] = list(callers)
    return merged


def select_seeds(functions: Sequence, layer: str) -> List[Reference]:
    """
    Return references for every function whose path contains *layer*.

    *functions* holds objects exposing ``file_path`` and ``reference()``
    (e.g. :class:`~querytrail.core.engine.FunctionRecord`).
    """
    return [
        fn.reference() for fn in functions
        if layer in normalize_path(fn.file_path)
    ]
