"""
Tests for querytrail.core.graph — the memoized caller-graph builder.
"""

import threading
import time

import pytest

from querytrail.core.graph import (
    FunctionElement,
    AnonymousScopeElement,
    UnresolvedElement,
    build_call_graph,
    merge_call_graphs,
    select_seeds,
)
from querytrail.core.labels import Reference
from querytrail.core.report import AnalysisReport, IssueKind
from querytrail.exceptions import AnalysisCancelledError


def ref(name: str) -> Reference:
    return Reference(name, f"src/{name}.kt", 1)


class CountingLookup:
    """Lookup over a fixed relation that records every call."""

    def __init__(self, relation):
        self.relation = relation
        self.calls = []

    def __call__(self, node):
        self.calls.append(node)
        return self.relation.get(node, [])


# =============================================================================
# Traversal
# =============================================================================

class TestBuildCallGraph:

    def test_two_cycle_terminates(self):
        a, b = ref("A"), ref("B")
        lookup = CountingLookup({a: [b], b: [a]})
        graph = build_call_graph([a], lookup)
        assert set(graph) == {a, b}
        assert graph[a] == [b]
        assert graph[b] == [a]

    def test_each_reference_looked_up_once(self):
        a, b, c = ref("A"), ref("B"), ref("C")
        lookup = CountingLookup({a: [b, c], b: [c], c: [a]})
        build_call_graph([a, b, c], lookup)
        assert sorted(n.display_name for n in lookup.calls) == ["A", "B", "C"]

    def test_keys_in_depth_first_discovery_order(self):
        a, b, c, d = ref("A"), ref("B"), ref("C"), ref("D")
        lookup = CountingLookup({a: [b, d], b: [c]})
        graph = build_call_graph([a], lookup)
        assert list(graph) == [a, b, c, d]

    def test_callers_keep_listed_order(self):
        a, b, c = ref("A"), ref("B"), ref("C")
        graph = build_call_graph([a], CountingLookup({a: [c, b]}))
        assert graph[a] == [c, b]

    def test_node_without_callers_gets_empty_list(self):
        a = ref("A")
        assert build_call_graph([a], CountingLookup({})) == {a: []}

    def test_no_seeds_gives_empty_map(self):
        assert build_call_graph([], CountingLookup({})) == {}

    def test_existing_keys_are_not_looked_up_again(self):
        a, b = ref("A"), ref("B")
        prior = {a: [b], b: []}
        lookup = CountingLookup({a: [ref("X")]})
        result = build_call_graph([a], lookup, prior)
        assert result is prior
        assert lookup.calls == []
        assert result == {a: [b], b: []}

    def test_extends_given_map(self):
        a, b = ref("A"), ref("B")
        prior = {a: []}
        result = build_call_graph([b], CountingLookup({}), prior)
        assert list(result) == [a, b]

    def test_deep_chain_has_no_recursion_limit(self):
        chain = [ref(f"F{i}") for i in range(5000)]
        relation = {chain[i]: [chain[i + 1]] for i in range(len(chain) - 1)}
        graph = build_call_graph([chain[0]], CountingLookup(relation))
        assert len(graph) == 5000


# =============================================================================
# Caller elements
# =============================================================================

class TestCallerElements:

    def test_function_element(self):
        element = FunctionElement("getUser", "src\\svc\\UserService.kt", 4)
        assert element.to_reference() == Reference("getUser", "src/svc/UserService.kt", 4)

    def test_anonymous_scope_element_is_disambiguated_by_column(self):
        first = AnonymousScopeElement("<module>", "app\\main.py", 10, 0).to_reference()
        second = AnonymousScopeElement("<module>", "app/main.py", 10, 9).to_reference()
        assert first.display_name == "<module>"
        assert first.file_path == "app/main.py"
        assert first.render() == "<module> (app/main.py:10) [col 0]"
        assert first.render() != second.render()

    def test_anonymous_scope_keeps_its_scope_name(self):
        element = AnonymousScopeElement("<init>", "a/Warmup.kt", 2, 4)
        assert element.to_reference().render() == "<init> (a/Warmup.kt:2) [col 4]"

    def test_anonymous_scope_element_is_stable(self):
        assert (AnonymousScopeElement("<module>", "a.py", 3).to_reference()
                == AnonymousScopeElement("<module>", "a.py", 3).to_reference())

    def test_unresolved_element_is_reported_and_dropped(self):
        a, b = ref("A"), ref("B")
        report = AnalysisReport()
        lookup = CountingLookup({a: [UnresolvedElement("lambda @ x.kt:3"), b]})
        graph = build_call_graph([a], lookup, report=report)
        assert graph[a] == [b]
        issues = report.of_kind(IssueKind.UNRESOLVABLE_NODE)
        assert len(issues) == 1
        assert "lambda @ x.kt:3" in issues[0].element

    def test_unresolved_element_without_report_is_logged(self, caplog):
        a = ref("A")
        lookup = CountingLookup({a: [UnresolvedElement("mystery")]})
        with caplog.at_level("WARNING"):
            graph = build_call_graph([a], lookup)
        assert graph == {a: []}
        assert "mystery" in caplog.text

    def test_mixed_elements_are_expanded(self):
        a = ref("A")
        caller = FunctionElement("B", "src/B.kt", 1)
        lookup = CountingLookup({a: [caller]})
        graph = build_call_graph([a], lookup)
        assert graph[a] == [caller.to_reference()]
        assert caller.to_reference() in graph


# =============================================================================
# Deadline & cancellation
# =============================================================================

class TestBudget:

    def test_cancel_event_stops_build(self):
        event = threading.Event()
        event.set()
        with pytest.raises(AnalysisCancelledError, match="cancelled"):
            build_call_graph([ref("A")], CountingLookup({}), cancel_event=event)

    def test_deadline_in_the_past_stops_build(self):
        with pytest.raises(AnalysisCancelledError, match="deadline"):
            build_call_graph([ref("A")], CountingLookup({}), deadline=time.monotonic() - 1)

    def test_partial_map_is_kept_on_cancel(self):
        a, b = ref("A"), ref("B")
        event = threading.Event()
        relations = {}

        def lookup(node):
            event.set()
            return [b] if node == a else []

        with pytest.raises(AnalysisCancelledError):
            build_call_graph([a], lookup, relations, cancel_event=event)
        assert relations == {a: [b]}

    def test_generous_deadline_completes(self):
        a = ref("A")
        graph = build_call_graph([a], CountingLookup({}), deadline=time.monotonic() + 60)
        assert graph == {a: []}


# =============================================================================
# Merge & seeds
# =============================================================================

class TestMergeAndSeeds:

    def test_merge_first_key_wins(self):
        a, b, c = ref("A"), ref("B"), ref("C")
        merged = merge_call_graphs({a: [b]}, {a: [c], c: []})
        assert merged == {a: [b], c: []}
        assert list(merged) == [a, c]

    def test_per_seed_graphs_merge_to_shared_build(self):
        a, b, c = ref("A"), ref("B"), ref("C")
        relation = {a: [c], b: [c]}
        shared = build_call_graph([a, b], CountingLookup(relation))
        merged = merge_call_graphs(
            build_call_graph([a], CountingLookup(relation)),
            build_call_graph([b], CountingLookup(relation)),
        )
        assert merged == dict(shared)

    def test_select_seeds_by_layer(self):
        class Fn:
            def __init__(self, name, path):
                self.name, self.file_path = name, path

            def reference(self):
                return Reference(self.name, self.file_path, 1)

        functions = [
            Fn("findById", "src/user/repository/UserMapper.kt"),
            Fn("getUser", "src/user/service/UserService.kt"),
            Fn("save", "src\\order\\repository\\OrderMapper.kt"),
        ]
        seeds = select_seeds(functions, "/repository/")
        assert [s.display_name for s in seeds] == ["findById", "save"]
