from __future__ import annotations

import copy

from o_trace import SpanRecord, spans_to_tree


def _span(span_id: str, parent=None, start=None, name=None, span_type="task") -> SpanRecord:
    return SpanRecord(
        id=span_id,
        span_id=span_id,
        root_span_id="root",
        span_parents=[parent] if parent else None,
        metrics={"start": start} if start is not None else None,
        span_attributes={"name": name or span_id, "type": span_type},
    )


def test_empty_input_has_no_tree():
    assert spans_to_tree([]) is None


def test_no_root_has_no_tree():
    assert spans_to_tree([_span("a", parent="x"), _span("b", parent="a")]) is None


def test_equal_start_keeps_insertion_order():
    spans = [
        _span("root", start=0),
        _span("turn", parent="root", start=10),
        _span("tool", parent="turn", start=20, span_type="tool"),
        _span("llm", parent="turn", start=20, span_type="llm"),
    ]
    tree = spans_to_tree(spans)
    assert [c.span_id for c in tree.children[0].children] == ["tool", "llm"]


def test_siblings_sorted_by_start():
    spans = [
        _span("root"),
        _span("late", parent="root", start=300),
        _span("early", parent="root", start=100),
        _span("unset", parent="root"),
    ]
    tree = spans_to_tree(spans)
    assert [c.span_id for c in tree.children] == ["unset", "early", "late"]


def test_only_first_parent_is_followed():
    spans = [_span("root"), _span("a", parent="root"), _span("b", parent="a")]
    spans[2].span_parents = ["a", "root"]
    tree = spans_to_tree(spans)
    assert [c.span_id for c in tree.children] == ["a"]
    assert [c.span_id for c in tree.children[0].children] == ["b"]


def test_self_parented_record_is_a_root():
    spans = [_span("orphan", parent="x"), _span("root", parent="root"), _span("kid", parent="root")]
    tree = spans_to_tree(spans)
    assert tree.span_id == "root"
    assert [c.span_id for c in tree.children] == ["kid"]


def test_input_is_not_mutated_and_repeatable():
    spans = [_span("root", start=1), _span("b", parent="root", start=5), _span("a", parent="root", start=2)]
    before = copy.deepcopy(spans)
    first = spans_to_tree(spans)
    second = spans_to_tree(spans)
    assert spans == before
    assert first == second
    first.metrics["start"] = 99
    assert spans[0].metrics["start"] == 1


def test_parent_cycle_terminates():
    spans = [_span("root"), _span("a", parent="b"), _span("b", parent="a")]
    tree = spans_to_tree(spans)
    assert tree.children == []


def test_find_and_walk():
    spans = [_span("root"), _span("turn", parent="root"), _span("llm", parent="turn", span_type="llm")]
    tree = spans_to_tree(spans)
    assert [n.span_id for n in tree.walk()] == ["root", "turn", "llm"]
    assert tree.find(lambda n: n.type == "llm").span_id == "llm"
    assert tree.find(lambda n: n.type == "tool") is None
    assert len(tree.find_all(lambda n: n.type == "task")) == 2
