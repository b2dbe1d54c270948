"""Step-result placeholder resolution and dependency layering."""

from __future__ import annotations

import pytest

from core.errors import BindingResolutionError
from planner.bindings import parse_path, references, resolve, split_reference
from planner.dependency_graph import DependencyGraph

RESULTS = {
    "step1": {"status": 200, "data": [{"id": 7, "title": "hello"}, {"id": 8}]},
    "step2": {"expression": "2+2", "result": 4},
}


def test_split_reference_accepts_both_index_styles() -> None:
    assert split_reference("step1.data[0].id") == ("step1", ["data", 0, "id"])
    assert split_reference("step1.data.0.id") == ("step1", ["data", "0", "id"])
    assert parse_path("[1].name") == [1, "name"]


def test_whole_placeholder_keeps_type() -> None:
    assert resolve("{{step1.data[0].id}}", RESULTS) == 7
    assert resolve("{{step1.data.1}}", RESULTS) == {"id": 8}
    assert resolve({"n": "{{ step2.result }}"}, RESULTS) == {"n": 4}


def test_embedded_placeholder_is_substituted_as_text() -> None:
    url = "https://api.example.com/comments?postId={{step1.data[0].id}}&x={{step2.result}}"
    assert resolve(url, RESULTS) == "https://api.example.com/comments?postId=7&x=4"
    assert resolve(["a {{step1.data[1]}}"], RESULTS) == ['a {"id": 8}']


@pytest.mark.parametrize(
    "value",
    ["{{step3.data}}", "{{step1.data[5].id}}", "{{step1.missing}}", "{{step2.result.deeper}}"],
)
def test_unresolvable_placeholders_raise(value: str) -> None:
    with pytest.raises(BindingResolutionError):
        resolve(value, RESULTS)


def test_references_collects_step_ids() -> None:
    args = {"url": "http://x/{{step1.data[0].id}}", "body": {"items": ["{{step3.value}}"]}}
    assert references(args) == {"step1", "step3"}
    assert references({"url": "http://x/{id}"}) == set()


def test_layers_group_independent_steps() -> None:
    graph = DependencyGraph.from_dependencies({"a": [], "b": [], "c": ["a", "b"], "d": ["c"]})
    layers, blocked = graph.layers()
    assert layers == [["a", "b"], ["c"], ["d"]]
    assert blocked == set()
    assert graph.is_acyclic()
    assert graph.downstream({"a"}) == {"c", "d"}


def test_cycles_and_their_dependents_are_blocked() -> None:
    graph = DependencyGraph.from_dependencies({"a": ["b"], "b": ["a"], "c": ["a"], "d": []})
    layers, blocked = graph.layers()
    assert layers == [["d"]]
    assert blocked == {"a", "b", "c"}
    assert not graph.is_acyclic()
