"""Mind-map validation, merging and rendering."""
from __future__ import annotations

import pytest

from bookmind.errors import MalformedArtifact
from bookmind.mindmap import ROOT_ID, flatten, iter_nodes, merge_mind_maps, to_markdown, validate_mind_map


def _map(topic, *children, summaries=None, arrows=None):
    return {
        "nodeData": {
            "topic": topic,
            "id": "1",
            "children": [
                {"topic": c, "id": str(i + 2), "children": [{"topic": f"{c} detail", "id": f"{i + 2}a"}]}
                for i, c in enumerate(children)
            ],
        },
        "summaries": summaries or [],
        "arrows": arrows or [],
    }


class TestValidate:
    def test_fills_defaults(self):
        data = validate_mind_map({"nodeData": {"topic": "T"}})
        assert data["nodeData"]["id"] == ROOT_ID
        assert data["nodeData"]["children"] == []

    @pytest.mark.parametrize("bad", [[], {"nodes": {}}, {"nodeData": {"id": "1"}}, {"nodeData": {"topic": "T", "children": "x"}}])
    def test_rejects(self, bad):
        with pytest.raises(MalformedArtifact, match="chapter map"):
            validate_mind_map(bad, "chapter map")

    @pytest.mark.parametrize("children", [
        ["a", "b"],
        [{"topic": "ok", "children": [42]}],
        [{"id": "2"}],
        [{"topic": "ok", "children": {"topic": "x"}}],
    ])
    def test_rejects_bad_descendants(self, children):
        with pytest.raises(MalformedArtifact, match="chapter map"):
            validate_mind_map({"nodeData": {"topic": "T", "id": "1", "children": children}}, "chapter map")

    def test_fills_children_below_root(self):
        data = validate_mind_map({"nodeData": {"topic": "T", "children": [{"topic": "leaf", "id": "2"}]}})
        assert data["nodeData"]["children"][0]["children"] == []


class TestMerge:
    def test_groups_under_synthetic_root(self):
        merged = merge_mind_maps("Book", [("Chapter 1", _map("C1", "a", "b")), ("Chapter 2", _map("C2", "c"))])

        root = merged["nodeData"]
        assert root["topic"] == "Book"
        assert root["id"] == ROOT_ID
        assert [(g["id"], g["topic"]) for g in root["children"]] == [("group_1", "Chapter 1"), ("group_2", "Chapter 2")]
        assert [c["topic"] for c in root["children"][0]["children"]] == ["a", "b"]
        assert root["children"][1]["children"][0]["children"][0]["topic"] == "c detail"

    def test_ids_are_unique(self):
        merged = merge_mind_maps("Book", [("A", _map("A", "x", "y")), ("B", _map("B", "x", "y"))])

        ids = [node["id"] for node in flatten(merged)]
        assert len(ids) == len(set(ids))
        assert "group_2.2a" in ids

    def test_summaries_and_arrows_follow_their_nodes(self):
        first = _map("A", "x", summaries=[{"id": "s1", "parent": "2", "start": 0, "end": 0, "text": "sum"}])
        second = _map("B", "y", "z", arrows=[{"id": "a1", "from": "2", "to": "3", "label": "leads to"}])

        merged = merge_mind_maps("Book", [("A", first), ("B", second)])

        assert merged["summaries"] == [{"id": "group_1.s1", "parent": "group_1.2", "start": 0, "end": 0, "text": "sum"}]
        assert merged["arrows"] == [{"id": "group_2.a1", "from": "group_2.2", "to": "group_2.3", "label": "leads to"}]

    def test_summary_on_group_root(self):
        part = _map("A", "x", summaries=[{"id": "s", "parent": "1"}])

        merged = merge_mind_maps("Book", [("A", part)])

        assert merged["summaries"][0]["parent"] == "group_1"

    def test_missing_part_gives_empty_group(self):
        merged = merge_mind_maps("Book", [("A", None)])

        assert merged["nodeData"]["children"] == [{"topic": "A", "id": "group_1", "children": []}]

    def test_inputs_untouched(self):
        part = _map("A", "x")
        merge_mind_maps("Book", [("A", part)])
        assert part["nodeData"]["children"][0]["id"] == "2"

    def test_children_without_ids_get_distinct_ids(self):
        part = {"nodeData": {"topic": "A", "id": "1", "children": [{"topic": "a"}, {"topic": "b"}, {"topic": "c"}]}}

        ids = [node["id"] for node in flatten(merge_mind_maps("Book", [("A", part)]))]

        assert len(ids) == len(set(ids)) == 5

    def test_generated_ids_skip_real_ones(self):
        part = {"nodeData": {"topic": "A", "id": "root", "children": [
            {"topic": "a"},
            {"topic": "b", "id": "1"},
            {"topic": "c", "id": "1"},
        ]}}
        arrow = {"id": "x", "from": "1", "to": "1"}
        part["arrows"] = [arrow]

        merged = merge_mind_maps("Book", [("A", part)])

        group = merged["nodeData"]["children"][0]
        ids = [child["id"] for child in group["children"]]
        assert len(set(ids)) == 3
        assert group["children"][1]["id"] == "group_1.1"
        assert merged["arrows"][0]["from"] == "group_1.1"

    def test_every_child_lands_once_under_its_group(self):
        parts = [("A", _map("A", "x", "y")), ("B", _map("B", "x")), ("C", _map("C", "z", "w", "v"))]

        merged = merge_mind_maps("Book", parts)

        placed = [(path, node["topic"]) for path, node in iter_nodes(merged["nodeData"]) if len(path) >= 2]
        for n, (_, part) in enumerate(parts, start=1):
            expected = sorted(node["topic"] for _, node in iter_nodes(part["nodeData"]) if node is not part["nodeData"])
            found = sorted(topic for path, topic in placed if path[:2] == (ROOT_ID, f"group_{n}"))
            assert found == expected
        assert len(placed) == sum(len(flatten(p)) - 1 for _, p in parts)


def test_to_markdown():
    md = to_markdown(_map("Root", "a"))
    assert md == "- Root\n  - a\n    - a detail\n"
