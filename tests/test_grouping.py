"""Chapter grouping by tag: order, determinism, and exactly-once membership."""
from __future__ import annotations

import hashlib

from bookmind.grouping import group_chapters, group_fingerprint, tagged_group_id
from bookmind.models import Chapter


class TestGroupChapters:
    def test_intro_tag_and_three_singletons(self, chapters):
        groups = group_chapters(chapters, {"c1": "intro", "c2": "intro"})

        assert len(groups) == 4
        intro = groups[0]
        assert intro.tag == "intro"
        assert intro.chapter_ids == ("c1", "c2")
        assert [g.group_id for g in groups[1:]] == ["Chapter 3", "Chapter 4", "Chapter 5"]
        assert all(g.tag is None for g in groups[1:])

    def test_tagged_group_sits_at_first_member(self, chapters):
        groups = group_chapters(chapters, {"c2": "arc", "c5": "arc"})

        assert [g.chapter_ids for g in groups] == [("c1",), ("c2", "c5"), ("c3",), ("c4",)]

    def test_every_chapter_in_exactly_one_group(self, chapters):
        tags = {"c1": "a", "c3": "b", "c4": "a", "c5": "b"}
        groups = group_chapters(chapters, tags)

        members = [cid for g in groups for cid in g.chapter_ids]
        assert sorted(members) == ["c1", "c2", "c3", "c4", "c5"]
        assert len(members) == len(set(members))

    def test_blank_tags_count_as_untagged(self, chapters):
        groups = group_chapters(chapters, {"c1": "  ", "c2": ""})

        assert len(groups) == 5
        assert all(g.tag is None for g in groups)

    def test_tags_are_trimmed(self, chapters):
        groups = group_chapters(chapters, {"c1": "intro ", "c2": " intro"})

        assert groups[0].chapter_ids == ("c1", "c2")

    def test_display_title(self, chapters):
        groups = group_chapters(chapters, {"c1": "intro", "c2": "intro"})

        assert groups[0].display_title == "intro (Chapter 1, Chapter 2)"
        assert groups[1].display_title == "Chapter 3"


class TestGroupIds:
    def test_tagged_id_is_hash_of_sorted_ids(self):
        expected = hashlib.sha256(b"c1_c2").hexdigest()[:16]
        assert tagged_group_id(["c2", "c1"]) == expected

    def test_deterministic_across_invocations(self, chapters):
        tags = {"c1": "intro", "c2": "intro"}
        first = group_chapters(chapters, tags)
        second = group_chapters(chapters, tags)

        assert [g.group_id for g in first] == [g.group_id for g in second]

    def test_fingerprint_changes_with_layout(self, chapters):
        before = group_fingerprint(group_chapters(chapters, {}))
        after = group_fingerprint(group_chapters(chapters, {"c1": "x", "c2": "x"}))

        assert before != after
        assert before == group_fingerprint(group_chapters(chapters, {}))

    def test_untagged_group_keyed_by_title(self):
        chapters = [Chapter("a", "Prologue", "text")]
        assert group_chapters(chapters, {})[0].group_id == "Prologue"
