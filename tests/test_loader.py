"""Chapter sources: JSON documents and heading-split text."""
from __future__ import annotations

import json

import pytest

from bookmind.errors import LoaderError
from bookmind.loader import load_book, load_tags, split_text_chapters


class TestJson:
    def test_chapters_and_meta(self, tmp_path):
        path = tmp_path / "book.json"
        path.write_text(json.dumps({
            "title": "Dune",
            "author": "Frank Herbert",
            "chapters": [
                {"id": "one", "title": "Arrakis", "content": "Sand."},
                {"title": "", "content": "Spice."},
            ],
        }), encoding="utf-8")

        meta, chapters = load_book(path)

        assert meta.title == "Dune"
        assert meta.author == "Frank Herbert"
        assert [c.id for c in chapters] == ["one", "ch002"]
        assert chapters[1].title == "Chapter 2"

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "book.json"
        path.write_text(json.dumps({"chapters": [{"id": "a"}, {"id": "a"}]}), encoding="utf-8")

        with pytest.raises(LoaderError, match="duplicate"):
            load_book(path)

    def test_not_a_book(self, tmp_path):
        path = tmp_path / "book.json"
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(LoaderError, match="chapters"):
            load_book(path)


class TestText:
    def test_split_on_headings(self):
        text = "Front matter.\n\n# Chapter One\nFirst.\n\n## Chapter Two\nSecond.\n"

        assert split_text_chapters(text) == [
            ("Preface", "Front matter."),
            ("Chapter One", "First."),
            ("Chapter Two", "Second."),
        ]

    def test_chapter_n_headings(self, tmp_path):
        path = tmp_path / "novel.txt"
        path.write_text("Chapter 1\nIt begins.\nChapter 2\nIt ends.\n", encoding="utf-8")

        meta, chapters = load_book(path)

        assert meta.title == "novel"
        assert [(c.id, c.title, c.content) for c in chapters] == [
            ("ch001", "Chapter 1", "It begins."),
            ("ch002", "Chapter 2", "It ends."),
        ]

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "book.epub"
        path.write_bytes(b"PK")

        with pytest.raises(LoaderError, match="Unsupported"):
            load_book(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoaderError, match="not found"):
            load_book(tmp_path / "gone.md")


def test_load_tags(tmp_path):
    path = tmp_path / "tags.json"
    path.write_text(json.dumps({"c1": "intro", "c2": None}), encoding="utf-8")

    assert load_tags(path) == {"c1": "intro"}
