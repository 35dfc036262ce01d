"""Turn an already-extracted book (JSON or plain text / markdown) into chapters."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import LoaderError
from .models import BookMeta, Chapter

HEADING_REGEXES = [
    r"^\s*#{1,2}\s+.+$",
    r"^\s*(chapter|chap\.?)\s+\d+[\.:]?\s+.*$",
    r"^\s*chapter\s+\d+\s*$",
    r"^\s*[ivxlcdm]+\.\s+.+$",
]
SUPPORTED_SUFFIXES = {".json", ".md", ".markdown", ".txt"}


def _compile_heading_regexes():
    return [re.compile(rx, re.IGNORECASE) for rx in HEADING_REGEXES]


def split_text_chapters(text: str) -> List[Tuple[str, str]]:
    """Split on heading lines; text before the first heading becomes a preface chapter."""
    compiled = _compile_heading_regexes()
    chapters: List[Tuple[str, List[str]]] = []
    title, body = None, []
    for line in text.splitlines():
        if any(rx.match(line) for rx in compiled):
            if title is not None or any(l.strip() for l in body):
                chapters.append((title or "Preface", body))
            title, body = line.strip().lstrip("#").strip(), []
        else:
            body.append(line)
    if title is not None or any(l.strip() for l in body):
        chapters.append((title or "Preface", body))
    return [(t, "\n".join(b).strip()) for t, b in chapters if "\n".join(b).strip()]


def _load_json(path: Path) -> Tuple[BookMeta, List[Chapter]]:
    try:
        data: Dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise LoaderError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("chapters"), list):
        raise LoaderError(f"{path} must contain an object with a 'chapters' list")

    chapters: List[Chapter] = []
    seen = set()
    for i, item in enumerate(data["chapters"], start=1):
        if not isinstance(item, dict):
            raise LoaderError(f"chapter #{i} in {path} is not an object")
        cid = str(item.get("id") or f"ch{i:03d}")
        if cid in seen:
            raise LoaderError(f"duplicate chapter id {cid!r} in {path}")
        seen.add(cid)
        chapters.append(Chapter(
            id=cid,
            title=str(item.get("title") or f"Chapter {i}").strip(),
            content=str(item.get("content") or ""),
        ))
    meta = BookMeta(title=str(data.get("title") or path.stem), author=str(data.get("author") or ""))
    return meta, chapters


def load_book(path: Path) -> Tuple[BookMeta, List[Chapter]]:
    path = Path(path)
    if not path.is_file():
        raise LoaderError(f"Book file not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise LoaderError(
            f"Unsupported file extension: {suffix}. Extract the chapters to JSON, markdown or text first."
        )
    if suffix == ".json":
        meta, chapters = _load_json(path)
    else:
        parts = split_text_chapters(path.read_text(encoding="utf-8"))
        chapters = [Chapter(id=f"ch{i:03d}", title=t, content=c) for i, (t, c) in enumerate(parts, start=1)]
        meta = BookMeta(title=path.stem)
    if not chapters:
        raise LoaderError(f"No chapters found in {path}")
    return meta, chapters


def load_tags(path: Path) -> Dict[str, str]:
    """Read a ``{chapter_id: tag}`` JSON mapping."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise LoaderError(f"Cannot read tag file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise LoaderError("Tag file must contain a JSON object mapping chapter ids to tags")
    return {str(k): str(v) for k, v in data.items() if v is not None}
