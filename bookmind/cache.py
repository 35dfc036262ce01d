"""Persistent store of stage outputs, keyed by document, stage kind and group."""

from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .models import StageKind

log = logging.getLogger(__name__)

ALL_FOR_DOCUMENT = "all"

# Per-document settings live beside the stage entries but are never stage output.
_TAGS_FILE = "_chapter_tags.json"
_SELECTION_FILE = "_selected_chapters.json"


def safe_name(name: str, fallback: str = "item") -> str:
    return re.sub(r"[^-\w]+", "_", name).strip("_")[:60] or fallback


def _short_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:10]


def document_identity(path: Union[str, Path]) -> str:
    """
    Identity of a source file for cache addressing.

    Content-addressed when the file can be read; otherwise the bare name is
    used, which is advisory only (two different files with the same name share
    entries).
    """
    path = Path(path)
    stem = safe_name(path.stem, "book")
    try:
        h = hashlib.sha256()
        with path.open("rb") as f:
            for block in iter(lambda: f.read(1 << 16), b""):
                h.update(block)
    except OSError:
        log.debug("cannot read %s; falling back to name-based identity", path)
        return stem
    return f"{stem}-{h.hexdigest()[:12]}"


class CacheStore:
    """
    One JSON file per entry::

        <root>/<document>/<kind>.json             whole-book stages
        <root>/<document>/<kind>--<group>.json    per-group stages

    File names are a readable slug plus a digest of the raw key, so titles
    with path characters are safe and distinct keys never share a file.
    Writes overwrite; last write wins.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    # ---------------- paths ----------------
    def _doc_dir(self, document_id: str) -> Path:
        return self.root / f"{safe_name(document_id, 'book')}-{_short_digest(document_id)}"

    def _entry_path(self, document_id: str, kind: StageKind, group_id: Optional[str]) -> Path:
        kind = StageKind(kind)
        if kind.per_group and group_id is None:
            raise ValueError(f"stage {kind.value!r} is cached per group; group_id is required")
        if not kind.per_group and group_id is not None:
            raise ValueError(f"stage {kind.value!r} is a whole-book stage; group_id must be omitted")
        if group_id is None:
            name = f"{kind.value}.json"
        else:
            name = f"{kind.value}--{safe_name(group_id, 'group')}-{_short_digest(group_id)}.json"
        return self._doc_dir(document_id) / name

    # ---------------- stage entries ----------------
    def get(self, document_id: str, kind: StageKind, group_id: Optional[str] = None,
            fingerprint: Optional[str] = None) -> Any:
        path = self._entry_path(document_id, kind, group_id)
        if not path.is_file():
            return None
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            log.warning("discarding unreadable cache entry %s", path)
            path.unlink(missing_ok=True)
            return None
        if fingerprint is not None and envelope.get("fingerprint") != fingerprint:
            log.info("cache entry %s is stale (group layout changed); discarding", path.name)
            path.unlink(missing_ok=True)
            return None
        return envelope.get("value")

    def set(self, document_id: str, kind: StageKind, value: Any, group_id: Optional[str] = None,
            fingerprint: Optional[str] = None) -> None:
        path = self._entry_path(document_id, kind, group_id)
        envelope = {
            "kind": StageKind(kind).value,
            "group_id": group_id,
            "fingerprint": fingerprint,
            "written_at": dt.datetime.now().isoformat(timespec="seconds"),
            "value": value,
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    def invalidate(self, document_id: str, kind: Union[StageKind, str]) -> int:
        """Remove every entry of ``kind`` (or every stage entry of the document); returns the count."""
        doc_dir = self._doc_dir(document_id)
        if not doc_dir.is_dir():
            return 0
        if kind == ALL_FOR_DOCUMENT:
            pattern = "*.json"
        else:
            kind = StageKind(kind)
            pattern = f"{kind.value}--*.json" if kind.per_group else f"{kind.value}.json"
        removed = 0
        for path in doc_dir.glob(pattern):
            if path.name.startswith("_"):
                continue
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    def invalidate_group(self, document_id: str, kind: StageKind, group_id: str) -> bool:
        path = self._entry_path(document_id, kind, group_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    # ---------------- per-document selections ----------------
    def _read_setting(self, document_id: str, name: str) -> Any:
        path = self._doc_dir(document_id) / name
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    def _write_setting(self, document_id: str, name: str, value: Any) -> None:
        path = self._doc_dir(document_id) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(value, ensure_ascii=False, indent=2), encoding="utf-8")

    def get_chapter_tags(self, document_id: str, valid_ids: Sequence[str]) -> Dict[str, str]:
        """Saved tags, restricted to chapters the current document still has."""
        raw = self._read_setting(document_id, _TAGS_FILE) or {}
        valid = set(valid_ids)
        return {cid: str(tag) for cid, tag in raw.items() if cid in valid and str(tag).strip()}

    def set_chapter_tags(self, document_id: str, tags: Dict[str, Optional[str]]) -> None:
        self._write_setting(document_id, _TAGS_FILE, {k: v for k, v in tags.items() if v and v.strip()})

    def get_selected_chapters(self, document_id: str, valid_ids: Sequence[str]) -> List[str]:
        """Saved selection in document order; empty when nothing saved is still valid."""
        raw = self._read_setting(document_id, _SELECTION_FILE) or []
        saved = set(raw)
        return [cid for cid in valid_ids if cid in saved]

    def set_selected_chapters(self, document_id: str, chapter_ids: Sequence[str]) -> None:
        self._write_setting(document_id, _SELECTION_FILE, list(chapter_ids))
