"""Partition chapters into processing groups by user-assigned tags."""

from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .models import Chapter, ProcessingGroup


def _clean_tag(tag: Optional[str]) -> Optional[str]:
    if tag is None:
        return None
    tag = tag.strip()
    return tag or None


def tagged_group_id(chapter_ids: Iterable[str]) -> str:
    """Stable id for a tagged group: depends on the member set, not its order."""
    joined = "_".join(sorted(chapter_ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def group_chapters(chapters: Sequence[Chapter],
                   tags: Mapping[str, Optional[str]]) -> List[ProcessingGroup]:
    """
    Walk chapters in document order:
    - an untagged chapter becomes its own group, keyed by its title
    - the first chapter carrying a tag pulls in every chapter with that tag,
      wherever it sits, in document order
    - later chapters with an already consumed tag are skipped
    """
    cleaned: Dict[str, Optional[str]] = {ch.id: _clean_tag(tags.get(ch.id)) for ch in chapters}
    groups: List[ProcessingGroup] = []
    consumed: Set[str] = set()

    for chapter in chapters:
        tag = cleaned[chapter.id]
        if tag is None:
            groups.append(ProcessingGroup(
                group_id=chapter.title,
                tag=None,
                chapter_ids=(chapter.id,),
                chapter_titles=(chapter.title,),
            ))
            continue
        if tag in consumed:
            continue
        consumed.add(tag)
        members = [ch for ch in chapters if cleaned[ch.id] == tag]
        groups.append(ProcessingGroup(
            group_id=tagged_group_id(ch.id for ch in members),
            tag=tag,
            chapter_ids=tuple(ch.id for ch in members),
            chapter_titles=tuple(ch.title for ch in members),
        ))
    return groups


def group_fingerprint(groups: Sequence[ProcessingGroup]) -> str:
    """Fingerprint of the group layout, used to spot stale whole-book cache entries."""
    h = hashlib.sha256()
    for group in groups:
        h.update(group.group_id.encode("utf-8"))
        h.update(b"\x00")
        h.update("\x1f".join(group.chapter_ids).encode("utf-8"))
        h.update(b"\x1e")
    return h.hexdigest()[:16]
