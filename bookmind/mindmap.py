"""Mind-map tree helpers: validation, merging per-group maps, flattening."""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .errors import MalformedArtifact
from .models import MindMap

ROOT_ID = "root"


def _validate_node(node: Any, label: str, where: str) -> None:
    if not isinstance(node, dict):
        raise MalformedArtifact(f"The {label} has a non-object node at {where}")
    if "topic" not in node:
        raise MalformedArtifact(f"The {label} node at {where} has no topic")
    children = node.setdefault("children", [])
    if not isinstance(children, list):
        raise MalformedArtifact(f"The {label} node at {where} has non-list children")
    for i, child in enumerate(children):
        _validate_node(child, label, f"{where}.children[{i}]")


def validate_mind_map(data: Any, label: str = "mind map") -> MindMap:
    """Accept a decoded backend answer only if every node is an object with a topic and a children list."""
    if not isinstance(data, dict):
        raise MalformedArtifact(f"The {label} is not a JSON object")
    node = data.get("nodeData")
    if not isinstance(node, dict) or "topic" not in node:
        raise MalformedArtifact(f"The {label} has no nodeData root")
    node.setdefault("id", ROOT_ID)
    _validate_node(node, label, "nodeData")
    return data


class _IdAllocator:
    """Hands out ``<prefix>.<id>`` ids that are unique within one group."""

    def __init__(self, prefix: str, reserved: Set[str]) -> None:
        self.prefix = prefix
        self.reserved = reserved
        self.used: Set[str] = set()
        self.counter = 0

    def take(self, old_id: Optional[str]) -> str:
        if old_id and old_id not in self.used:
            self.used.add(old_id)
            return f"{self.prefix}.{old_id}"
        while True:
            self.counter += 1
            candidate = str(self.counter)
            if candidate not in self.reserved and candidate not in self.used:
                self.used.add(candidate)
                return f"{self.prefix}.{candidate}"


def _reid(node: Dict[str, Any], ids: _IdAllocator, mapping: Dict[str, str]) -> Dict[str, Any]:
    old_id = str(node["id"]) if node.get("id") not in (None, "") else None
    new_id = ids.take(old_id)
    # first occurrence owns the old id for summaries and arrows
    if old_id is not None:
        mapping.setdefault(old_id, new_id)
    out = {k: v for k, v in node.items() if k != "children"}
    out["id"] = new_id
    out["children"] = [_reid(child, ids, mapping) for child in node.get("children") or []]
    return out


def merge_mind_maps(book_title: str, parts: Sequence[Tuple[str, Optional[MindMap]]]) -> MindMap:
    """
    Combine per-group maps under one synthetic root.

    Group ``n`` (1-based) becomes a child node ``group_<n>`` whose children are
    that group's root children. Descendant ids are prefixed with ``group_<n>.``
    so ids from different groups cannot collide; summaries and arrows that
    point at nodes are rewritten to the new ids and concatenated in group order.
    """
    children: List[Dict[str, Any]] = []
    summaries: List[Dict[str, Any]] = []
    arrows: List[Dict[str, Any]] = []

    for n, (title, mind_map) in enumerate(parts, start=1):
        prefix = f"group_{n}"
        mapping: Dict[str, str] = {}
        root = (mind_map or {}).get("nodeData") or {}
        if root.get("id") is not None:
            mapping[str(root["id"])] = prefix
        reserved = {
            str(node["id"]) for child in root.get("children") or []
            for _, node in iter_nodes(child) if node.get("id") not in (None, "")
        }
        ids = _IdAllocator(prefix, reserved)
        children.append({
            "topic": title,
            "id": prefix,
            "children": [_reid(child, ids, mapping) for child in root.get("children") or []],
        })
        for summary in (mind_map or {}).get("summaries") or []:
            s = copy.deepcopy(summary)
            if "id" in s:
                s["id"] = f"{prefix}.{s['id']}"
            if "parent" in s:
                s["parent"] = mapping.get(str(s["parent"]), prefix)
            summaries.append(s)
        for arrow in (mind_map or {}).get("arrows") or []:
            a = copy.deepcopy(arrow)
            if "id" in a:
                a["id"] = f"{prefix}.{a['id']}"
            for end in ("from", "to"):
                if end in a:
                    a[end] = mapping.get(str(a[end]), a[end])
            arrows.append(a)

    return {
        "nodeData": {"topic": book_title, "id": ROOT_ID, "children": children},
        "arrows": arrows,
        "summaries": summaries,
    }


def iter_nodes(node: Dict[str, Any], path: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], Dict[str, Any]]]:
    """Depth-first walk yielding (ancestor ids, node)."""
    yield path, node
    for child in node.get("children") or []:
        yield from iter_nodes(child, path + (str(node.get("id")),))


def flatten(mind_map: MindMap) -> List[Dict[str, Any]]:
    return [node for _, node in iter_nodes(mind_map["nodeData"])]


def to_markdown(mind_map: MindMap) -> str:
    """Render a tree as a nested markdown list."""
    lines: List[str] = []

    def walk(node: Dict[str, Any], depth: int) -> None:
        lines.append(f"{'  ' * depth}- {node.get('topic', '')}")
        for child in node.get("children") or []:
            walk(child, depth + 1)

    walk(mind_map["nodeData"], 0)
    return "\n".join(lines) + "\n"
