"""Data structures passed between the loader, the pipeline and its observers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# A mind map is kept as the plain JSON document the backend returns:
# {"nodeData": {"topic", "id", "children": [...]}, "arrows": [...], "summaries": [...]}
MindMap = Dict[str, Any]


class ProcessingMode(str, Enum):
    SUMMARY = "summary"
    MINDMAP = "mindmap"
    COMBINED_MINDMAP = "combined-mindmap"


class BookType(str, Enum):
    FICTION = "fiction"
    NON_FICTION = "non-fiction"


class StageKind(str, Enum):
    SUMMARY = "summary"
    MINDMAP = "mindmap"
    CONNECTIONS = "connections"
    OVERALL_SUMMARY = "overall_summary"
    CHARACTER_RELATIONSHIP = "character_relationship"
    COMBINED_MINDMAP = "combined_mindmap"
    MERGED_MINDMAP = "merged_mindmap"

    @property
    def per_group(self) -> bool:
        return self in (StageKind.SUMMARY, StageKind.MINDMAP)


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Chapter:
    id: str
    title: str
    content: str
    summary: Optional[str] = None
    mind_map: Optional[MindMap] = None


@dataclass(frozen=True)
class BookMeta:
    title: str
    author: str = ""


@dataclass(frozen=True)
class ProcessingGroup:
    """One processing unit: a tagged set of chapters or a single untagged chapter."""

    group_id: str
    tag: Optional[str]
    chapter_ids: tuple
    chapter_titles: tuple

    @property
    def display_title(self) -> str:
        if self.tag:
            return f"{self.tag} ({', '.join(self.chapter_titles)})"
        return self.chapter_titles[0] if self.chapter_titles else self.group_id


@dataclass
class GroupResult:
    group: ProcessingGroup
    summary: Optional[str] = None
    mind_map: Optional[MindMap] = None
    is_loading: bool = False


@dataclass
class SummaryArtifact:
    title: str
    author: str
    groups: List[GroupResult] = field(default_factory=list)
    connections: str = ""
    overall_summary: str = ""
    character_relationship: Optional[str] = None


@dataclass
class MindMapArtifact:
    title: str
    author: str
    groups: List[GroupResult] = field(default_factory=list)
    combined_mind_map: Optional[MindMap] = None


@dataclass
class PipelineState:
    status: RunStatus = RunStatus.IDLE
    step: str = ""
    progress: float = 0.0
    error: Optional[str] = None
