"""
Book-processing orchestrator.

A run moves through Grouping -> per-group stage (one group at a time) ->
aggregation stages -> Completed, and can end in Failed or Cancelled from any
stage. Every generation step follows the same discipline: cache read, then on
a miss one backend call, then a cancellation check, then the cache write.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .cache import ALL_FOR_DOCUMENT, CacheStore
from .cancellation import CancellationToken
from .config import ProviderConfig, RunSettings, require_credential
from .errors import Cancelled, MalformedArtifact, PipelineError
from .grouping import group_chapters, group_fingerprint
from .mindmap import merge_mind_maps, validate_mind_map
from .models import (
    BookMeta,
    Chapter,
    GroupResult,
    MindMap,
    MindMapArtifact,
    PipelineState,
    ProcessingGroup,
    ProcessingMode,
    RunStatus,
    StageKind,
    SummaryArtifact,
)
from .parsing import extract_fenced_block, parse_json_response, require_text
from .prompts import (
    book_mind_map_prompt,
    chapter_mind_map_prompt,
    chapter_summary_prompt,
    character_relationship_prompt,
    connections_prompt,
    overall_summary_prompt,
    with_language,
)
from .providers import CompletionRequest, ProviderAdapter, create_adapter

log = logging.getLogger(__name__)

Artifact = Union[SummaryArtifact, MindMapArtifact]
AdapterFactory = Callable[[ProviderConfig], ProviderAdapter]

# ---------------- Progress ----------------
GROUPING_PROGRESS = 20.0
GROUP_SPAN = 60.0
AGGREGATION_END = 95.0

# Stage kinds removed when a whole mode's cache is cleared.
MODE_STAGES: Dict[ProcessingMode, Tuple[StageKind, ...]] = {
    ProcessingMode.SUMMARY: (
        StageKind.SUMMARY,
        StageKind.CONNECTIONS,
        StageKind.OVERALL_SUMMARY,
        StageKind.CHARACTER_RELATIONSHIP,
    ),
    ProcessingMode.MINDMAP: (StageKind.MINDMAP, StageKind.MERGED_MINDMAP),
    ProcessingMode.COMBINED_MINDMAP: (StageKind.COMBINED_MINDMAP,),
}


class RunObserver:
    """Receives state changes of a run. Every hook is optional."""

    def on_state(self, state: PipelineState) -> None:
        pass

    def on_group(self, result: GroupResult) -> None:
        pass

    def on_artifact(self, artifact: Artifact) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class _Run:
    """Mutable bookkeeping for one run; discarded when the run ends."""

    def __init__(self, document_id: str, book: BookMeta, settings: RunSettings,
                 provider: ProviderConfig, adapter: ProviderAdapter,
                 token: CancellationToken, observer: RunObserver, state: PipelineState) -> None:
        self.document_id = document_id
        self.book = book
        self.settings = settings
        self.provider = provider
        self.adapter = adapter
        self.token = token
        self.observer = observer
        self.state = state

    def report(self, progress: Optional[float] = None, step: Optional[str] = None) -> None:
        # nothing is reported once cancellation has been requested
        self.token.raise_if_cancelled()
        if progress is not None:
            self.state.progress = max(self.state.progress, min(progress, 100.0))
        if step is not None:
            self.state.step = step
        self.observer.on_state(self.state)

    def emit(self, result: GroupResult) -> None:
        self.token.raise_if_cancelled()
        self.observer.on_group(result)

    def request(self, prompt: str) -> CompletionRequest:
        return CompletionRequest.from_prompt(
            with_language(prompt, self.settings.output_language),
            temperature=self.provider.temperature,
        )


class BookPipeline:
    """Drives one document through grouping, per-group generation and aggregation.

    The cache is injected; the backend adapter is built from the provider
    configuration and rebuilt only when that configuration changes.
    """

    def __init__(self, cache: CacheStore, adapter_factory: AdapterFactory = create_adapter) -> None:
        self.cache = cache
        self._adapter_factory = adapter_factory
        self._adapter: Optional[ProviderAdapter] = None
        self._adapter_config: Optional[ProviderConfig] = None
        self._run_lock = threading.Lock()
        self._token_lock = threading.Lock()
        self._active_token: Optional[CancellationToken] = None
        self.state = PipelineState()

    # ---------------- lifecycle ----------------
    def adapter_for(self, provider: ProviderConfig) -> ProviderAdapter:
        if self._adapter is None or self._adapter_config != provider:
            log.debug("building adapter for %r", provider)
            self._adapter = self._adapter_factory(provider)
            self._adapter_config = provider
        return self._adapter

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> None:
        with self._token_lock:
            token = self._active_token
        if token is not None:
            token.cancel()

    def run(self, document_id: str, book: BookMeta, chapters: Sequence[Chapter],
            tags: Mapping[str, Optional[str]], settings: RunSettings, provider: ProviderConfig,
            observer: Optional[RunObserver] = None) -> Optional[Artifact]:
        """
        Process ``chapters`` and return the artifact for ``settings.mode``.

        Returns None when the run is cancelled. Raises the stage's
        PipelineError when it fails; cached groups stay cached for the retry.
        A run started while another is active cancels it and waits for its
        teardown first.
        """
        token = CancellationToken()
        with self._token_lock:
            previous, self._active_token = self._active_token, token
        if previous is not None:
            log.info("cancelling the active run before starting a new one")
            previous.cancel()

        with self._run_lock:
            state = PipelineState(status=RunStatus.RUNNING)
            self.state = state
            observer = observer or RunObserver()
            try:
                token.raise_if_cancelled()
                require_credential(provider)
                if not chapters:
                    raise PipelineError("Select at least one chapter to process")
                ctx = _Run(document_id, book, settings, provider, self.adapter_for(provider),
                           token, observer, state)
                artifact = self._execute(ctx, list(chapters), tags)
                token.raise_if_cancelled()
                state.status = RunStatus.COMPLETED
                ctx.report(100.0, "Done")
                observer.on_artifact(artifact)
                return artifact
            except Cancelled:
                state.status = RunStatus.CANCELLED
                log.info("run for %s cancelled at %.0f%%", document_id, state.progress)
                return None
            except Exception as exc:
                if token.cancelled:
                    state.status = RunStatus.CANCELLED
                    log.info("run for %s cancelled (%s)", document_id, exc)
                    return None
                state.status = RunStatus.FAILED
                state.error = str(exc)
                log.error("run for %s failed: %s", document_id, exc)
                observer.on_error(state.error)
                raise
            finally:
                with self._token_lock:
                    if self._active_token is token:
                        self._active_token = None

    # ---------------- stages ----------------
    def _execute(self, ctx: _Run, chapters: List[Chapter], tags: Mapping[str, Optional[str]]) -> Artifact:
        ctx.report(0.0, "Grouping chapters")
        groups = group_chapters(chapters, tags)
        by_id = {ch.id: ch for ch in chapters}
        ctx.report(GROUPING_PROGRESS, f"Grouped {len(chapters)} chapters into {len(groups)} groups")

        mode = ctx.settings.mode
        results: List[GroupResult] = []
        for index, group in enumerate(groups):
            members = [by_id[cid] for cid in group.chapter_ids]
            if group.tag:
                step = (f'Processing tag group "{group.tag}" ({index + 1}/{len(groups)}), '
                        f"{len(members)} chapters")
            else:
                step = f"Processing chapter {index + 1}/{len(groups)}: {members[0].title}"
            ctx.report(step=step)

            if mode == ProcessingMode.SUMMARY:
                result = self._summary_group(ctx, group, members)
            elif mode == ProcessingMode.MINDMAP:
                result = self._mind_map_group(ctx, group, members)
            else:
                result = GroupResult(group)
                ctx.emit(result)
            results.append(result)
            ctx.report(GROUPING_PROGRESS + GROUP_SPAN * (index + 1) / len(groups))

        fingerprint = group_fingerprint(groups)
        if mode == ProcessingMode.SUMMARY:
            return self._aggregate_summary(ctx, results, fingerprint)
        if mode == ProcessingMode.MINDMAP:
            return self._aggregate_mind_maps(ctx, results, fingerprint)
        return self._whole_book_mind_map(ctx, results, chapters, fingerprint)

    def _summary_group(self, ctx: _Run, group: ProcessingGroup, members: List[Chapter]) -> GroupResult:
        cached = self.cache.get(ctx.document_id, StageKind.SUMMARY, group.group_id)
        if isinstance(cached, str) and cached.strip():
            log.debug("cache hit: summary for %s", group.group_id)
            summary = cached
        else:
            ctx.emit(GroupResult(group, is_loading=True))
            content = "\n\n".join(f"## {ch.title}\n\n{ch.content}" for ch in members)
            prompt = chapter_summary_prompt(
                group.display_title, content, ctx.settings.book_type,
                ctx.settings.custom_prompt, ctx.settings.use_custom_only,
            )
            raw = ctx.adapter.complete(ctx.request(prompt), ctx.token)
            summary = require_text(raw, f"summary for {group.display_title!r}")
            with ctx.token.unless_cancelled():
                self.cache.set(ctx.document_id, StageKind.SUMMARY, summary, group.group_id)

        for chapter in members:
            chapter.summary = summary
        result = GroupResult(group, summary=summary)
        ctx.emit(result)
        return result

    def _cached_mind_map(self, ctx: _Run, kind: StageKind, group_id: Optional[str] = None,
                         fingerprint: Optional[str] = None) -> Optional[MindMap]:
        cached = self.cache.get(ctx.document_id, kind, group_id, fingerprint=fingerprint)
        if not isinstance(cached, dict):
            return None
        try:
            mind_map = validate_mind_map(cached, f"cached {kind.value}")
        except MalformedArtifact as exc:
            log.warning("%s; discarding the cache entry", exc)
            if group_id is not None:
                self.cache.invalidate_group(ctx.document_id, kind, group_id)
            else:
                self.cache.invalidate(ctx.document_id, kind)
            return None
        log.debug("cache hit: %s %s", kind.value, group_id or "")
        return mind_map

    def _mind_map_group(self, ctx: _Run, group: ProcessingGroup, members: List[Chapter]) -> GroupResult:
        mind_map = self._cached_mind_map(ctx, StageKind.MINDMAP, group_id=group.group_id)
        if mind_map is None:
            ctx.emit(GroupResult(group, is_loading=True))
            content = "\n\n".join(f"## {ch.title}\n\n{ch.content}" for ch in members)
            prompt = chapter_mind_map_prompt(content, ctx.settings.custom_prompt)
            raw = ctx.adapter.complete_json(ctx.request(prompt), ctx.token)
            label = f"mind map for {group.display_title!r}"
            mind_map = validate_mind_map(parse_json_response(raw, label), label)
            with ctx.token.unless_cancelled():
                self.cache.set(ctx.document_id, StageKind.MINDMAP, mind_map, group.group_id)

        for chapter in members:
            chapter.mind_map = mind_map
        result = GroupResult(group, mind_map=mind_map)
        ctx.emit(result)
        return result

    def _text_stage(self, ctx: _Run, kind: StageKind, label: str, prompt: str, fingerprint: str,
                    post: Callable[[str], str] = lambda text: text) -> str:
        cached = self.cache.get(ctx.document_id, kind, fingerprint=fingerprint)
        if isinstance(cached, str) and cached.strip():
            log.debug("cache hit: %s", kind.value)
            return cached
        log.debug("cache miss: generating %s", kind.value)
        raw = ctx.adapter.complete(ctx.request(prompt), ctx.token)
        text = post(require_text(raw, label))
        with ctx.token.unless_cancelled():
            self.cache.set(ctx.document_id, kind, text, fingerprint=fingerprint)
        return text

    def _aggregate_summary(self, ctx: _Run, results: List[GroupResult], fingerprint: str) -> SummaryArtifact:
        book_type = ctx.settings.book_type
        summaries = [(r.group.display_title, r.summary or "") for r in results]
        artifact = SummaryArtifact(ctx.book.title, ctx.book.author, groups=results)

        stages = [StageKind.CONNECTIONS, StageKind.OVERALL_SUMMARY]
        if ctx.settings.character_graph:
            stages.append(StageKind.CHARACTER_RELATIONSHIP)
        for j, kind in enumerate(stages):
            if kind == StageKind.CONNECTIONS:
                ctx.report(step="Analysing chapter connections")
                artifact.connections = self._text_stage(
                    ctx, kind, "chapter connection analysis",
                    connections_prompt(summaries, book_type), fingerprint,
                )
            elif kind == StageKind.OVERALL_SUMMARY:
                ctx.report(step="Writing the whole-book summary")
                artifact.overall_summary = self._text_stage(
                    ctx, kind, "book summary",
                    overall_summary_prompt(ctx.book.title, summaries, book_type), fingerprint,
                )
            else:
                ctx.report(step="Drawing the character relationship graph")
                artifact.character_relationship = self._text_stage(
                    ctx, kind, "character relationship graph",
                    character_relationship_prompt(summaries, book_type), fingerprint,
                    post=lambda text: extract_fenced_block(text, "mermaid") or text,
                )
            ctx.report(_aggregation_progress(j, len(stages)))
        return artifact

    def _aggregate_mind_maps(self, ctx: _Run, results: List[GroupResult], fingerprint: str) -> MindMapArtifact:
        ctx.report(step="Merging chapter mind maps")
        merged = self.cache.get(ctx.document_id, StageKind.MERGED_MINDMAP, fingerprint=fingerprint)
        if not isinstance(merged, dict):
            merged = merge_mind_maps(ctx.book.title, [(r.group.display_title, r.mind_map) for r in results])
            with ctx.token.unless_cancelled():
                self.cache.set(ctx.document_id, StageKind.MERGED_MINDMAP, merged, fingerprint=fingerprint)
        ctx.report(_aggregation_progress(0, 1))
        return MindMapArtifact(ctx.book.title, ctx.book.author, groups=results, combined_mind_map=merged)

    def _whole_book_mind_map(self, ctx: _Run, results: List[GroupResult], chapters: List[Chapter],
                             fingerprint: str) -> MindMapArtifact:
        ctx.report(step="Generating the whole-book mind map")
        mind_map = self._cached_mind_map(ctx, StageKind.COMBINED_MINDMAP, fingerprint=fingerprint)
        if mind_map is None:
            by_id = {ch.id: ch for ch in chapters}
            contents = [by_id[cid].content for r in results for cid in r.group.chapter_ids]
            prompt = book_mind_map_prompt(ctx.book.title, contents, ctx.settings.custom_prompt)
            raw = ctx.adapter.complete_json(ctx.request(prompt), ctx.token)
            mind_map = validate_mind_map(parse_json_response(raw, "whole-book mind map"), "whole-book mind map")
            with ctx.token.unless_cancelled():
                self.cache.set(ctx.document_id, StageKind.COMBINED_MINDMAP, mind_map, fingerprint=fingerprint)
        ctx.report(_aggregation_progress(0, 1))
        return MindMapArtifact(ctx.book.title, ctx.book.author, groups=results, combined_mind_map=mind_map)

    # ---------------- cache maintenance ----------------
    def clear_stage(self, document_id: str, kind: Union[StageKind, str]) -> int:
        removed = self.cache.invalidate(document_id, kind)
        log.info("cleared %d cached %s entries for %s", removed, getattr(kind, "value", kind), document_id)
        return removed

    def clear_book(self, document_id: str, mode: Optional[ProcessingMode] = None) -> int:
        if mode is None:
            return self.clear_stage(document_id, ALL_FOR_DOCUMENT)
        return sum(self.cache.invalidate(document_id, kind) for kind in MODE_STAGES[mode])


def _aggregation_progress(index: int, total: int) -> float:
    start = GROUPING_PROGRESS + GROUP_SPAN
    return start + (AGGREGATION_END - start) * (index + 1) / total
