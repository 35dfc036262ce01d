"""Shared fakes: a scripted HTTP session and a scripted backend adapter."""
from __future__ import annotations

import json
from typing import Callable, List, Optional, Union

import pytest

from bookmind.cache import CacheStore
from bookmind.cancellation import CancellationToken
from bookmind.models import BookMeta, Chapter
from bookmind.providers import CompletionRequest, ProviderAdapter


class FakeResponse:
    def __init__(self, status_code: int = 200, lines: Optional[List[str]] = None, text: str = "") -> None:
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = text
        self._lines = lines or []
        self.closed = False

    def iter_lines(self):
        for line in self._lines:
            if self.closed:
                raise AttributeError("'NoneType' object has no attribute 'read'")
            yield line.encode("utf-8")

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Returns queued responses in order and records every POST."""

    def __init__(self, *responses: Union[FakeResponse, Exception]) -> None:
        self.responses = list(responses)
        self.calls: List[dict] = []

    def post(self, url, json=None, headers=None, stream=False, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "stream": stream, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def sse(*chunks: str) -> List[str]:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}" for c in chunks]
    return lines + ["data: [DONE]"]


def ndjson(*chunks: str) -> List[str]:
    lines = [json.dumps({"message": {"role": "assistant", "content": c}, "done": False}) for c in chunks]
    return lines + [json.dumps({"done": True})]


Reply = Union[str, Exception, Callable[[CompletionRequest, CancellationToken], str]]


class ScriptedAdapter(ProviderAdapter):
    """Answers each call from ``replies`` in order; a reply may be a callable or an exception."""

    name = "scripted"

    def __init__(self, *replies: Reply) -> None:
        self.replies = list(replies)
        self.requests: List[CompletionRequest] = []

    def complete(self, request, token=None):
        self.requests.append(request)
        if not self.replies:
            raise AssertionError(f"unexpected backend call: {request.messages[-1].content[:80]!r}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request, token)
        return reply


@pytest.fixture
def cache(tmp_path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def book() -> BookMeta:
    return BookMeta(title="The Test Book", author="A. Writer")


@pytest.fixture
def chapters() -> List[Chapter]:
    return [Chapter(id=f"c{i}", title=f"Chapter {i}", content=f"Content of chapter {i}.") for i in range(1, 6)]


def mind_map_json(topic: str, *children: str) -> str:
    return json.dumps({
        "nodeData": {
            "topic": topic,
            "id": "1",
            "children": [{"topic": c, "id": str(i + 2)} for i, c in enumerate(children)],
        }
    })
