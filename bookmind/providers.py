"""LLM backend adapters: OpenAI-style completions, the Ollama native API, and the fallback between them."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional

import requests

from .cancellation import CancellationToken
from .config import ProviderConfig
from .errors import BackendProtocolUnsupported, BackendRequestFailed, Cancelled

log = logging.getLogger(__name__)

MIND_MAP_FORMAT_CONTRACT = """Return ONLY valid JSON in this format:
{
  "nodeData": {
    "topic": "Main Topic",
    "id": "1",
    "children": [
      {
        "topic": "Subtopic 1",
        "id": "2",
        "children": [
          {"topic": "Detail A", "id": "3"},
          {"topic": "Detail B", "id": "4"}
        ]
      }
    ]
  }
}

Rules: Use incremental IDs, keep topics under 50 chars, 2-4 subtopics with 2-5 details each."""

CONNECTION_CHECK_PROMPT = 'Reply with "Connection successful"'


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class CompletionRequest:
    messages: tuple
    temperature: float = 0.7
    json_mode: bool = False

    @classmethod
    def from_prompt(cls, prompt: str, temperature: float = 0.7, json_mode: bool = False) -> "CompletionRequest":
        return cls(messages=(Message("user", prompt),), temperature=temperature, json_mode=json_mode)


# ---------------- URLs ----------------
def normalize_base_url(raw: str) -> str:
    url = (raw or "").strip()
    if not re.match(r"^https?://", url, re.IGNORECASE):
        if re.match(r"^:?\d{2,5}", url):
            url = "http://localhost" + (url if url.startswith(":") else ":" + url)
        elif url.startswith("//"):
            url = "http:" + url
        else:
            url = "http://" + url
    return url.rstrip("/")


def completions_url(base_url: str) -> str:
    base = normalize_base_url(base_url)
    if base.endswith("/chat/completions"):
        return base
    if re.search(r"/v\d+(beta)?(/openai)?$", base):
        return f"{base}/chat/completions"
    return f"{base}/v1/chat/completions"


def native_chat_url(base_url: str) -> str:
    base = re.sub(r"/v1$", "", normalize_base_url(base_url), flags=re.IGNORECASE)
    return f"{base}/api/chat"


# ---------------- Streaming ----------------
def _iter_text_lines(response) -> Iterable[str]:
    for line in response.iter_lines():
        if not line:
            continue
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        yield line


def _parse_completions_stream(lines: Iterable[str], token: CancellationToken) -> str:
    """Read an SSE chat-completions stream; a non-streaming JSON body is accepted too."""
    out: List[str] = []
    plain: List[str] = []
    saw_sse = False
    for line in lines:
        token.raise_if_cancelled()
        if line.startswith(":"):
            continue
        if not line.startswith("data:"):
            plain.append(line)
            continue
        saw_sse = True
        data = line[len("data:"):].strip()
        if not data:
            continue
        if data == "[DONE]":
            break
        try:
            obj = json.loads(data)
        except json.JSONDecodeError:
            continue
        if "error" in obj:
            err = obj["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise BackendRequestFailed(None, f"stream error: {message}")
        choices = obj.get("choices") or []
        if choices:
            content = (choices[0].get("delta") or {}).get("content")
            if content:
                out.append(content)
    if saw_sse:
        return "".join(out)

    body = "\n".join(plain)
    if not body.strip():
        return ""
    try:
        obj = json.loads(body)
    except json.JSONDecodeError as exc:
        raise BackendRequestFailed(None, f"unreadable completions response: {body[:200]}") from exc
    choices = obj.get("choices") or [{}]
    return ((choices[0] or {}).get("message") or {}).get("content") or ""


def _parse_native_stream(lines: Iterable[str], token: CancellationToken) -> str:
    """Read an Ollama /api/chat NDJSON stream."""
    out: List[str] = []
    for line in lines:
        token.raise_if_cancelled()
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if "error" in obj:
            raise BackendRequestFailed(None, f"stream error: {obj['error']}")
        content = (obj.get("message") or {}).get("content")
        if content:
            out.append(content)
        if obj.get("done"):
            break
    return "".join(out)


# ---------------- Adapters ----------------
class ProviderAdapter:
    """Capability shared by every backend variant: ``complete(request) -> text``."""

    name = "base"

    def complete(self, request: CompletionRequest, token: Optional[CancellationToken] = None) -> str:
        raise NotImplementedError

    def complete_json(self, request: CompletionRequest, token: Optional[CancellationToken] = None) -> str:
        """Structured-output variant: append the JSON contract and ask for strict JSON."""
        messages = list(request.messages)
        if messages and messages[-1].role == "user":
            last = messages[-1]
            messages[-1] = Message("user", f"{last.content}\n\n{MIND_MAP_FORMAT_CONTRACT}")
        else:
            messages.append(Message("user", MIND_MAP_FORMAT_CONTRACT))
        return self.complete(replace(request, messages=tuple(messages), json_mode=True), token)


class _HttpAdapter(ProviderAdapter):
    """Shared POST-and-stream plumbing; subclasses build the envelope and read the stream."""

    not_found_is_unsupported = False

    def __init__(self, config: ProviderConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def url(self) -> str:
        raise NotImplementedError

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def payload(self, request: CompletionRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def read_stream(self, lines: Iterable[str], token: CancellationToken) -> str:
        raise NotImplementedError

    def _send(self, url: str, request: CompletionRequest, token: CancellationToken) -> requests.Response:
        """POST on a helper thread so ``cancel()`` can abandon a request still waiting for headers.

        An abandoned response that arrives later is closed by the helper.
        """
        box: Dict[str, Any] = {"abandoned": False}
        lock = threading.Lock()
        arrived = threading.Event()

        def post() -> None:
            try:
                response = self.session.post(
                    url,
                    json=self.payload(request),
                    headers=self.headers(),
                    stream=True,
                    timeout=self.config.request_timeout,
                )
            except Exception as exc:  # re-raised on the calling thread
                box["error"] = exc
            else:
                with lock:
                    abandoned = box["abandoned"]
                    if not abandoned:
                        box["response"] = response
                if abandoned:
                    response.close()
            finally:
                arrived.set()

        threading.Thread(target=post, name="bookmind-http", daemon=True).start()
        remove = token.on_cancel(arrived.set)
        try:
            arrived.wait()
        finally:
            remove()

        with lock:
            cancelled = token.cancelled
            box["abandoned"] = cancelled
            response = box.get("response")
        if cancelled:
            if response is not None:
                response.close()
            raise Cancelled("Processing was cancelled")
        if "error" in box:
            raise box["error"]
        return response

    def complete(self, request: CompletionRequest, token: Optional[CancellationToken] = None) -> str:
        token = token or CancellationToken()
        token.raise_if_cancelled()
        url = self.url()
        try:
            response = self._send(url, request, token)
        except requests.RequestException as exc:
            token.raise_if_cancelled()
            raise BackendRequestFailed(None, f"{type(exc).__name__}: {exc}", url) from exc

        remove = token.on_cancel(response.close)
        try:
            if response.status_code == 404 and self.not_found_is_unsupported:
                raise BackendProtocolUnsupported(f"{url} is not implemented by the target")
            if not response.ok:
                raise BackendRequestFailed(response.status_code, response.text[:1000], url)
            text = self.read_stream(_iter_text_lines(response), token)
            # a response closed by cancel() reads as an empty stream
            token.raise_if_cancelled()
            return text
        except Cancelled:
            raise
        except (requests.RequestException, OSError, AttributeError, ValueError) as exc:
            # closing the response from another thread surfaces as a read error
            if token.cancelled:
                raise Cancelled("Processing was cancelled") from exc
            if isinstance(exc, requests.RequestException):
                raise BackendRequestFailed(None, f"{type(exc).__name__}: {exc}", url) from exc
            raise
        finally:
            remove()
            response.close()


class CompletionsAdapter(_HttpAdapter):
    """OpenAI-compatible ``/chat/completions`` with bearer-token auth."""

    name = "completions"

    def url(self) -> str:
        return completions_url(self.config.effective_base_url)

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def payload(self, request: CompletionRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.config.effective_model,
            "messages": [m.as_dict() for m in request.messages],
            "temperature": request.temperature,
            "stream": True,
        }
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    def read_stream(self, lines: Iterable[str], token: CancellationToken) -> str:
        return _parse_completions_stream(lines, token)


class NativeAdapter(_HttpAdapter):
    """Ollama's own ``/api/chat`` envelope; no bearer token."""

    name = "native"

    def url(self) -> str:
        return native_chat_url(self.config.effective_base_url)

    def payload(self, request: CompletionRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.config.effective_model,
            "messages": [m.as_dict() for m in request.messages],
            "stream": True,
            "options": {"temperature": request.temperature},
        }
        if request.json_mode:
            body["format"] = "json"
        return body

    def read_stream(self, lines: Iterable[str], token: CancellationToken) -> str:
        return _parse_native_stream(lines, token)


class FallbackAdapter(ProviderAdapter):
    """Try the completions protocol first; drop to the native one when the target 404s it."""

    name = "fallback"

    def __init__(self, primary: _HttpAdapter, secondary: ProviderAdapter) -> None:
        primary.not_found_is_unsupported = True
        self.primary = primary
        self.secondary = secondary
        self.native_only = False

    def complete(self, request: CompletionRequest, token: Optional[CancellationToken] = None) -> str:
        if not self.native_only:
            try:
                return self.primary.complete(request, token)
            except BackendProtocolUnsupported as exc:
                log.info("%s; switching to the native protocol", exc)
                self.native_only = True
        return self.secondary.complete(request, token)


def create_adapter(config: ProviderConfig, session: Optional[requests.Session] = None) -> ProviderAdapter:
    session = session or requests.Session()
    if config.provider == "ollama":
        return FallbackAdapter(CompletionsAdapter(config, session), NativeAdapter(config, session))
    return CompletionsAdapter(config, session)


def check_connection(adapter: ProviderAdapter, temperature: float = 0.0) -> bool:
    try:
        reply = adapter.complete(CompletionRequest.from_prompt(CONNECTION_CHECK_PROMPT, temperature=temperature))
    except (BackendRequestFailed, Cancelled) as exc:
        log.warning("connection test failed: %s", exc)
        return False
    return "successful" in reply.lower()


