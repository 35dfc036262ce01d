"""Pull JSON (or other fenced payloads) out of raw model responses."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from .errors import EmptyArtifact, MalformedArtifact

# First fenced block wins; the language tag is optional.
FENCED_BLOCK = re.compile(r"```(?:[\w-]+)?\s*([\s\S]*?)```")


def require_text(raw: Optional[str], label: str) -> str:
    """Return the stripped text, or raise if the backend sent nothing usable."""
    if raw is None or not raw.strip():
        raise EmptyArtifact(f"The model returned an empty {label}")
    return raw.strip()


def extract_fenced_block(text: str, language: Optional[str] = None) -> Optional[str]:
    if language:
        pattern = re.compile(rf"```{re.escape(language)}\s*([\s\S]*?)```", re.IGNORECASE)
    else:
        pattern = FENCED_BLOCK
    match = pattern.search(text)
    if not match:
        return None
    return match.group(1).strip()


def parse_json_response(raw: Optional[str], label: str) -> Any:
    """
    Decode a structured model answer.

    Strict-JSON backends usually return the bare document, so a direct parse is
    tried first. Chattier models wrap it in a ```json fence; the first fenced
    block is parsed next. Anything else is a MalformedArtifact naming ``label``.
    """
    if raw is None or not raw.strip():
        raise MalformedArtifact(f"The model returned no {label} data")
    text = raw.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    block = extract_fenced_block(text)
    if block is not None:
        try:
            return json.loads(block)
        except json.JSONDecodeError as exc:
            raise MalformedArtifact(
                f"The model returned malformed {label} data: {exc.msg} (fenced block)"
            ) from exc
    raise MalformedArtifact(f"The model returned malformed {label} data: no JSON found in {text[:120]!r}")
