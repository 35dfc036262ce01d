"""Exception taxonomy shared by every pipeline stage."""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for everything the book pipeline raises on purpose."""


class ConfigError(PipelineError):
    """Invalid or incomplete runtime configuration."""


class LoaderError(PipelineError):
    """The chapter source could not be turned into a chapter list."""


class MissingCredential(PipelineError):
    """The selected backend needs an API key and none was configured."""


class EmptyArtifact(PipelineError):
    """The backend answered with a blank result for a stage that expects content."""


class MalformedArtifact(PipelineError):
    """A structured-output stage could not be decoded as JSON."""


class BackendProtocolUnsupported(PipelineError):
    """The target does not implement the protocol that was attempted.

    Only raised inside the provider layer, where it triggers the fallback to
    the native protocol. Callers of ``complete()`` never see it.
    """


class BackendRequestFailed(PipelineError):
    """HTTP or transport failure that is not a protocol fallback."""

    def __init__(self, status: Optional[int], detail: str, url: str = "") -> None:
        self.status = status
        self.detail = detail
        self.url = url
        where = f" ({url})" if url else ""
        if status is None:
            message = f"Backend request failed{where}: {detail}"
        else:
            message = f"Backend returned HTTP {status}{where}: {detail}"
        super().__init__(message)


class Cancelled(PipelineError):
    """The run was cancelled. Not a failure: it ends the run silently."""
