"""Summaries and mind maps for chaptered books, generated by an LLM backend."""

from .cache import CacheStore, document_identity
from .config import ProviderConfig, RunSettings, load_config
from .errors import PipelineError
from .models import Chapter, ProcessingMode
from .pipeline import BookPipeline, RunObserver
from .providers import create_adapter

__version__ = "0.1.0"

__all__ = [
    "BookPipeline",
    "CacheStore",
    "Chapter",
    "PipelineError",
    "ProcessingMode",
    "ProviderConfig",
    "RunObserver",
    "RunSettings",
    "create_adapter",
    "document_identity",
    "load_config",
]
