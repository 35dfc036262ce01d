"""Runtime configuration: backend connection plus per-run processing settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigError, MissingCredential
from .models import BookType, ProcessingMode

# ---------------- Defaults ----------------
DEFAULT_PROVIDER = "ollama"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 600
DEFAULT_LANGUAGE = "en"

# provider -> (default base url, default model)
PROVIDER_DEFAULTS: Dict[str, Tuple[str, str]] = {
    "gemini": ("https://generativelanguage.googleapis.com/v1beta/openai", "gemini-1.5-flash"),
    "openai": ("https://api.openai.com/v1", "gpt-3.5-turbo"),
    "ollama": ("http://localhost:11434/v1", "llama2"),
    "302.ai": ("https://api.302.ai/v1", "gpt-3.5-turbo"),
    "openrouter": ("https://openrouter.ai/api/v1", "openai/gpt-3.5-turbo"),
}

# Providers that run locally and accept requests without a key.
KEYLESS_PROVIDERS = {"ollama"}


@dataclass(frozen=True)
class ProviderConfig:
    provider: str = DEFAULT_PROVIDER
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    request_timeout: int = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        if self.provider not in PROVIDER_DEFAULTS:
            raise ConfigError(
                f"Unsupported provider: {self.provider!r} "
                f"(expected one of {', '.join(sorted(PROVIDER_DEFAULTS))})"
            )
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigError(f"temperature must be within [0, 2], got {self.temperature}")
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive")

    @property
    def effective_base_url(self) -> str:
        return self.base_url or PROVIDER_DEFAULTS[self.provider][0]

    @property
    def effective_model(self) -> str:
        return self.model or PROVIDER_DEFAULTS[self.provider][1]

    def __repr__(self) -> str:
        masked_key = "***" if self.api_key else None
        return (
            f"ProviderConfig(provider={self.provider!r}, model={self.effective_model!r}, "
            f"base_url={self.effective_base_url!r}, api_key={masked_key!r}, "
            f"temperature={self.temperature})"
        )


@dataclass(frozen=True)
class RunSettings:
    mode: ProcessingMode = ProcessingMode.SUMMARY
    book_type: BookType = BookType.NON_FICTION
    output_language: str = DEFAULT_LANGUAGE
    custom_prompt: str = ""
    use_custom_only: bool = False
    character_graph: bool = False


def require_credential(config: ProviderConfig) -> None:
    if config.provider in KEYLESS_PROVIDERS:
        return
    if not config.api_key.strip():
        raise MissingCredential(
            f"An API key is required for provider {config.provider!r}. "
            "Set it in the config file or via BOOKMIND_API_KEY."
        )


def _apply_env(raw: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(raw)
    if os.environ.get("BOOKMIND_PROVIDER"):
        merged["provider"] = os.environ["BOOKMIND_PROVIDER"]
    if os.environ.get("BOOKMIND_API_KEY"):
        merged["api_key"] = os.environ["BOOKMIND_API_KEY"]
    if os.environ.get("BOOKMIND_MODEL"):
        merged["model"] = os.environ["BOOKMIND_MODEL"]
    if os.environ.get("OLLAMA_HOST") and merged.get("provider", DEFAULT_PROVIDER) == "ollama" \
            and not merged.get("base_url"):
        merged["base_url"] = os.environ["OLLAMA_HOST"]
    return merged


def build_provider_config(raw: Optional[Dict[str, Any]] = None) -> ProviderConfig:
    raw = _apply_env(raw or {})
    try:
        return ProviderConfig(
            provider=str(raw.get("provider", DEFAULT_PROVIDER)).lower(),
            api_key=str(raw.get("api_key") or ""),
            base_url=str(raw.get("base_url") or ""),
            model=str(raw.get("model") or ""),
            temperature=float(raw.get("temperature", DEFAULT_TEMPERATURE)),
            request_timeout=int(raw.get("request_timeout", DEFAULT_TIMEOUT)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid provider configuration: {exc}") from exc


def build_run_settings(raw: Optional[Dict[str, Any]] = None) -> RunSettings:
    raw = raw or {}
    try:
        mode = ProcessingMode(raw.get("mode", ProcessingMode.SUMMARY.value))
    except ValueError as exc:
        raise ConfigError(f"processing.mode must be one of {[m.value for m in ProcessingMode]}") from exc
    try:
        book_type = BookType(raw.get("book_type", BookType.NON_FICTION.value))
    except ValueError as exc:
        raise ConfigError(f"processing.book_type must be one of {[b.value for b in BookType]}") from exc
    return RunSettings(
        mode=mode,
        book_type=book_type,
        output_language=str(raw.get("output_language") or DEFAULT_LANGUAGE),
        custom_prompt=str(raw.get("custom_prompt") or ""),
        use_custom_only=bool(raw.get("use_custom_only", False)),
        character_graph=bool(raw.get("character_graph", False)),
    )


def load_config(config_path: Optional[Path]) -> Tuple[ProviderConfig, RunSettings]:
    """Read ``provider:`` and ``processing:`` sections from a YAML file.

    A missing path yields defaults plus environment overrides.
    """
    if config_path is None:
        return build_provider_config(), build_run_settings()

    import yaml

    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config file must contain a mapping at the top level")

    provider_raw = raw.get("provider", {}) or {}
    processing_raw = raw.get("processing", {}) or {}
    if not isinstance(provider_raw, dict):
        raise ConfigError("Config key 'provider' must be a mapping")
    if not isinstance(processing_raw, dict):
        raise ConfigError("Config key 'processing' must be a mapping")
    return build_provider_config(provider_raw), build_run_settings(processing_raw)


def with_overrides(settings: RunSettings, **overrides: Any) -> RunSettings:
    """Apply CLI overrides, ignoring the ones left at None."""
    return replace(settings, **{k: v for k, v in overrides.items() if v is not None})
