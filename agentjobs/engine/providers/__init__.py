"""Backend CLI providers for one-shot agent runs."""
from .base import Provider, ProviderMessage
from .registry import (
    BackendInvoker,
    InvocationResult,
    NeedsHumanDetector,
    ProviderRegistry,
    build_provider_registry,
)
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .gemini_provider import GeminiProvider

__all__ = [
    "Provider",
    "ProviderMessage",
    "BackendInvoker",
    "InvocationResult",
    "NeedsHumanDetector",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "CodexProvider",
    "GeminiProvider",
]
