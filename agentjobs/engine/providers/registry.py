"""Provider registry and the BackendInvoker used by the job runner."""
from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import DEFAULT_NEEDS_HUMAN_PATTERNS
from ..errors import AgentProcessError, ValidationError
from .base import Provider
from .settings import ChatSettings

if TYPE_CHECKING:
    from ..config import JobsConfig

logger = logging.getLogger(__name__)

# Receives each incremental output chunk of a running invocation.
OutputCallback = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class InvocationResult:
    """Captured outcome of one backend CLI run."""
    output: str
    exit_code: int | None
    needs_human: bool = False


class NeedsHumanDetector:
    """Decides whether finished agent output asks for a person.

    Case-insensitive regex search over the output; any match flags
    the result. An explicit flag from the provider always wins.
    """

    def __init__(self, patterns: Iterable[str] | None = None) -> None:
        raw = list(patterns) if patterns is not None else list(DEFAULT_NEEDS_HUMAN_PATTERNS)
        self._patterns = [re.compile(p, re.IGNORECASE) for p in raw]

    @property
    def patterns(self) -> list[str]:
        return [p.pattern for p in self._patterns]

    def detect(self, output: str, explicit: bool | None = None) -> bool:
        if explicit is not None:
            return explicit
        return any(p.search(output) for p in self._patterns)


class ProviderRegistry:
    """Registry of backend providers.

    Maps short names (e.g. 'claude', 'codex') to Provider instances.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, name: str, provider: Provider) -> None:
        """Register a provider by name."""
        self._providers[name] = provider
        logger.info(
            "Provider registered: %s (command=%s available=%s)",
            name, provider.command, provider.is_available(),
        )

    def get_or_raise(self, name: str) -> Provider:
        """Get a provider by name, raising ValidationError if not found."""
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(self._providers.keys())
            raise ValidationError(
                f"Unknown backend '{name}'. "
                f"Available: {available or 'none'}"
            )
        return provider

    def get_availability_report(self) -> dict[str, bool]:
        """Return a mapping of provider name → is_available for all providers."""
        return {
            name: p.is_available()
            for name, p in self._providers.items()
        }

    def validate(self) -> dict[str, bool]:
        """Log which providers have their CLI installed."""
        report = self.get_availability_report()
        unavailable = [n for n, ok in report.items() if not ok]
        if unavailable:
            logger.warning(
                "Unavailable backends (CLI not installed): %s",
                ", ".join(unavailable),
            )
        return report


def build_provider_registry(config: JobsConfig | None = None) -> ProviderRegistry:
    """Build the claude/codex/gemini registry from config overrides."""
    from .claude_provider import ClaudeProvider
    from .codex_provider import CodexProvider
    from .gemini_provider import GeminiProvider

    commands = config.provider_commands if config else {}
    key_envs = config.provider_api_key_envs if config else {}
    raw_settings = config.provider_settings if config else {}

    def _settings(name: str) -> ChatSettings:
        return ChatSettings.from_dict(raw_settings.get(name))

    registry = ProviderRegistry()
    registry.register("claude", ClaudeProvider(
        command=commands.get("claude"),
        api_key_env=key_envs.get("claude"),
        settings=_settings("claude"),
    ))
    registry.register("codex", CodexProvider(
        command=commands.get("codex") or "codex",
        api_key_env=key_envs.get("codex"),
        settings=_settings("codex"),
    ))
    registry.register("gemini", GeminiProvider(
        command=commands.get("gemini") or "gemini",
        api_key_env=key_envs.get("gemini"),
        settings=_settings("gemini"),
    ))
    registry.validate()
    return registry


class BackendInvoker:
    """Runs one backend CLI invocation and classifies its outcome."""

    def __init__(
        self,
        registry: ProviderRegistry,
        detector: NeedsHumanDetector | None = None,
    ) -> None:
        self._registry = registry
        self._detector = detector or NeedsHumanDetector()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def check_backend(self, backend: str) -> None:
        self._registry.get_or_raise(backend)

    async def run(
        self,
        backend: str,
        prompt: str,
        cwd: str,
        on_output: OutputCallback | None = None,
    ) -> InvocationResult:
        provider = self._registry.get_or_raise(backend)
        output = ""
        exit_code: int | None = None
        error: str | None = None
        explicit_needs_human: bool | None = None

        async for message in provider.run_agent(prompt, cwd=cwd):
            if message.is_result:
                output = message.text
                exit_code = message.metadata.get("exit_code")
                if message.is_error:
                    error = message.metadata.get("error") or message.text or f"{backend} failed"
                explicit_needs_human = message.metadata.get("needs_human")
                continue
            if on_output is not None and message.text:
                await on_output(message.text)

        if error is not None:
            logger.info("%s failed in %s: %s", backend, cwd, error[:200])
            # A crashed agent is an error, never a review request.
            raise AgentProcessError(backend, error, exit_code=exit_code, output=output)

        needs_human = self._detector.detect(output, explicit_needs_human)
        return InvocationResult(
            output=output,
            exit_code=exit_code,
            needs_human=needs_human,
        )
