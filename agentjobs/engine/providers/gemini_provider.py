"""Gemini CLI provider.

Uses ``gemini -p <prompt>`` for one-shot runs.
"""
from __future__ import annotations

import logging

from .base import Provider
from .settings import ChatSettings, build_gemini_args

logger = logging.getLogger(__name__)


class GeminiProvider(Provider):
    """Provider backed by the Gemini CLI.

    Auth: Uses the CLI's built-in auth (cached credentials).
    If api_key_env is set, it is passed through as GEMINI_API_KEY.
    """

    def __init__(
        self,
        command: str = "gemini",
        api_key_env: str | None = None,
        settings: ChatSettings | None = None,
    ) -> None:
        super().__init__(command, api_key_env, settings)

    @property
    def name(self) -> str:
        return "gemini"

    def _api_key_var(self) -> str | None:
        return "GEMINI_API_KEY"

    def build_command(self, prompt: str, settings: ChatSettings | None = None) -> list[str]:
        settings = settings or self._settings
        cmd = [self._command]
        if settings.spawn_command:
            cmd.extend(a for a in settings.spawn_command if a not in ("-p", "--prompt"))
        else:
            cmd.extend(build_gemini_args(settings))
        # --flag=value keeps yargs from reading the prompt as a positional.
        cmd.append(f"--prompt={prompt}")
        return cmd
