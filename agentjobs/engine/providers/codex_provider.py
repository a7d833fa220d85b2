"""OpenAI Codex CLI provider.

Uses ``codex exec`` for one-shot runs. Output is plain text, streamed
line by line.
"""
from __future__ import annotations

import logging

from .base import Provider
from .settings import ChatSettings, build_codex_args

logger = logging.getLogger(__name__)


class CodexProvider(Provider):
    """Provider backed by the OpenAI Codex CLI.

    Default flags: ``-m gpt-5 -c model_reasoning_effort="high"
    --sandbox read-only``. A non-empty ``spawn_command`` in settings
    replaces the built flags verbatim.

    Auth: Works with OAuth by default. If api_key_env is set and the
    env var exists, it's passed to the subprocess as OPENAI_API_KEY.
    """

    def __init__(
        self,
        command: str = "codex",
        api_key_env: str | None = None,
        settings: ChatSettings | None = None,
    ) -> None:
        super().__init__(command, api_key_env, settings)

    @property
    def name(self) -> str:
        return "codex"

    def _api_key_var(self) -> str | None:
        return "OPENAI_API_KEY"

    def build_command(self, prompt: str, settings: ChatSettings | None = None) -> list[str]:
        settings = settings or self._settings
        cmd = [self._command, "exec"]
        if settings.spawn_command:
            cmd.extend(settings.spawn_command)
        else:
            cmd.extend(build_codex_args(settings))
        cmd.extend(["--", prompt])
        return cmd
