"""Claude Code CLI provider.

Runs ``claude --print --output-format stream-json --verbose`` and
reassembles the assistant text from the JSON event stream.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from .base import Provider, StreamState
from .settings import ChatSettings, build_claude_args

logger = logging.getLogger(__name__)

# Common install locations, checked before falling back to PATH.
CLAUDE_PATHS = [
    Path.home() / ".local" / "bin" / "claude",
    Path.home() / ".claude" / "local" / "claude",
    Path("/usr/local/bin/claude"),
]


def find_claude_binary() -> str:
    for candidate in CLAUDE_PATHS:
        if candidate.exists():
            return str(candidate)
    return "claude"


class ClaudeProvider(Provider):
    """Provider backed by the Claude Code CLI in print mode.

    Auth: the CLI's own login (subscription) by default, so any
    ANTHROPIC_API_KEY in the server environment is removed from the
    child environment. If api_key_env is set and that variable
    exists, its value is passed through as ANTHROPIC_API_KEY instead.
    """

    def __init__(
        self,
        command: str | None = None,
        api_key_env: str | None = None,
        settings: ChatSettings | None = None,
    ) -> None:
        super().__init__(command or find_claude_binary(), api_key_env, settings)

    @property
    def name(self) -> str:
        return "claude"

    def _api_key_var(self) -> str | None:
        return "ANTHROPIC_API_KEY"

    def _build_env(self) -> dict[str, str] | None:
        env = super()._build_env()
        if env is not None:
            return env
        if "ANTHROPIC_API_KEY" in os.environ:
            env = os.environ.copy()
            env.pop("ANTHROPIC_API_KEY", None)
            return env
        return None

    def build_command(self, prompt: str, settings: ChatSettings | None = None) -> list[str]:
        cmd = [self._command, "--print", "--output-format", "stream-json", "--verbose"]
        cmd.extend(build_claude_args(settings or self._settings))
        # --verbose is required by stream-json; avoid passing it twice.
        cmd = cmd[:5] + [a for a in cmd[5:] if a != "--verbose"]
        # "--" keeps a prompt starting with "-" from being read as a flag.
        cmd.extend(["--", prompt])
        return cmd

    def parse_line(self, line: str, state: StreamState) -> str | None:
        line = line.strip()
        if not line:
            return None
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON claude output line: %s", line[:200])
            return None
        if not isinstance(event, dict):
            return None

        event_type = event.get("type")
        if event_type == "assistant":
            content = (event.get("message") or {}).get("content") or []
            texts = [
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
            ]
            return "".join(texts) or None

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            return delta.get("text") or None

        if event_type == "result":
            if event.get("is_error"):
                state.error = event.get("result") or "Claude CLI error"
                return None
            # Only fall back to the result text when nothing streamed.
            if not state.output_parts and event.get("result"):
                return event["result"]
            return None

        if event_type == "error":
            state.error = (event.get("error") or {}).get("message") or "Claude CLI error"
        return None
