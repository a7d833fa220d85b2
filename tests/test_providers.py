"""Tests for the claude / codex / gemini CLI providers."""
from __future__ import annotations

import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from agentjobs.engine.providers.base import StreamState
from agentjobs.engine.providers.claude_provider import ClaudeProvider
from agentjobs.engine.providers.codex_provider import CodexProvider
from agentjobs.engine.providers.gemini_provider import GeminiProvider
from agentjobs.engine.providers.settings import ChatSettings, ClaudeSettings


class _FakeStream:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)

    async def readline(self) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""

    async def read(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks = []
        return data


class _FakeProcess:
    def __init__(self, stdout_lines: list[bytes], stderr: bytes = b"", returncode: int = 0) -> None:
        self.stdout = _FakeStream(stdout_lines)
        self.stderr = _FakeStream([stderr] if stderr else [])
        self.returncode: int | None = None
        self.pid = 4242
        self._exit = returncode

    async def wait(self) -> int:
        self.returncode = self._exit
        return self._exit

    def kill(self) -> None:
        self.returncode = -9


async def _collect(provider, prompt="do it", cwd="/tmp"):
    return [m async for m in provider.run_agent(prompt, cwd=cwd)]


def _jsonl(*events: dict) -> list[bytes]:
    return [(json.dumps(e) + "\n").encode("utf-8") for e in events]


# ── Claude ──


def test_claude_build_command_defaults():
    provider = ClaudeProvider(command="claude")
    cmd = provider.build_command("fix the tests")
    assert cmd[1:] == [
        "--print", "--output-format", "stream-json", "--verbose", "--", "fix the tests",
    ]


def test_claude_build_command_does_not_repeat_verbose():
    provider = ClaudeProvider(
        command="claude",
        settings=ChatSettings(claude=ClaudeSettings(model="sonnet", verbose=True)),
    )
    cmd = provider.build_command("p")
    assert cmd.count("--verbose") == 1
    assert cmd[5:7] == ["--model", "sonnet"]
    assert cmd[-2:] == ["--", "p"]


def test_claude_parse_line_assistant_and_delta():
    provider = ClaudeProvider(command="claude")
    state = StreamState()
    assistant = json.dumps({
        "type": "assistant",
        "message": {"content": [
            {"type": "text", "text": "Hello "},
            {"type": "tool_use", "name": "Read"},
            {"type": "text", "text": "there"},
        ]},
    })
    assert provider.parse_line(assistant, state) == "Hello there"
    delta = json.dumps({"type": "content_block_delta", "delta": {"text": "!"}})
    assert provider.parse_line(delta, state) == "!"


def test_claude_parse_line_ignores_noise():
    provider = ClaudeProvider(command="claude")
    state = StreamState()
    assert provider.parse_line("not json at all", state) is None
    assert provider.parse_line("", state) is None
    assert provider.parse_line(json.dumps({"type": "system", "subtype": "init"}), state) is None
    assert provider.parse_line("[1, 2]", state) is None


def test_claude_parse_line_result_fallback_only_when_nothing_streamed():
    provider = ClaudeProvider(command="claude")
    result = json.dumps({"type": "result", "result": "final answer"})

    empty = StreamState()
    assert provider.parse_line(result, empty) == "final answer"

    streamed = StreamState(output_parts=["partial"])
    assert provider.parse_line(result, streamed) is None


def test_claude_parse_line_errors_recorded():
    provider = ClaudeProvider(command="claude")
    state = StreamState()
    provider.parse_line(json.dumps({"type": "result", "is_error": True, "result": "rate limited"}), state)
    assert state.error == "rate limited"

    state = StreamState()
    provider.parse_line(json.dumps({"type": "error", "error": {"message": "overloaded"}}), state)
    assert state.error == "overloaded"


def test_claude_env_strips_anthropic_key():
    provider = ClaudeProvider(command="claude")
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-server"}):
        env = provider._build_env()
    assert env is not None
    assert "ANTHROPIC_API_KEY" not in env


def test_claude_env_passes_configured_key():
    provider = ClaudeProvider(command="claude", api_key_env="MY_CLAUDE_KEY")
    with patch.dict(os.environ, {"MY_CLAUDE_KEY": "sk-user", "ANTHROPIC_API_KEY": "sk-server"}):
        env = provider._build_env()
    assert env["ANTHROPIC_API_KEY"] == "sk-user"


@pytest.mark.asyncio
async def test_claude_run_agent_streams_text():
    provider = ClaudeProvider(command="claude")
    proc = _FakeProcess(_jsonl(
        {"type": "system", "subtype": "init"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Looking "}]}},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "good"}]}},
        {"type": "result", "result": "Looking good", "is_error": False},
    ))
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as mock_exec:
        messages = await _collect(provider, cwd="/work/repo")

    assert [m.text for m in messages if not m.is_result] == ["Looking ", "good"]
    final = messages[-1]
    assert final.is_result is True
    assert final.is_error is False
    assert final.text == "Looking good"
    assert final.metadata["exit_code"] == 0

    args, kwargs = mock_exec.call_args
    assert args[-2:] == ("--", "do it")
    assert kwargs["cwd"] == "/work/repo"


@pytest.mark.asyncio
async def test_claude_run_agent_reports_stream_error():
    provider = ClaudeProvider(command="claude")
    proc = _FakeProcess(
        _jsonl({"type": "result", "is_error": True, "result": "credit balance too low"}),
        returncode=1,
    )
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        messages = await _collect(provider)

    final = messages[-1]
    assert final.is_error is True
    assert final.metadata["error"] == "credit balance too low"
    assert final.metadata["exit_code"] == 1


# ── Codex ──


def test_codex_build_command_defaults():
    provider = CodexProvider(command="codex")
    cmd = provider.build_command("refactor")
    assert cmd[1:] == [
        "exec",
        "-m", "gpt-5",
        "-c", 'model_reasoning_effort="high"',
        "--sandbox", "read-only",
        "--", "refactor",
    ]


def test_codex_spawn_command_replaces_flags():
    provider = CodexProvider(command="codex", settings=ChatSettings(spawn_command=["--full-auto"]))
    assert provider.build_command("p")[1:] == ["exec", "--full-auto", "--", "p"]


@pytest.mark.asyncio
async def test_codex_run_agent_nonzero_exit_includes_stderr():
    provider = CodexProvider(command="codex")
    proc = _FakeProcess([b"thinking...\n", b"half done\n"], stderr=b"error: quota exceeded\n", returncode=2)
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        messages = await _collect(provider)

    assert [m.text for m in messages[:-1]] == ["thinking...\n", "half done\n"]
    final = messages[-1]
    assert final.is_error is True
    assert final.text == "thinking...\nhalf done\n"
    assert final.metadata["exit_code"] == 2
    assert final.metadata["error"] == "Codex CLI exited with code 2: error: quota exceeded"


@pytest.mark.asyncio
async def test_codex_run_agent_missing_binary():
    provider = CodexProvider(command="codex")
    missing = FileNotFoundError(2, "No such file or directory")
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=missing)):
        messages = [m async for m in provider.run_agent("p")]

    assert len(messages) == 1
    final = messages[0]
    assert final.is_result and final.is_error
    assert final.metadata["exit_code"] is None
    assert "not found" in final.metadata["error"]


def test_codex_env_maps_api_key():
    provider = CodexProvider(command="codex", api_key_env="TEAM_OPENAI_KEY")
    with patch.dict(os.environ, {"TEAM_OPENAI_KEY": "sk-team"}):
        env = provider._build_env()
    assert env["OPENAI_API_KEY"] == "sk-team"

    with patch.dict(os.environ, {}, clear=True):
        assert provider._build_env() is None


# ── Gemini ──


def test_gemini_build_command_uses_prompt_flag():
    provider = GeminiProvider(command="gemini")
    assert provider.build_command("-leading dash")[1:] == ["--prompt=-leading dash"]


def test_gemini_spawn_command_drops_prompt_flags():
    provider = GeminiProvider(
        command="gemini",
        settings=ChatSettings(spawn_command=["--model", "gemini-2.5-flash", "-p"]),
    )
    assert provider.build_command("hi")[1:] == ["--model", "gemini-2.5-flash", "--prompt=hi"]


def test_gemini_is_available():
    provider = GeminiProvider(command="gemini")
    with patch("shutil.which", return_value="/usr/bin/gemini"):
        assert provider.is_available() is True
    with patch("shutil.which", return_value=None):
        assert provider.is_available() is False


@pytest.mark.asyncio
async def test_gemini_run_agent_plain_text():
    provider = GeminiProvider(command="gemini")
    proc = _FakeProcess([b"All checks pass.\n"])
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        messages = await _collect(provider)

    final = messages[-1]
    assert final.is_error is False
    assert final.text == "All checks pass.\n"
