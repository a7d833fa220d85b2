"""Tests for backend CLI argv builders."""
from __future__ import annotations

import pytest

from agentjobs.engine.providers.settings import (
    ChatSettings,
    ClaudeSettings,
    CodexSettings,
    GeminiSettings,
    build_claude_args,
    build_codex_args,
    build_gemini_args,
)


def test_claude_args_empty_by_default():
    assert build_claude_args() == []
    assert build_claude_args(ChatSettings()) == []


def test_claude_nested_model_wins_over_flat():
    settings = ChatSettings(claude_model="opus", claude=ClaudeSettings(model="sonnet"))
    assert build_claude_args(settings) == ["--model", "sonnet"]


def test_claude_flat_fields_used_without_nested_block():
    settings = ChatSettings(
        system_prompt="Be terse",
        claude_model="opus",
        allowed_tools=["Read", "Grep"],
        permission_mode="acceptEdits",
    )
    assert build_claude_args(settings) == [
        "--append-system-prompt", "Be terse",
        "--model", "opus",
        "--allowed-tools", "Read", "Grep",
        "--permission-mode", "acceptEdits",
    ]


def test_claude_nested_only_flags():
    settings = ChatSettings(claude=ClaudeSettings(
        mcp_config=["a.json", "b.json"],
        strict_mcp_config=True,
        plugin_dirs=["/plugins"],
        max_budget_usd=2.5,
        betas=["x"],
        dangerously_skip_permissions=True,
    ))
    assert build_claude_args(settings) == [
        "--mcp-config", "a.json",
        "--mcp-config", "b.json",
        "--strict-mcp-config",
        "--plugin-dir", "/plugins",
        "--max-budget-usd", "2.5",
        "--beta", "x",
        "--dangerously-skip-permissions",
    ]


def test_codex_defaults():
    assert build_codex_args() == [
        "-m", "gpt-5",
        "-c", 'model_reasoning_effort="high"',
        "--sandbox", "read-only",
    ]


def test_codex_flat_fields():
    settings = ChatSettings(codex_model="o3", reasoning_effort="low", sandbox="workspace-write")
    assert build_codex_args(settings) == [
        "-m", "o3",
        "-c", 'model_reasoning_effort="low"',
        "--sandbox", "workspace-write",
    ]


def test_codex_nested_wins_over_flat():
    settings = ChatSettings(
        codex_model="o3",
        codex=CodexSettings(model="gpt-5-codex", approval_mode="never", max_tokens=4000),
    )
    args = build_codex_args(settings)
    assert args[:2] == ["-m", "gpt-5-codex"]
    assert args[-4:] == ["--approval-mode", "never", "--max-tokens", "4000"]


def test_codex_explicit_settings_replace_nested_block():
    settings = ChatSettings(codex=CodexSettings(model="ignored", sandbox="danger-full-access"))
    args = build_codex_args(settings, CodexSettings(model="explicit"))
    assert args == [
        "-m", "explicit",
        "-c", 'model_reasoning_effort="high"',
        "--sandbox", "read-only",
    ]


def test_gemini_args():
    settings = ChatSettings(
        gemini_model="flat-model",
        system_prompt="sys",
        gemini=GeminiSettings(
            model="gemini-2.5-pro",
            temperature=0.2,
            max_output_tokens=1024,
            harm_block_threshold="BLOCK_NONE",
        ),
    )
    assert build_gemini_args(settings) == [
        "--model", "gemini-2.5-pro",
        "--temperature", "0.2",
        "--max-output-tokens", "1024",
        "--system-instruction", "sys",
        "--harm-block-threshold", "BLOCK_NONE",
    ]


def test_gemini_args_empty_by_default():
    assert build_gemini_args() == []


@pytest.mark.parametrize(
    "raw,expected_model",
    [
        ({"claude": {"model": "sonnet"}}, "sonnet"),
        ({"claude": {"permissionMode": "plan", "model": "haiku"}}, "haiku"),
        ({"claudeModel": "opus"}, None),
    ],
)
def test_chat_settings_from_dict_nested_claude(raw, expected_model):
    settings = ChatSettings.from_dict(raw)
    if expected_model is None:
        assert settings.claude is None
    else:
        assert settings.claude is not None
        assert settings.claude.model == expected_model


def test_chat_settings_from_dict_accepts_camel_case_and_drops_unknown():
    settings = ChatSettings.from_dict({
        "geminiModel": "g",
        "reasoningEffort": "medium",
        "spawnCommand": ["--full-auto"],
        "somethingElse": True,
        "codex": {"sandbox": "workspace-write", "bogus": 1},
    })
    assert settings.gemini_model == "g"
    assert settings.reasoning_effort == "medium"
    assert settings.spawn_command == ["--full-auto"]
    assert settings.codex == CodexSettings(sandbox="workspace-write")


def test_chat_settings_from_dict_none():
    assert ChatSettings.from_dict(None) == ChatSettings()
