"""Backend CLI settings and argv builders.

Each backend has nested, backend-specific settings (``claude:``,
``codex:``, ``gemini:``) and a set of legacy flat fields on
ChatSettings (``claude_model``, ``codex_model``, ...). When both are
set the nested value always wins.

The builders are pure: settings in, argv list out.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

DEFAULT_CODEX_MODEL = "gpt-5"
DEFAULT_CODEX_REASONING_EFFORT = "high"
DEFAULT_CODEX_SANDBOX = "read-only"


def _camel_to_snake(name: str) -> str:
    out: list[str] = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _filtered_kwargs(cls: type, data: dict[str, Any] | None) -> dict[str, Any]:
    """Accept camelCase or snake_case keys, drop unknown ones."""
    if not data:
        return {}
    names = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        snake = _camel_to_snake(key)
        if snake in names:
            kwargs[snake] = value
    return kwargs


@dataclass
class ClaudeSettings:
    model: str | None = None
    agent: str | None = None
    permission_mode: str | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None
    mcp_config: list[str] | None = None
    strict_mcp_config: bool = False
    additional_dirs: list[str] | None = None
    plugin_dirs: list[str] | None = None
    max_budget_usd: float | None = None
    betas: list[str] | None = None
    system_prompt: str | None = None
    verbose: bool = False
    dangerously_skip_permissions: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ClaudeSettings:
        return cls(**_filtered_kwargs(cls, data))


@dataclass
class CodexSettings:
    model: str | None = None
    reasoning_effort: str | None = None
    sandbox: str | None = None
    approval_mode: str | None = None
    max_tokens: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CodexSettings:
        return cls(**_filtered_kwargs(cls, data))


@dataclass
class GeminiSettings:
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    system_instruction: str | None = None
    harm_block_threshold: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GeminiSettings:
        return cls(**_filtered_kwargs(cls, data))


@dataclass
class ChatSettings:
    """Unified settings: nested per-backend blocks plus legacy flat fields."""
    system_prompt: str | None = None
    claude: ClaudeSettings | None = None
    codex: CodexSettings | None = None
    gemini: GeminiSettings | None = None
    # A pre-built argv (minus prompt) that replaces the built one.
    spawn_command: list[str] = field(default_factory=list)

    # Legacy flat fields
    additional_dirs: list[str] | None = None
    claude_model: str | None = None
    claude_agent: str | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None
    permission_mode: str | None = None
    gemini_model: str | None = None
    codex_model: str | None = None
    reasoning_effort: str | None = None
    sandbox: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ChatSettings:
        data = dict(data or {})
        nested = {
            "claude": ClaudeSettings.from_dict(data.pop("claude", None)) if data.get("claude") else None,
            "codex": CodexSettings.from_dict(data.pop("codex", None)) if data.get("codex") else None,
            "gemini": GeminiSettings.from_dict(data.pop("gemini", None)) if data.get("gemini") else None,
        }
        kwargs = _filtered_kwargs(cls, data)
        for key in ("claude", "codex", "gemini"):
            kwargs.pop(key, None)
        return cls(**kwargs, **nested)


def build_claude_args(settings: ChatSettings | None = None) -> list[str]:
    """Build ``claude`` CLI flags (without prompt or output-format flags)."""
    settings = settings or ChatSettings()
    claude = settings.claude or ClaudeSettings()
    args: list[str] = []

    system_prompt = claude.system_prompt or settings.system_prompt
    if system_prompt:
        args.extend(["--append-system-prompt", system_prompt])

    model = claude.model or settings.claude_model
    if model:
        args.extend(["--model", model])

    agent = claude.agent or settings.claude_agent
    if agent:
        args.extend(["--agent", agent])

    additional_dirs = claude.additional_dirs or settings.additional_dirs
    if additional_dirs:
        args.extend(["--add-dir", *additional_dirs])

    allowed_tools = claude.allowed_tools or settings.allowed_tools
    if allowed_tools:
        args.extend(["--allowed-tools", *allowed_tools])

    disallowed_tools = claude.disallowed_tools or settings.disallowed_tools
    if disallowed_tools:
        args.extend(["--disallowed-tools", *disallowed_tools])

    permission_mode = claude.permission_mode or settings.permission_mode
    if permission_mode:
        args.extend(["--permission-mode", permission_mode])

    for config_path in claude.mcp_config or []:
        args.extend(["--mcp-config", config_path])

    if claude.strict_mcp_config:
        args.append("--strict-mcp-config")

    for plugin_dir in claude.plugin_dirs or []:
        args.extend(["--plugin-dir", plugin_dir])

    if claude.max_budget_usd is not None:
        args.extend(["--max-budget-usd", str(claude.max_budget_usd)])

    for beta in claude.betas or []:
        args.extend(["--beta", beta])

    if claude.verbose:
        args.append("--verbose")

    if claude.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")

    return args


def build_codex_args(
    settings: ChatSettings | None = None,
    codex_settings: CodexSettings | None = None,
) -> list[str]:
    """Build ``codex exec`` flags.

    An explicit *codex_settings* replaces ``settings.codex`` entirely.
    """
    codex = codex_settings or (settings.codex if settings else None) or CodexSettings()
    flat = settings or ChatSettings()
    args: list[str] = []

    model = codex.model or flat.codex_model or DEFAULT_CODEX_MODEL
    args.extend(["-m", model])

    effort = codex.reasoning_effort or flat.reasoning_effort or DEFAULT_CODEX_REASONING_EFFORT
    args.extend(["-c", f'model_reasoning_effort="{effort}"'])

    sandbox = codex.sandbox or flat.sandbox or DEFAULT_CODEX_SANDBOX
    args.extend(["--sandbox", sandbox])

    if codex.approval_mode:
        args.extend(["--approval-mode", codex.approval_mode])

    if codex.max_tokens is not None:
        args.extend(["--max-tokens", str(codex.max_tokens)])

    return args


def build_gemini_args(settings: ChatSettings | None = None) -> list[str]:
    """Build ``gemini`` CLI flags (without ``-p``)."""
    settings = settings or ChatSettings()
    gemini = settings.gemini or GeminiSettings()
    args: list[str] = []

    model = gemini.model or settings.gemini_model
    if model:
        args.extend(["--model", model])

    if gemini.temperature is not None:
        args.extend(["--temperature", str(gemini.temperature)])

    if gemini.max_output_tokens is not None:
        args.extend(["--max-output-tokens", str(gemini.max_output_tokens)])

    system_instruction = gemini.system_instruction or settings.system_prompt
    if system_instruction:
        args.extend(["--system-instruction", system_instruction])

    if gemini.harm_block_threshold:
        args.extend(["--harm-block-threshold", gemini.harm_block_threshold])

    return args
