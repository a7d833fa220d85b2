"""YAML configuration loader.

Layers a single YAML file over the env-derived JobsConfig. Every
section is optional.

Example YAML:
    engine:
      default_backend: codex
      default_max_parallel: 4
      precheck_timeout_seconds: 10
      storage_dir: /var/lib/agentjobs
      session_backend: tmux
      session_name: ai-workspace

    providers:
      claude:
        command: /opt/claude/bin/claude
        api_key_env: MY_ANTHROPIC_KEY
        settings:
          claude:
            model: sonnet
            permissionMode: acceptEdits
      codex:
        settings:
          codex:
            model: gpt-5
            reasoningEffort: medium
      gemini:
        settings:
          geminiModel: gemini-2.5-pro

    needs_human:
      patterns:
        - "needs?.human"
        - "TODO\\(human\\)"
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import BACKENDS, JobsConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_ENGINE_FIELDS = {
    "default_backend": str,
    "default_max_parallel": int,
    "precheck_timeout_seconds": float,
    "storage_dir": str,
    "max_run_history": int,
    "session_backend": str,
    "session_name": str,
    "session_output_dir": str,
    "kill_grace_seconds": float,
    "log_level": str,
}


def _apply_engine(config: JobsConfig, section: dict[str, Any]) -> None:
    for key, value in section.items():
        if key not in _ENGINE_FIELDS:
            logger.warning("load_yaml_config: ignoring unknown engine key %r", key)
            continue
        try:
            setattr(config, key, _ENGINE_FIELDS[key](value))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"engine.{key}: invalid value {value!r}") from exc


def _apply_providers(config: JobsConfig, section: dict[str, Any]) -> None:
    for name, raw in section.items():
        if name not in BACKENDS:
            logger.warning("load_yaml_config: ignoring unknown provider %r", name)
            continue
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"providers.{name} must be a mapping")
        if raw.get("command"):
            config.provider_commands[name] = str(raw["command"])
        if raw.get("api_key_env"):
            config.provider_api_key_envs[name] = str(raw["api_key_env"])
        settings = dict(raw.get("settings") or {})
        if settings:
            config.provider_settings[name] = settings
        logger.debug(
            "load_yaml_config: provider %s command=%s settings=%s",
            name, raw.get("command"), sorted(settings),
        )


def load_yaml_config(path: str | Path, base: JobsConfig | None = None) -> JobsConfig:
    """Load a YAML file and apply it on top of *base* (env config by default)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    config = base if base is not None else JobsConfig.from_env()
    _apply_engine(config, raw.get("engine") or {})
    _apply_providers(config, raw.get("providers") or {})

    needs_human = raw.get("needs_human") or {}
    patterns = needs_human.get("patterns") if isinstance(needs_human, dict) else None
    if patterns is not None:
        if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
            raise ConfigurationError("needs_human.patterns must be a list of strings")
        config.needs_human_patterns = list(patterns)

    config.validate()
    return config
