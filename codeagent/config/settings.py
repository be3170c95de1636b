"""
Settings

Loads the JSON configuration through ConfigService, overlays provider
API keys from the environment and materializes the agent tuning knobs.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from codeagent.services.config_service import ConfigService

logger = logging.getLogger(__name__)

ENV_API_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

MIN_TURNS = 1
MAX_TURNS = 50


@dataclass
class AgentSettings:
    max_turns: int = 8
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 16.0
    dedup_window_seconds: float = 2.0
    cache_ttl_seconds: float = 1800.0
    cache_max_entries: int = 200
    command_timeout: float = 30.0
    max_command_output: int = 10000
    max_repeated_tool_calls: int = 5
    session_budget_eur: Optional[float] = None
    enable_prompt_cache: bool = True
    active_provider: Optional[str] = None

    def __post_init__(self):
        self.max_turns = max(MIN_TURNS, min(MAX_TURNS, int(self.max_turns)))
        self.max_retries = max(0, int(self.max_retries))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "AgentSettings":
        """Build settings from the ``agent`` section, ignoring unknown keys."""
        section = config.get("agent") or {}
        known = {f.name for f in fields(cls)}
        unknown = set(section) - known
        if unknown:
            logger.warning(f"Ignoring unknown agent settings: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in section.items() if k in known})


def apply_env_overrides(
    config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Environment API keys win over the file."""
    environ = os.environ if environ is None else environ
    providers = config.setdefault("providers", {})
    for name, var in ENV_API_KEYS.items():
        value = environ.get(var)
        if value:
            providers.setdefault(name, {})["api_key"] = value
    return config


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Load the configuration file, if any, and apply environment overrides.

    A missing file is not an error here: an environment key alone is
    enough to run. Malformed JSON still raises ValueError.
    """
    service = ConfigService(config_path=config_path)
    config = service.load() if service.exists() else {}
    return apply_env_overrides(config, environ)


def load_settings(config: Mapping[str, Any]) -> AgentSettings:
    return AgentSettings.from_config(config)
