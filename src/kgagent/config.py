"""Runtime configuration.

Values come from constructor arguments, ``KGAGENT_``-prefixed
environment variables (``KGAGENT_CLAUDE__API_KEY``) or, for hosts that
keep flat dotted keys, :meth:`AgentConfig.from_mapping`::

    config = AgentConfig.from_mapping({
        "general.llm_provider": "openai_compatible",
        "general.openai_compatible.base_url": "http://localhost:11434/api/chat",
        "general.openai_compatible.model": "qwen3:8b",
    })
"""

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kgagent.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PROVIDER_NAMES = ("openai", "openai_compatible", "claude", "claude_openrouter", "gemini")


class ProviderSettings(BaseModel):
    api_key: str = ""
    model: str = ""
    base_url: str = ""


class OpenAISettings(ProviderSettings):
    model: str = "gpt-4.1-mini"
    flex: bool = False


class OpenAICompatibleSettings(ProviderSettings):
    base_url: str = "http://localhost:11434/api/chat"
    model: str = "llama3.1"


class ClaudeSettings(ProviderSettings):
    base_url: str = "https://api.anthropic.com/v1/messages"
    model: str = "claude-sonnet-4-20250514"


class ClaudeOpenRouterSettings(ProviderSettings):
    base_url: str = "https://openrouter.ai/api/v1/chat/completions"
    model: str = "anthropic/claude-sonnet-4"


class GeminiSettings(ProviderSettings):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/models"
    model: str = "gemini-2.5-flash"


class AgentConfig(BaseSettings):
    """Provider selection plus per-provider endpoint, model and key."""

    model_config = SettingsConfigDict(
        env_prefix="KGAGENT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    llm_provider: str = "openai"

    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    openai_compatible: OpenAICompatibleSettings = Field(default_factory=OpenAICompatibleSettings)
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    claude_openrouter: ClaudeOpenRouterSettings = Field(default_factory=ClaudeOpenRouterSettings)
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)

    request_timeout: float = Field(default=600.0, gt=0)
    max_turns: int = Field(default=50, ge=1)

    def provider_settings(self, name: str | None = None) -> ProviderSettings:
        """Return the settings section for ``name`` (default: the active provider)."""
        name = name or self.llm_provider
        if name not in PROVIDER_NAMES:
            raise ConfigurationError(f"Unknown LLM provider: {name}")
        return getattr(self, name)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], prefix: str = "general.") -> "AgentConfig":
        """Build a config from flat dotted keys such as ``general.claude.model``.

        Keys outside ``prefix`` are ignored.  Sections that are only
        partly given keep their defaults for the rest.
        """
        nested: dict[str, Any] = {}
        for key, value in values.items():
            if not key.startswith(prefix):
                continue
            path = key[len(prefix):].split(".")
            if len(path) == 1:
                nested[path[0]] = value
                continue
            section, field = path[0], ".".join(path[1:])
            if section not in PROVIDER_NAMES:
                logger.debug(f"Ignoring config key {key}")
                continue
            nested.setdefault(section, {})[field] = value
        return cls(**nested)
