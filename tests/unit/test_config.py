import pytest
from pydantic import ValidationError

from kgagent.config import AgentConfig
from kgagent.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("KGAGENT_LLM_PROVIDER", "KGAGENT_CLAUDE__API_KEY", "KGAGENT_MAX_TURNS"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = AgentConfig()
    assert config.llm_provider == "openai"
    assert config.openai_compatible.base_url == "http://localhost:11434/api/chat"
    assert config.openai.flex is False
    assert config.max_turns == 50


def test_max_turns_must_be_positive(monkeypatch):
    with pytest.raises(ValidationError):
        AgentConfig(max_turns=0)

    monkeypatch.setenv("KGAGENT_MAX_TURNS", "-1")
    with pytest.raises(ValidationError):
        AgentConfig()


def test_env_overrides_keep_section_defaults(monkeypatch):
    monkeypatch.setenv("KGAGENT_LLM_PROVIDER", "claude")
    monkeypatch.setenv("KGAGENT_CLAUDE__API_KEY", "sk-ant")
    monkeypatch.setenv("KGAGENT_MAX_TURNS", "5")

    config = AgentConfig()

    assert config.llm_provider == "claude"
    assert config.claude.api_key == "sk-ant"
    assert config.claude.base_url == "https://api.anthropic.com/v1/messages"
    assert config.max_turns == 5


def test_from_mapping_reads_dotted_keys():
    config = AgentConfig.from_mapping({
        "general.llm_provider": "openai_compatible",
        "general.openai_compatible.model": "qwen3:8b",
        "general.openai_compatible.base_url": "http://gpu-box:11434/api/chat",
        "general.openai.flex": True,
        "general.unknown_section.key": "ignored",
        "ui.theme": "dark",
    })

    assert config.llm_provider == "openai_compatible"
    assert config.openai_compatible.model == "qwen3:8b"
    assert config.openai_compatible.base_url == "http://gpu-box:11434/api/chat"
    assert config.openai.flex is True
    assert config.openai.model == "gpt-4.1-mini"


def test_provider_settings_for_active_provider():
    config = AgentConfig(llm_provider="gemini")
    assert config.provider_settings() is config.gemini
    assert config.provider_settings("claude") is config.claude


def test_provider_settings_unknown():
    with pytest.raises(ConfigurationError, match="Unknown LLM provider"):
        AgentConfig(llm_provider="llamafile").provider_settings()
