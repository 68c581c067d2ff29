"""Tests for configuration and API key resolution."""

import os

import pytest
from pydantic import ValidationError

from mcp_server_deep_research.config import (
    NO_KEY_PROVIDERS,
    STANDARD_ENV_VAR_NAMES,
    AppSettings,
    CacheSettings,
    EmbeddingSettings,
    LLMSettings,
    ResearchSettings,
    SearchSettings,
    ServerSettings,
    SplitterSettings,
)
from mcp_server_deep_research.exceptions import InvalidConfiguration


class TestStandardEnvVarNames:
    """Test that standard env var names are correctly defined."""

    def test_all_providers_have_standard_names(self):
        """All providers that need keys should have standard names defined."""
        expected_providers = {
            "openai",
            "anthropic",
            "google",
            "azure_openai",
            "groq",
            "deepseek",
            "cerebras",
            "browser_use",
            "openrouter",
            "vercel",
        }
        assert set(STANDARD_ENV_VAR_NAMES.keys()) == expected_providers

    def test_standard_names_format(self):
        """Standard names should follow PROVIDER_API_KEY format."""
        for provider, env_vars in STANDARD_ENV_VAR_NAMES.items():
            # Handle both single string and list of strings
            vars_to_check = env_vars if isinstance(env_vars, list) else [env_vars]
            for env_var in vars_to_check:
                assert env_var.endswith("_API_KEY"), f"{provider} env var {env_var} should end with _API_KEY"
                assert env_var.isupper(), f"{provider} env var {env_var} should be uppercase"


class TestNoKeyProviders:
    """Test providers that don't require API keys."""

    def test_ollama_no_key(self):
        """Ollama should not require an API key."""
        assert "ollama" in NO_KEY_PROVIDERS

    def test_bedrock_no_key(self):
        """Bedrock should not require an API key (uses AWS credentials)."""
        assert "bedrock" in NO_KEY_PROVIDERS


class TestApiKeyResolution:
    """Test API key resolution priority logic."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        """Clean environment variables before each test."""
        # Remove any existing API key env vars
        for var in list(os.environ.keys()):
            if "API_KEY" in var or var.startswith("MCP_LLM_"):
                monkeypatch.delenv(var, raising=False)

    def test_generic_override_takes_priority(self, monkeypatch):
        """MCP_LLM_API_KEY should override all other sources."""
        monkeypatch.setenv("MCP_LLM_API_KEY", "generic-key")
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("MCP_LLM_OPENAI_API_KEY", "mcp-key")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "openai")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "generic-key"

    def test_standard_name_over_mcp_prefix(self, monkeypatch):
        """Standard env var should take priority over MCP-prefixed."""
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("MCP_LLM_OPENAI_API_KEY", "mcp-key")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "openai")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "standard-key"

    def test_mcp_prefix_fallback(self, monkeypatch):
        """MCP-prefixed should work when standard not set (backward compat)."""
        monkeypatch.setenv("MCP_LLM_OPENAI_API_KEY", "mcp-key")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "openai")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "mcp-key"

    def test_ollama_no_key_required(self, monkeypatch):
        """Ollama should work without any API key."""
        monkeypatch.setenv("MCP_LLM_PROVIDER", "ollama")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert not settings.requires_api_key()

    def test_bedrock_no_key_required(self, monkeypatch):
        """Bedrock should work without API key (uses AWS credentials)."""
        monkeypatch.setenv("MCP_LLM_PROVIDER", "bedrock")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert not settings.requires_api_key()

    def test_anthropic_standard_key(self, monkeypatch):
        """Anthropic should work with ANTHROPIC_API_KEY."""
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "anthropic")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "sk-ant-test"
        assert settings.requires_api_key()

    def test_google_standard_key(self, monkeypatch):
        """Google should work with GOOGLE_API_KEY."""
        monkeypatch.setenv("GOOGLE_API_KEY", "google-test-key")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "google")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "google-test-key"

    def test_groq_standard_key(self, monkeypatch):
        """Groq should work with GROQ_API_KEY."""
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "groq")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "gsk-test"

    def test_openrouter_standard_key(self, monkeypatch):
        """OpenRouter should work with OPENROUTER_API_KEY."""
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
        monkeypatch.setenv("MCP_LLM_PROVIDER", "openrouter")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "sk-or-test"

    def test_no_key_returns_none(self, monkeypatch):
        """Should return None when no key is set for a provider that needs one."""
        monkeypatch.setenv("MCP_LLM_PROVIDER", "openai")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert settings.requires_api_key()


class TestLLMSettingsDefaults:
    """Test default values for LLM settings."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        """Clean environment variables before each test."""
        # Remove any existing LLM env vars that would override defaults
        for var in list(os.environ.keys()):
            if var.startswith("MCP_LLM_"):
                monkeypatch.delenv(var, raising=False)

    def test_default_provider(self, monkeypatch):
        """Default provider should be google."""
        # Ensure no env vars override the default
        monkeypatch.delenv("MCP_LLM_PROVIDER", raising=False)
        settings = LLMSettings()
        assert settings.provider == "google"

    def test_default_model(self, monkeypatch):
        """Default model should be a gemini flash model."""
        monkeypatch.delenv("MCP_LLM_MODEL_NAME", raising=False)
        settings = LLMSettings()
        assert "gemini" in settings.model_name.lower()

    def test_azure_defaults(self, monkeypatch):
        """Azure should have sensible defaults."""
        monkeypatch.delenv("MCP_LLM_AZURE_API_VERSION", raising=False)
        monkeypatch.delenv("MCP_LLM_AZURE_ENDPOINT", raising=False)
        settings = LLMSettings()
        assert settings.azure_api_version == "2024-02-01"
        assert settings.azure_endpoint is None

    def test_aws_defaults(self, monkeypatch):
        """AWS region should default to None."""
        monkeypatch.delenv("MCP_LLM_AWS_REGION", raising=False)
        settings = LLMSettings()
        assert settings.aws_region is None


class TestProviderTypeValidation:
    """Test that provider type validation works."""

    def test_valid_providers(self, monkeypatch):
        """All valid providers should be accepted."""
        valid_providers = [
            "openai",
            "anthropic",
            "google",
            "azure_openai",
            "groq",
            "deepseek",
            "cerebras",
            "ollama",
            "bedrock",
            "browser_use",
            "openrouter",
            "vercel",
        ]
        for provider in valid_providers:
            monkeypatch.setenv("MCP_LLM_PROVIDER", provider)
            settings = LLMSettings()
            assert settings.provider == provider


class TestEmbeddingAndSearchKeys:
    """Test key resolution for the embedding and search capabilities."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in list(os.environ.keys()):
            if "API_KEY" in var or var.startswith(("MCP_EMBEDDING_", "MCP_SEARCH_")):
                monkeypatch.delenv(var, raising=False)

    def test_embedding_explicit_key(self, monkeypatch):
        monkeypatch.setenv("MCP_EMBEDDING_API_KEY", "embed-key")
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
        assert EmbeddingSettings().get_api_key_for_provider() == "embed-key"

    def test_embedding_falls_back_to_standard_name(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
        assert EmbeddingSettings().get_api_key_for_provider() == "gemini-key"

    def test_embedding_openai(self, monkeypatch):
        monkeypatch.setenv("MCP_EMBEDDING_PROVIDER", "openai")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert EmbeddingSettings().get_api_key_for_provider() == "sk-test"

    def test_search_key_from_standard_env(self, monkeypatch):
        monkeypatch.setenv("EXA_API_KEY", "exa-key")
        assert SearchSettings().get_exa_api_key() == "exa-key"

    def test_search_without_key(self):
        assert SearchSettings().get_exa_api_key() is None


class TestResearchSettings:
    """Test depth/breadth clamping and concurrency bounds."""

    def test_defaults_when_unset(self):
        settings = ResearchSettings(default_depth=2, default_breadth=4)
        assert settings.clamp_depth(None) == 2
        assert settings.clamp_breadth(None) == 4

    def test_depth_clamped(self):
        settings = ResearchSettings()
        assert settings.clamp_depth(0) == 1
        assert settings.clamp_depth(99) == 5
        assert settings.clamp_depth(3) == 3

    def test_breadth_clamped(self):
        settings = ResearchSettings()
        assert settings.clamp_breadth(-2) == 1
        assert settings.clamp_breadth(50) == 10

    def test_concurrency_clamped(self):
        assert ResearchSettings(concurrency_limit=0).concurrency_limit == 1
        assert ResearchSettings(concurrency_limit=1000).concurrency_limit == 64

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MCP_RESEARCH_CONCURRENCY_LIMIT", "3")
        assert ResearchSettings().concurrency_limit == 3


class TestSplitterAndCacheSettings:
    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(ValidationError, match="Cannot have chunk_overlap >= chunk_size") as exc_info:
            SplitterSettings(chunk_size=20, chunk_overlap=20)
        assert isinstance(exc_info.value.errors()[0]["ctx"]["error"], InvalidConfiguration)

    def test_provider_cache_limits_clamped(self):
        settings = CacheSettings(provider_max=1, provider_ttl=10**9)
        assert settings.provider_max == 10
        assert settings.provider_ttl == 86_400.0


class TestAppSettings:
    def test_server_defaults(self, monkeypatch):
        for var in list(os.environ.keys()):
            if var.startswith("MCP_SERVER_"):
                monkeypatch.delenv(var, raising=False)
        settings = ServerSettings()
        assert settings.transport == "stdio"
        assert settings.results_dir is None

    def test_save_excludes_secrets(self, monkeypatch, tmp_path):
        import mcp_server_deep_research.config as config

        config_file = tmp_path / "config.json"
        monkeypatch.setattr(config, "CONFIG_FILE", config_file)

        settings = AppSettings(
            llm=LLMSettings(api_key="secret-llm"),
            embedding=EmbeddingSettings(api_key="secret-embed"),
            search=SearchSettings(exa_api_key="secret-exa"),
        )
        assert settings.save() == config_file

        text = config_file.read_text()
        assert "secret" not in text
        assert "research" in text

    def test_results_dir_created(self, tmp_path):
        target = tmp_path / "reports"
        settings = AppSettings(server=ServerSettings(results_dir=str(target)))
        assert settings.get_results_dir() == target
        assert target.is_dir()
