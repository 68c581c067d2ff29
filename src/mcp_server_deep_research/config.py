"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import InvalidConfiguration

# --- Paths ---

APP_NAME = "mcp-server-deep-research"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/mcp-server-deep-research)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_results_dir() -> Path:
    """Get the default directory for saving reports."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()

    path = base / "deep-research-reports"
    return path


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except Exception:
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


# Standard environment variable names for API keys (industry convention)
# For providers with multiple common env var names, use a list (first match wins)
STANDARD_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],  # GEMINI_API_KEY takes priority
    "azure_openai": "AZURE_OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "cerebras": "CEREBRAS_API_KEY",
    "browser_use": "BROWSER_USE_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "vercel": "VERCEL_API_KEY",
}

# Providers that don't require an API key
NO_KEY_PROVIDERS = frozenset({"ollama", "bedrock"})

ProviderType = Literal[
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


def clamp(value: int | float, low: int | float, high: int | float) -> int | float:
    """Clamp a number into [low, high]."""
    return max(low, min(high, value))


class LLMSettings(BaseSettings):
    """LLM provider configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_LLM_")

    provider: ProviderType = Field(default="google")
    model_name: str = Field(default="gemini-2.5-flash")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic API key override (highest priority)")
    base_url: Optional[str] = Field(default=None, description="Custom base URL for OpenAI-compatible APIs")

    # Azure OpenAI specific
    azure_endpoint: Optional[str] = Field(default=None, description="Azure OpenAI endpoint URL")
    azure_api_version: Optional[str] = Field(default="2024-02-01", description="Azure OpenAI API version")

    # AWS Bedrock specific
    aws_region: Optional[str] = Field(default=None, description="AWS region for Bedrock")

    def get_api_key_for_provider(self) -> Optional[str]:
        """Resolve API key with priority: generic > standard > MCP-prefixed.

        Priority order:
        1. MCP_LLM_API_KEY (generic override, applies to any provider)
        2. <PROVIDER>_API_KEY (standard name, e.g., OPENAI_API_KEY, GEMINI_API_KEY)
        3. MCP_LLM_<PROVIDER>_API_KEY (MCP-prefixed fallback)

        Returns:
            The resolved API key or None if not found.
        """
        if self.api_key:
            return self.api_key.get_secret_value()

        standard_vars = STANDARD_ENV_VAR_NAMES.get(self.provider)
        if standard_vars:
            if isinstance(standard_vars, str):
                standard_vars = [standard_vars]
            for var_name in standard_vars:
                key = os.environ.get(var_name)
                if key:
                    return key

        mcp_var = f"MCP_LLM_{self.provider.upper()}_API_KEY"
        return os.environ.get(mcp_var)

    def requires_api_key(self) -> bool:
        """Check if the current provider requires an API key."""
        return self.provider not in NO_KEY_PROVIDERS


EmbeddingProviderType = Literal["google", "openai", "none"]


class EmbeddingSettings(BaseSettings):
    """Embedding capability used by the semantic splitter."""

    model_config = SettingsConfigDict(env_prefix="MCP_EMBEDDING_")

    provider: EmbeddingProviderType = Field(default="google")
    model_name: str = Field(default="text-embedding-004")
    api_key: Optional[SecretStr] = Field(default=None)
    base_url: Optional[str] = Field(default=None, description="Override the embeddings endpoint base URL")
    timeout: float = Field(default=30.0)

    def get_api_key_for_provider(self) -> Optional[str]:
        """Resolve the embedding API key, falling back to the provider's standard env var."""
        if self.api_key:
            return self.api_key.get_secret_value()
        standard_vars = STANDARD_ENV_VAR_NAMES.get(self.provider)
        if isinstance(standard_vars, str):
            standard_vars = [standard_vars]
        for var_name in standard_vars or []:
            key = os.environ.get(var_name)
            if key:
                return key
        return None


class SearchSettings(BaseSettings):
    """Optional web search capability."""

    model_config = SettingsConfigDict(env_prefix="MCP_SEARCH_")

    enabled: bool = Field(default=True, description="Use the web search provider when an API key is present")
    exa_api_key: Optional[SecretStr] = Field(default=None, description="Exa API key (falls back to EXA_API_KEY)")
    num_results: int = Field(default=10)
    timeout: float = Field(default=30.0)

    def get_exa_api_key(self) -> Optional[str]:
        if self.exa_api_key:
            return self.exa_api_key.get_secret_value()
        return os.environ.get("EXA_API_KEY") or None


class ResearchSettings(BaseSettings):
    """Recursion, batching and resilience configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_RESEARCH_")

    concurrency_limit: int = Field(default=5, description="Maximum in-flight generation calls per recursion level")
    default_depth: int = Field(default=2)
    default_breadth: int = Field(default=4)
    min_depth: int = Field(default=1)
    max_depth: int = Field(default=5)
    min_breadth: int = Field(default=1)
    max_breadth: int = Field(default=10)
    visited_source_limit: int = Field(default=20, description="Recursion stops once more sources than this were visited")
    num_learnings: int = Field(default=3, description="Learnings kept per processed search result")
    max_learnings: int = Field(default=10, description="Learnings kept per extracted response")
    repair_attempts: int = Field(default=1, description="Repair requests issued for malformed output")
    request_timeout: float = Field(default=120.0, description="Timeout per generation/search call in seconds")
    max_retries: int = Field(default=2)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=30.0)
    save_directory: Optional[str] = Field(default=None, description="Directory to save research reports")

    @model_validator(mode="after")
    def _clamp_concurrency(self) -> "ResearchSettings":
        self.concurrency_limit = int(clamp(self.concurrency_limit, 1, 64))
        return self

    def clamp_depth(self, depth: int | None) -> int:
        if depth is None:
            depth = self.default_depth
        return int(clamp(depth, self.min_depth, self.max_depth))

    def clamp_breadth(self, breadth: int | None) -> int:
        if breadth is None:
            breadth = self.default_breadth
        return int(clamp(breadth, self.min_breadth, self.max_breadth))


class SplitterSettings(BaseSettings):
    """Text segmentation configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_SPLITTER_")

    chunk_size: int = Field(default=140)
    chunk_overlap: int = Field(default=20)
    separators: list[str] = Field(default_factory=lambda: ["\n\n", "\n", " "])
    similarity_threshold: float = Field(default=0.65)
    semantic: bool = Field(default=False, description="Use the embedding-based splitter for search content")
    tiktoken_encoding: str = Field(default="o200k_base")

    @model_validator(mode="after")
    def _check_overlap(self) -> "SplitterSettings":
        if self.chunk_overlap >= self.chunk_size:
            raise InvalidConfiguration("Cannot have chunk_overlap >= chunk_size")
        return self


class CacheSettings(BaseSettings):
    """Fingerprint cache capacities and expiry (seconds)."""

    model_config = SettingsConfigDict(env_prefix="MCP_CACHE_")

    sub_query_max: int = Field(default=50)
    report_max: int = Field(default=20)
    feedback_max: int = Field(default=100)
    feedback_ttl: float = Field(default=300.0)
    result_max: int = Field(default=50)
    provider_cache_enabled: bool = Field(default=True)
    provider_max: int = Field(default=100)
    provider_ttl: float = Field(default=600.0)

    @model_validator(mode="after")
    def _clamp_limits(self) -> "CacheSettings":
        self.provider_max = int(clamp(self.provider_max, 10, 5000))
        self.provider_ttl = float(clamp(self.provider_ttl, 1.0, 86_400.0))
        return self


TransportType = Literal["stdio", "streamable-http", "sse"]


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_SERVER_")

    logging_level: str = Field(default="INFO")
    transport: TransportType = Field(default="stdio", description="MCP transport: stdio, streamable-http, or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=8383, description="Port for HTTP transports")
    results_dir: Optional[str] = Field(default=None, description="Directory to save research reports")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="MCP_", extra="ignore")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    research: ResearchSettings = Field(default_factory=ResearchSettings)
    splitter: SplitterSettings = Field(default_factory=SplitterSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file (excluding secrets)."""
        data = self.model_dump(mode="json", exclude_none=True)
        for section, key in (("llm", "api_key"), ("embedding", "api_key"), ("search", "exa_api_key")):
            if section in data and key in data[section]:
                del data[section][key]
        save_config_file(data)
        return CONFIG_FILE

    def get_results_dir(self) -> Path:
        """Get the results directory, creating if needed."""
        if self.server.results_dir:
            path = Path(self.server.results_dir).expanduser()
        else:
            path = get_default_results_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    return AppSettings(**file_data)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the process settings, loaded once."""
    return _load_settings()


settings = get_settings()
