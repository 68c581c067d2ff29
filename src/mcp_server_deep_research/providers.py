"""Generation and embedding capabilities.

The generation capability is a browser-use native chat model wrapped in
``LLMGenerator`` (timeout, bounded retry, optional response cache). Embeddings
are fetched over HTTP with httpx.
"""

import json
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

# Import available chat models from browser-use
from browser_use import (
    ChatAnthropic,
    ChatAzureOpenAI,
    ChatBrowserUse,
    ChatGoogle,
    ChatGroq,
    ChatOllama,
    ChatOpenAI,
    ChatVercel,
)

# These are available via direct import but not in __all__
from browser_use.llm.aws.chat_bedrock import ChatAWSBedrock
from browser_use.llm.cerebras.chat import ChatCerebras
from browser_use.llm.deepseek.chat import ChatDeepSeek
from browser_use.llm.messages import SystemMessage, UserMessage
from browser_use.llm.openrouter.chat import ChatOpenRouter

from .batch import BatchExecutor, values_or
from .cache import SafeCache, hash_key
from .config import NO_KEY_PROVIDERS, STANDARD_ENV_VAR_NAMES
from .exceptions import LLMProviderError
from .resilience import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

    from .config import AppSettings, EmbeddingSettings

logger = logging.getLogger(__name__)


def get_llm(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    **kwargs,
) -> "BaseChatModel":
    """Create LLM instance using browser-use native providers.

    Supports 12 providers:
    - openai: OpenAI GPT models
    - anthropic: Claude models
    - google: Gemini models
    - azure_openai: Azure-hosted OpenAI models
    - groq: Groq-hosted models
    - deepseek: DeepSeek models
    - cerebras: Cerebras models
    - ollama: Local Ollama models (no API key required)
    - bedrock: AWS Bedrock models (uses AWS credentials)
    - browser_use: Browser Use Cloud API
    - openrouter: OpenRouter API
    - vercel: Vercel AI Gateway

    Args:
        provider: LLM provider name
        model: Model name/identifier
        api_key: API key for the provider (not required for ollama/bedrock)
        base_url: Custom base URL for OpenAI-compatible APIs
        **kwargs: Provider-specific options:
            - azure_endpoint: Azure OpenAI endpoint URL
            - azure_api_version: Azure OpenAI API version (default: 2024-02-01)
            - aws_region: AWS region for Bedrock

    Returns:
        Configured BaseChatModel instance

    Raises:
        LLMProviderError: If provider is unsupported or API key is missing
    """
    requires_api_key = provider not in NO_KEY_PROVIDERS and not base_url
    if requires_api_key and not api_key:
        standard_var = STANDARD_ENV_VAR_NAMES.get(provider, "API key")
        raise LLMProviderError(f"API key required for provider '{provider}'. Set {standard_var} or MCP_LLM_API_KEY environment variable.")

    try:
        match provider:
            case "openai":
                return ChatOpenAI(model=model, api_key=api_key, base_url=base_url)

            case "anthropic":
                return ChatAnthropic(model=model, api_key=api_key)

            case "google":
                return ChatGoogle(model=model, api_key=api_key)

            case "azure_openai":
                azure_endpoint = kwargs.get("azure_endpoint")
                azure_api_version = kwargs.get("azure_api_version", "2024-02-01")
                if not azure_endpoint:
                    raise LLMProviderError("Azure OpenAI requires AZURE_OPENAI_ENDPOINT or MCP_LLM_AZURE_ENDPOINT to be set.")
                return ChatAzureOpenAI(
                    model=model,
                    api_key=api_key,
                    azure_endpoint=azure_endpoint,
                    api_version=azure_api_version,
                )

            case "groq":
                return ChatGroq(model=model, api_key=api_key)

            case "deepseek":
                return ChatDeepSeek(model=model, api_key=api_key)

            case "cerebras":
                return ChatCerebras(model=model, api_key=api_key)

            case "ollama":
                return ChatOllama(model=model, base_url=base_url)

            case "bedrock":
                aws_region = kwargs.get("aws_region")
                return ChatAWSBedrock(model_id=model, region=aws_region)

            case "browser_use":
                return ChatBrowserUse(model=model, api_key=api_key)

            case "openrouter":
                return ChatOpenRouter(model=model, api_key=api_key)

            case "vercel":
                return ChatVercel(model=model, api_key=api_key)

            case _:
                raise LLMProviderError(f"Unsupported provider: {provider}")

    except LLMProviderError:
        raise
    except Exception as e:
        raise LLMProviderError(f"Failed to initialize {provider} LLM: {e}") from e


# --- Generation capability ---


@runtime_checkable
class TextGenerator(Protocol):
    """Stateless text generation: prompt in, text out."""

    async def generate(
        self,
        prompt: str,
        *,
        schema: dict[str, Any] | None = None,
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> str: ...


def schema_instruction(schema: dict[str, Any]) -> str:
    return "Return ONLY JSON that matches this JSON schema. No extra text.\n" f"Schema: {json.dumps(schema, separators=(',', ':'))}"


class LLMGenerator:
    """``TextGenerator`` backed by a browser-use chat model."""

    def __init__(
        self,
        llm: "BaseChatModel",
        *,
        system_prompt: str | None = None,
        retry_policy: RetryPolicy | None = None,
        cache: SafeCache[str] | None = None,
    ):
        self.llm = llm
        self.system_prompt = system_prompt
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache

    @property
    def model_name(self) -> str:
        return str(getattr(self.llm, "model", None) or getattr(self.llm, "model_id", None) or type(self.llm).__name__)

    async def generate(
        self,
        prompt: str,
        *,
        schema: dict[str, Any] | None = None,
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> str:
        content = f"{prompt}\n\n{schema_instruction(schema)}" if schema else prompt

        cache_key = None
        if self.cache is not None:
            cache_key = hash_key({"model": self.model_name, "system": self.system_prompt, "prompt": content, "tools": list(tools or [])})
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"[provider-cache] HIT {cache_key[:8]}")
                return cached

        # browser-use chat models expose no grounding tools; tools only shape the cache key.
        messages = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(UserMessage(content=content))

        async def _invoke() -> str:
            response = await self.llm.ainvoke(messages)
            completion = response.completion
            return completion if isinstance(completion, str) else str(completion or "")

        text = await call_with_retry(_invoke, self.retry_policy, description=f"generate ({self.model_name})")
        if self.cache is not None:
            self.cache.set(cache_key, text)
        return text


async def generate_batch(
    generator: TextGenerator,
    prompts: Sequence[str],
    concurrency_limit: int,
    *,
    schema: dict[str, Any] | None = None,
    tools: Sequence[dict[str, Any]] | None = None,
    executor: BatchExecutor | None = None,
) -> list[str | None]:
    """Generate for every prompt under a concurrency ceiling; failed prompts yield ``None``.

    Pass ``executor`` to share its ceiling with other concurrent batches.
    """
    executor = executor or BatchExecutor(concurrency_limit, name="generate-batch")
    results = await executor.run(prompts, lambda p: generator.generate(p, schema=schema, tools=tools))
    return values_or(results, lambda failure: None)


def create_generator(app_settings: "AppSettings", cache: SafeCache[str] | None = None, system_prompt: str | None = None) -> LLMGenerator:
    """Build the configured generator. Raises ``LLMProviderError`` on misconfiguration."""
    llm = get_llm(
        provider=app_settings.llm.provider,
        model=app_settings.llm.model_name,
        api_key=app_settings.llm.get_api_key_for_provider(),
        base_url=app_settings.llm.base_url,
        azure_endpoint=app_settings.llm.azure_endpoint,
        azure_api_version=app_settings.llm.azure_api_version,
        aws_region=app_settings.llm.aws_region,
    )
    research = app_settings.research
    policy = RetryPolicy(
        timeout=research.request_timeout,
        max_retries=research.max_retries,
        base_delay=research.retry_base_delay,
        max_delay=research.retry_max_delay,
    )
    return LLMGenerator(llm, system_prompt=system_prompt, retry_policy=policy, cache=cache)


# --- Embedding capability ---


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


GOOGLE_EMBED_URL = "https://generativelanguage.googleapis.com/v1beta"
OPENAI_EMBED_URL = "https://api.openai.com/v1"


class HttpEmbedder:
    """Embeddings over HTTP: Google ``embedContent`` or an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str | None,
        base_url: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        if provider not in ("google", "openai"):
            raise LLMProviderError(f"Unsupported embedding provider: {provider}")
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or (GOOGLE_EMBED_URL if provider == "google" else OPENAI_EMBED_URL)).rstrip("/")
        self.timeout = timeout
        self._client = client

    async def embed(self, text: str) -> list[float]:
        if self._client is not None:
            return await self._embed_with(self._client, text)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._embed_with(client, text)

    async def _embed_with(self, client: httpx.AsyncClient, text: str) -> list[float]:
        if self.provider == "google":
            resp = await client.post(
                f"{self.base_url}/models/{self.model}:embedContent",
                params={"key": self.api_key} if self.api_key else None,
                json={"model": f"models/{self.model}", "content": {"parts": [{"text": text}]}},
            )
            resp.raise_for_status()
            values = (resp.json().get("embedding") or {}).get("values")
        else:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            resp = await client.post(f"{self.base_url}/embeddings", headers=headers, json={"model": self.model, "input": text})
            resp.raise_for_status()
            data = resp.json().get("data") or [{}]
            values = data[0].get("embedding")
        return [float(v) for v in values] if isinstance(values, list) else []


def get_embedder(embedding_settings: "EmbeddingSettings") -> Embedder | None:
    """Build the configured embedder, or ``None`` when embeddings are disabled or unkeyed."""
    if embedding_settings.provider == "none":
        return None
    api_key = embedding_settings.get_api_key_for_provider()
    if not api_key and not embedding_settings.base_url:
        logger.info("No embedding API key configured; semantic splitting disabled")
        return None
    return HttpEmbedder(
        provider=embedding_settings.provider,
        model=embedding_settings.model_name,
        api_key=api_key,
        base_url=embedding_settings.base_url,
        timeout=embedding_settings.timeout,
    )
