"""Optional web search capability.

Search is pluggable: with no provider configured the research pipeline simply
collects zero sources from it. Provider errors are raised so the caller can retry
them; the research controller degrades a failed search to zero hits.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

if TYPE_CHECKING:
    from .config import SearchSettings

logger = logging.getLogger(__name__)

EXA_SEARCH_URL = "https://api.exa.ai/search"


@dataclass(frozen=True)
class SearchHit:
    url: str
    content: str


@runtime_checkable
class SearchProvider(Protocol):
    name: str

    def available(self) -> bool: ...

    async def search(self, query: str) -> list[SearchHit]: ...


class ExaSearchProvider:
    """Keyword search against the Exa API, returning page text (or snippet/title) per hit."""

    name = "exa"

    def __init__(
        self,
        api_key: str | None,
        num_results: int = 10,
        timeout: float = 30.0,
        base_url: str = EXA_SEARCH_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or ""
        self.num_results = num_results
        self.timeout = timeout
        self.base_url = base_url
        self._client = client

    def available(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str) -> list[SearchHit]:
        if not self.available():
            return []
        if self._client is not None:
            return await self._search_with(self._client, query)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._search_with(client, query)

    async def _search_with(self, client: httpx.AsyncClient, query: str) -> list[SearchHit]:
        resp = await client.post(
            self.base_url,
            headers={"x-api-key": self.api_key},
            json={
                "query": query,
                "type": "keyword",
                "numResults": self.num_results,
                "contents": {"text": True},
            },
        )
        resp.raise_for_status()
        results = resp.json().get("results") or []

        hits = []
        for item in results:
            url = item.get("url")
            if not isinstance(url, str) or not url:
                continue
            content = item.get("text") or item.get("snippet") or item.get("title") or ""
            hits.append(SearchHit(url=url, content=content))
        logger.debug(f"Exa returned {len(hits)} hits for '{query}'")
        return hits


def get_search_provider(search_settings: "SearchSettings") -> SearchProvider | None:
    """The configured search provider, or ``None`` when search is disabled or unkeyed."""
    if not search_settings.enabled:
        return None
    provider = ExaSearchProvider(
        api_key=search_settings.get_exa_api_key(),
        num_results=search_settings.num_results,
        timeout=search_settings.timeout,
    )
    return provider if provider.available() else None
