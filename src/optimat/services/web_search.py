from __future__ import annotations

import logging
from typing import Any

from common.retry import RetryConfig, retry_call
from optimat.config import WebSearchConfig
from optimat.errors import ExternalServiceError

logger = logging.getLogger(__name__)

QUERY_PREFIX = "paratransit transportation"
MAX_SOURCE_CONTENT = 500


class WebSearchError(ExternalServiceError):
    pass


def _is_transient(error: Exception) -> bool:
    return isinstance(error, (ConnectionError, TimeoutError))


class TavilyWebSearcher:
    name = "tavily"

    def __init__(self, config: WebSearchConfig | None = None):
        self.config = config or WebSearchConfig()
        self.retry_config = RetryConfig(max_retries=self.config.max_retries, base_delay=1.0)
        self._client: Any = None

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.config.api_key:
                raise WebSearchError("TAVILY_API_KEY is not set")
            try:
                from tavily import TavilyClient  # type: ignore[import-not-found]
            except Exception as e:  # pragma: no cover
                raise WebSearchError(
                    "tavily-python is not installed. Install with: `pip install optimat[search]`."
                ) from e
            self._client = TavilyClient(api_key=self.config.api_key)
        return self._client

    def answer(self, question: str) -> dict:
        question = (question or "").strip()
        if not question:
            raise WebSearchError("question is required")

        query = f"{QUERY_PREFIX} {question}"
        payload: dict[str, Any] = {
            "query": query,
            "search_depth": self.config.search_depth,
            "max_results": self.config.max_results,
            "include_answer": True,
            "include_raw_content": False,
        }
        client = self.client
        try:
            resp = retry_call(
                lambda: client.search(**payload),
                config=self.retry_config,
                is_retryable=_is_transient,
                label="tavily.search",
            )
        except Exception as e:
            logger.warning(f"Web search failed for {question!r}: {e}")
            raise WebSearchError(f"Web search failed: {e}") from e

        if not isinstance(resp, dict):
            resp = {}
        results = resp.get("results")
        if not isinstance(results, list):
            results = []

        sources = [
            {
                "title": item.get("title") or "",
                "url": item.get("url") or "",
                "content": (item.get("content") or "")[:MAX_SOURCE_CONTENT],
            }
            for item in results
            if isinstance(item, dict)
        ]
        return {
            "query": question,
            "answer": resp.get("answer") or "",
            "sources": sources,
        }
