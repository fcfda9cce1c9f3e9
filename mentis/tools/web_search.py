"""Web search tool powered by the Brave Search API."""

import os
import re
from typing import Any

import httpx

from mentis import __version__
from mentis.config import WebSearchToolConfig, get_config
from mentis.logging import get_logger
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult

log = get_logger(__name__)


class WebSearchTool(Tool):
    """Search the web using Brave Search API."""

    name = "web_search"
    description = "Search the web for documentation, error messages, or recent information."
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query text",
            },
            "count": {
                "type": "number",
                "description": "Maximum results to return (default from config, max 20)",
            },
        },
        "required": ["query"],
    }
    kind = ToolKind.NETWORK
    concurrency = ToolConcurrency.CONCURRENT

    def __init__(
        self,
        settings: WebSearchToolConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": f"Mentis/{__version__} (Web Search Tool)"},
        )

    @staticmethod
    def _clean_text(value: str, max_chars: int = 500) -> str:
        """Normalize whitespace and bound output size."""
        cleaned = re.sub(r"\s+", " ", (value or "")).strip()
        if len(cleaned) <= max_chars:
            return cleaned
        return cleaned[:max_chars].rstrip() + "... [truncated]"

    def _format_results(self, query: str, results: list[Any]) -> str:
        lines = [f"[QUERY: {query}]", f"[RESULTS: {len(results)}]", ""]
        if not results:
            lines.append("No results found.")
        for idx, item in enumerate(results, start=1):
            if not isinstance(item, dict):
                continue
            title = self._clean_text(str(item.get("title", "") or "Untitled"), max_chars=180)
            link = str(item.get("url", "") or "").strip()
            desc = self._clean_text(str(item.get("description", "") or ""))
            lines.append(f"{idx}. {title}")
            lines.append(f"   URL: {link or '-'}")
            lines.append(f"   Snippet: {desc or '-'}")
            lines.append("")
        return "\n".join(lines).strip()

    async def execute(self, query: str, count: int | None = None, **kwargs: Any) -> ToolResult:
        """Execute Brave web search."""
        q = (query or "").strip()
        if not q:
            return ToolResult(success=False, error="Missing required query")

        settings = self.settings or get_config().tools.web_search
        api_key = settings.api_key.strip() or os.environ.get("BRAVE_API_KEY", "").strip()
        if not api_key:
            return ToolResult(
                success=False,
                error=(
                    "Missing Brave API key. Set tools.web_search.api_key in config "
                    "or BRAVE_API_KEY environment variable."
                ),
            )

        effective_count = settings.max_results if count is None else int(count)
        effective_count = min(max(effective_count, 1), 20)

        try:
            response = await self.client.get(
                settings.base_url,
                params={"q": q, "count": effective_count},
                headers={"Accept": "application/json", "X-Subscription-Token": api_key},
                timeout=float(settings.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            body = (e.response.text or "").strip()
            if body:
                detail = f"{detail}: {self._clean_text(body, max_chars=300)}"
            log.error("Web search failed", query=q, error=detail)
            return ToolResult(success=False, error=detail)
        except (httpx.HTTPError, ValueError) as e:
            log.error("Web search failed", query=q, error=str(e))
            return ToolResult(success=False, error=str(e))

        web_block = payload.get("web", {}) if isinstance(payload, dict) else {}
        results = web_block.get("results", []) if isinstance(web_block, dict) else []
        if not isinstance(results, list):
            results = []
        return ToolResult(success=True, content=self._format_results(q, results))

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
