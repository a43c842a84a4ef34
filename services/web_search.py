"""Web search capability exposed to the chat model as a LangChain tool."""
import logging

from duckduckgo_search import DDGS
from langchain_core.tools import BaseTool, StructuredTool

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL_NAME = "web_search"


def format_results(results) -> str:
    if not results:
        return "No results found."
    blocks = []
    for i, result in enumerate(results, 1):
        title = result.get("title") or "Untitled"
        url = result.get("href") or result.get("url") or ""
        snippet = " ".join((result.get("body") or "").split())
        blocks.append(f"[{i}] {title}\n{url}\n{snippet}")
    return "\n\n".join(blocks)


def build_web_search_tool(max_results: int = 5) -> BaseTool:
    """Build the DuckDuckGo-backed search tool."""

    def web_search(query: str) -> str:
        """Search the web for current information. Returns titles, URLs and snippets."""
        try:
            with DDGS() as ddgs:
                results = list(ddgs.text(query, max_results=max_results))
        except Exception as e:
            logger.error(f"Web search failed for query {query!r}: {e}")
            return "Web search is unavailable right now."
        logger.info(f"Web search returned {len(results)} results")
        return format_results(results)

    return StructuredTool.from_function(web_search, name=WEB_SEARCH_TOOL_NAME)
