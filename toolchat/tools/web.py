"""Built-in tools that reach the network: search engines, Wikipedia and HTTP fetches."""

from typing import Literal

import html2text
import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from toolchat.errors import ConfigurationError, ToolError
from toolchat.tools.base import ToolHandler, parse_input
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

BING_ENDPOINT = "https://api.bing.microsoft.com/v7.0/search"
GOOGLE_ENDPOINT = "https://www.googleapis.com/customsearch/v1"
DUCKDUCKGO_ENDPOINT = "https://api.duckduckgo.com/"
WIKIPEDIA_ENDPOINT = "https://{language}.wikipedia.org/w/api.php"

MAX_BODY_CHARS = 8000
DEFAULT_TIMEOUT = 30.0

NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]


class SearchInput(BaseModel):
    """Input for web search tools."""

    query: str = Field(description="Search query")
    count: int = Field(default=5, ge=1, le=20, description="Number of results to return")


class WikipediaInput(BaseModel):
    """Input for the Wikipedia tool."""

    query: str = Field(description="Topic to look up")
    limit: int = Field(default=3, ge=1, le=10, description="Number of articles to return")


class HTTPRequestInput(BaseModel):
    """Input for the HTTP request tool."""

    url: str = Field(description="Absolute http(s) URL")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = Field(default="GET", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: str | None = Field(default=None, description="Request body")


class BrowseInput(BaseModel):
    """Input for the page reading tool."""

    url: str = Field(description="Address of the page to read")


def _parse_html(markup: str) -> BeautifulSoup:
    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(NON_CONTENT_TAGS):
        element.decompose()
    return soup


def strip_html(markup: str) -> str:
    """Reduce an HTML snippet to plain text on one line."""
    return " ".join(_parse_html(markup).get_text().split())


def readable_page(markup: str) -> tuple[str | None, str]:
    """Extract the title and a markdown rendering of a page's visible text.

    Returns:
        The page title, or None when it has none, and the page text
    """
    soup = _parse_html(markup)
    title = " ".join(soup.title.get_text().split()) if soup.title else None

    converter = html2text.HTML2Text()
    converter.ignore_links = True
    converter.ignore_images = True
    converter.body_width = 0
    return title or None, converter.handle(str(soup)).strip()


def _truncate(text: str, limit: int = MAX_BODY_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... ({len(text) - limit} more characters)"


def _timeout(settings: dict[str, str]) -> float:
    value = settings.get("timeout", "")
    try:
        return float(value) if value else DEFAULT_TIMEOUT
    except ValueError as e:
        raise ConfigurationError(f"invalid timeout setting: {value}") from e


def _check_url(url: str) -> None:
    if not url.startswith(("http://", "https://")):
        raise ToolError(f"unsupported URL: {url}")


async def _get_json(url: str, params: dict, headers: dict | None = None, timeout: float = DEFAULT_TIMEOUT) -> dict:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url, params=params, headers=headers)
    if response.status_code >= 400:
        raise ToolError(f"request failed with status {response.status_code}: {_truncate(response.text, 300)}")
    return response.json()


def _format_results(results: list[tuple[str, str, str]]) -> str:
    if not results:
        return "No results found."
    lines = []
    for index, (title, url, snippet) in enumerate(results, start=1):
        lines.append(f"{index}. {title}\n   {url}\n   {snippet}")
    return "\n".join(lines)


def create_bing_search_handler(settings: dict[str, str]) -> ToolHandler:
    api_key = settings.get("api_key", "")

    async def bing_search(arguments: str) -> str:
        search = parse_input(SearchInput, arguments)
        logger.debug(f"Bing search: {search.query}")
        data = await _get_json(
            BING_ENDPOINT,
            params={"q": search.query, "count": search.count},
            headers={"Ocp-Apim-Subscription-Key": api_key},
        )
        pages = data.get("webPages", {}).get("value", [])
        return _format_results([(p.get("name", ""), p.get("url", ""), p.get("snippet", "")) for p in pages])

    return bing_search


def create_google_search_handler(settings: dict[str, str]) -> ToolHandler:
    api_key = settings.get("api_key", "")
    engine_id = settings.get("search_engine_id", "")

    async def google_search(arguments: str) -> str:
        search = parse_input(SearchInput, arguments)
        logger.debug(f"Google search: {search.query}")
        data = await _get_json(
            GOOGLE_ENDPOINT,
            params={"key": api_key, "cx": engine_id, "q": search.query, "num": min(search.count, 10)},
        )
        items = data.get("items", [])
        return _format_results([(i.get("title", ""), i.get("link", ""), i.get("snippet", "")) for i in items])

    return google_search


def create_duckduckgo_search_handler(settings: dict[str, str]) -> ToolHandler:
    async def duckduckgo_search(arguments: str) -> str:
        search = parse_input(SearchInput, arguments)
        logger.debug(f"DuckDuckGo search: {search.query}")
        data = await _get_json(
            DUCKDUCKGO_ENDPOINT,
            params={"q": search.query, "format": "json", "no_html": 1, "skip_disambig": 1},
        )
        results = []
        if data.get("AbstractText"):
            results.append((data.get("Heading", search.query), data.get("AbstractURL", ""), data["AbstractText"]))
        for topic in data.get("RelatedTopics", []):
            if "Text" in topic:
                results.append((topic["Text"].split(" - ")[0], topic.get("FirstURL", ""), topic["Text"]))
            if len(results) >= search.count:
                break
        return _format_results(results)

    return duckduckgo_search


def create_wikipedia_handler(settings: dict[str, str]) -> ToolHandler:
    language = settings.get("language") or "en"

    async def wikipedia(arguments: str) -> str:
        lookup = parse_input(WikipediaInput, arguments)
        data = await _get_json(
            WIKIPEDIA_ENDPOINT.format(language=language),
            params={
                "action": "query",
                "list": "search",
                "srsearch": lookup.query,
                "srlimit": lookup.limit,
                "format": "json",
            },
        )
        hits = data.get("query", {}).get("search", [])
        return _format_results(
            [
                (
                    hit["title"],
                    f"https://{language}.wikipedia.org/wiki/{hit['title'].replace(' ', '_')}",
                    strip_html(hit.get("snippet", "")),
                )
                for hit in hits
            ]
        )

    return wikipedia


def create_http_request_handler(settings: dict[str, str]) -> ToolHandler:
    timeout = _timeout(settings)
    try:
        max_redirects = int(settings.get("max_redirects") or 5)
    except ValueError as e:
        raise ConfigurationError(f"invalid max_redirects setting: {settings.get('max_redirects')}") from e

    async def http_request(arguments: str) -> str:
        request = parse_input(HTTPRequestInput, arguments)
        _check_url(request.url)
        logger.debug(f"HTTP {request.method} {request.url}")
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, max_redirects=max_redirects) as client:
            response = await client.request(
                request.method, request.url, headers=request.headers, content=request.body
            )
        content_type = response.headers.get("content-type", "")
        return f"HTTP {response.status_code} ({content_type})\n\n{_truncate(response.text)}"

    return http_request


def create_browse_handler(settings: dict[str, str]) -> ToolHandler:
    timeout = _timeout(settings)

    async def browse(arguments: str) -> str:
        page = parse_input(BrowseInput, arguments)
        _check_url(page.url)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(page.url, headers={"User-Agent": "toolchat/1.0"})
        if response.status_code >= 400:
            raise ToolError(f"failed to load {page.url}: status {response.status_code}")
        title, text = readable_page(response.text)
        return f"{title or page.url}\n\n{_truncate(text)}"

    return browse
