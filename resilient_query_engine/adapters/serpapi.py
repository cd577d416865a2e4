"""
SerpAPI adapter: Google results and AI Overviews without a browser.

Requests go to https://serpapi.com/search.json with engine=google and the
location parameters of the study's market. The answer text is the AI
overview (text or text_blocks), then the answer box, then the knowledge
graph description, and finally the top organic snippets.

Example config:
    surface:
      adapter: serpapi
      config:
        api_key: "${SERPAPI_API_KEY}"
        location: in-mum            # preset, or a mapping with location/gl/hl
        max_organic_results: 10
"""

import logging

from ..exceptions import SurfaceResponseError
from .base import HTTPSurfaceAdapter, SurfaceResponse
from .registry import AdapterRegistry

logger = logging.getLogger(__name__)

SERPAPI_SEARCH_URL = "https://serpapi.com/search.json"

DEFAULT_MAX_ORGANIC_RESULTS = 10

# Organic snippets joined into the answer when no AI overview exists
FALLBACK_SNIPPET_COUNT = 3

SERPAPI_LOCATIONS: dict[str, dict[str, str]] = {
    "in-mum": {
        "location": "Mumbai,Maharashtra,India",
        "google_domain": "google.co.in",
        "gl": "in",
        "hl": "en",
    },
    "in-blr": {
        "location": "Bangalore,Karnataka,India",
        "google_domain": "google.co.in",
        "gl": "in",
        "hl": "en",
    },
    "in-del": {
        "location": "Delhi,Delhi,India",
        "google_domain": "google.co.in",
        "gl": "in",
        "hl": "en",
    },
    "us-national": {
        "location": "United States",
        "google_domain": "google.com",
        "gl": "us",
        "hl": "en",
    },
    "us-nyc": {
        "location": "New York,New York,United States",
        "google_domain": "google.com",
        "gl": "us",
        "hl": "en",
    },
    "uk-lon": {
        "location": "London,England,United Kingdom",
        "google_domain": "google.co.uk",
        "gl": "uk",
        "hl": "en",
    },
}


def _text_from_blocks(blocks: list) -> str:
    parts = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if block.get("text"):
            parts.append(block["text"])
        elif block.get("snippet"):
            parts.append(block["snippet"])
        elif block.get("list"):
            items = []
            for i, item in enumerate(block["list"], start=1):
                if isinstance(item, dict):
                    item = item.get("title") or item.get("snippet") or ""
                items.append(f"{i}. {item}")
            parts.append("\n".join(items))
    return "\n\n".join(parts)


class SerpApiAdapter(HTTPSurfaceAdapter):
    """
    Google search through SerpAPI.

    Attributes:
        location: Resolved location parameters (location, google_domain, gl, hl)
        max_organic_results: Organic results kept per query
    """

    adapter_name = "serpapi"

    def __init__(
        self,
        api_key: str,
        location: str | dict | None = None,
        max_organic_results: int = DEFAULT_MAX_ORGANIC_RESULTS,
    ):
        if not api_key or api_key.isspace():
            raise ValueError("api_key cannot be empty")
        self.api_key = api_key
        self.location = self.resolve_location(location)
        self.max_organic_results = max_organic_results

    @staticmethod
    def resolve_location(location: str | dict | None) -> dict[str, str]:
        """
        Turn a preset name, a free-form location or a mapping into parameters.

        Example:
            >>> SerpApiAdapter.resolve_location("us-national")["gl"]
            'us'
            >>> SerpApiAdapter.resolve_location("Paris,France")
            {'location': 'Paris,France'}
        """
        if location is None:
            return {}
        if isinstance(location, dict):
            return {k: str(v) for k, v in location.items() if v}
        if location in SERPAPI_LOCATIONS:
            return dict(SERPAPI_LOCATIONS[location])
        return {"location": location}

    def build_request(self, query_text: str) -> dict:
        params = {"engine": "google", "q": query_text, **self.location}
        params["api_key"] = self.api_key
        return {"method": "GET", "url": SERPAPI_SEARCH_URL, "params": params}

    def _organic_results(self, data: dict) -> list[dict]:
        results = []
        for item in (data.get("organic_results") or [])[: self.max_organic_results]:
            if not isinstance(item, dict) or not item.get("link"):
                continue
            results.append(
                {
                    "position": item.get("position", len(results) + 1),
                    "title": item.get("title", ""),
                    "url": item["link"],
                    "snippet": item.get("snippet", ""),
                }
            )
        return results

    @staticmethod
    def _overview(data: dict) -> tuple[str, list[dict]]:
        text = ""
        citations: list[dict] = []

        overview = data.get("ai_overview")
        if isinstance(overview, dict):
            text = overview.get("text") or _text_from_blocks(overview.get("text_blocks") or [])
            for ref in overview.get("references") or []:
                if isinstance(ref, dict) and ref.get("link"):
                    citations.append(
                        {"title": ref.get("title") or ref.get("source") or "", "url": ref["link"]}
                    )

        answer_box = data.get("answer_box")
        if not text and isinstance(answer_box, dict):
            text = answer_box.get("snippet") or answer_box.get("answer") or ""
            if text and answer_box.get("link"):
                citations.append({"title": answer_box.get("title", ""), "url": answer_box["link"]})

        graph = data.get("knowledge_graph")
        if not text and isinstance(graph, dict) and graph.get("description"):
            text = graph["description"]
            source = graph.get("source") or {}
            if source.get("link"):
                citations.append({"title": source.get("name", ""), "url": source["link"]})

        return text, citations

    def parse_response(self, data: dict) -> SurfaceResponse:
        if data.get("error"):
            # SerpAPI reports quota and invalid-key problems in the body
            raise SurfaceResponseError(f"SerpAPI error: {data['error']}")

        text, citations = self._overview(data)
        organic = self._organic_results(data)

        if not text:
            snippets = [r["snippet"] for r in organic[:FALLBACK_SNIPPET_COUNT] if r["snippet"]]
            text = "\n\n".join(snippets)

        if not text and not organic:
            raise SurfaceResponseError("SerpAPI returned no results (empty response)")

        logger.debug(
            f"SerpAPI parsed: overview={bool(data.get('ai_overview'))}, "
            f"organic={len(organic)}, citations={len(citations)}"
        )
        return SurfaceResponse(
            response_text=text,
            citations=citations,
            organic_results=organic,
            raw={"search_metadata": data.get("search_metadata")},
        )


@AdapterRegistry.register
class SerpApiPlugin:
    """Registers the "serpapi" adapter."""

    @classmethod
    def plugin_name(cls) -> str:
        return "serpapi"

    @classmethod
    def adapter_kind(cls) -> str:
        return "api"

    @classmethod
    def create_adapter(cls, config: dict) -> SerpApiAdapter:
        return SerpApiAdapter(
            api_key=config["api_key"],
            location=config.get("location"),
            max_organic_results=config.get("max_organic_results", DEFAULT_MAX_ORGANIC_RESULTS),
        )

    @classmethod
    def validate_config(cls, config: dict) -> tuple[bool, str]:
        if not config.get("api_key"):
            return False, "Missing api_key (use ${SERPAPI_API_KEY})"
        max_results = config.get("max_organic_results", DEFAULT_MAX_ORGANIC_RESULTS)
        if not isinstance(max_results, int) or max_results < 1:
            return False, "max_organic_results must be a positive integer"
        return True, ""

    @classmethod
    def required_env_vars(cls) -> list[str]:
        return ["SERPAPI_API_KEY"]
