"""
Surface adapters.

Importing this package registers every built-in adapter with the
AdapterRegistry:

- serpapi (api): Google results and AI Overviews via SerpAPI
- gemini (api): Gemini generateContent
- openai (api): OpenAI chat completions
- google-search (session): Google search page in a browser session

Example:
    >>> from resilient_query_engine.adapters import AdapterRegistry
    >>> [p["name"] for p in AdapterRegistry.list_plugins()]
    ['gemini', 'google-search', 'openai', 'serpapi']
"""

from .base import HTTPSurfaceAdapter, SurfaceAdapter, SurfaceResponse
from .registry import AdapterPlugin, AdapterRegistry

# Import plugins to trigger registration
from .gemini import GeminiAdapter, GeminiPlugin
from .google_search import GoogleSearchAdapter, GoogleSearchPlugin
from .openai import OpenAIAdapter, OpenAIPlugin
from .serpapi import SerpApiAdapter, SerpApiPlugin

__all__ = [
    # Protocols
    "AdapterPlugin",
    "SurfaceAdapter",
    # Data classes
    "SurfaceResponse",
    # Base classes
    "HTTPSurfaceAdapter",
    # Registry
    "AdapterRegistry",
    # Adapters
    "GeminiAdapter",
    "GoogleSearchAdapter",
    "OpenAIAdapter",
    "SerpApiAdapter",
    # Plugins
    "GeminiPlugin",
    "GoogleSearchPlugin",
    "OpenAIPlugin",
    "SerpApiPlugin",
]
