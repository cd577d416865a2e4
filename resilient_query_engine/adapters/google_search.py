"""
Google search page adapter (browser session).

Types the query into the search box like a person would, waits for the
result page and extracts the AI Overview, its cited links and the organic
results. When Google shows no AI Overview the first organic snippets become
the answer text.

Example config:
    surface:
      adapter: google-search
      config:
        base_url: https://www.google.co.in
        expand_overview: true
"""

import logging
import random

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..engine.block_detector import BlockDetector
from ..engine.models import SessionHandle
from ..engine.pacing import human_pause
from ..exceptions import SurfaceBlockedError, SurfaceResponseError, SurfaceTransportError
from ..utils.time import elapsed_ms, monotonic_ms
from .base import SurfaceResponse
from .registry import AdapterRegistry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.google.com"

SEARCH_BOX_SELECTOR = 'textarea[name="q"], input[name="q"]'

RESULTS_SELECTOR = "div.g, #search, #rso"

SHOW_MORE_SELECTOR = '[aria-label="Show more AI Overview"]'

NAVIGATION_TIMEOUT_MS = 30_000

# AI Overviews render after the organic results
OVERVIEW_SETTLE_MS = 2_500

MAX_ORGANIC_RESULTS = 10

FALLBACK_SNIPPET_COUNT = 3

# Returns {overview, citations, organic}; selectors in order of preference
EXTRACT_RESULTS_SCRIPT = """
() => {
  const overviewSelectors = [
    '[data-attrid="ai_overview"]',
    '.s7d4ef .f5cPye',
    '[jsname="N760b"]',
    '.kp-blk',
  ];
  let container = null;
  for (const selector of overviewSelectors) {
    const el = document.querySelector(selector);
    if (el && el.innerText && el.innerText.trim().length > 0) { container = el; break; }
  }

  let overview = '';
  const citations = [];
  if (container) {
    const spans = Array.from(container.querySelectorAll('span[data-huuid] span'));
    overview = spans.length > 0
      ? spans.map(s => s.innerText.trim()).filter(Boolean).join(' ')
      : container.innerText.trim();
    const seen = new Set();
    for (const a of container.querySelectorAll('a[href^="http"]')) {
      if (a.href.includes('google.') || seen.has(a.href)) continue;
      seen.add(a.href);
      citations.push({title: (a.innerText || a.getAttribute('aria-label') || '').trim(), url: a.href});
    }
  }

  const organic = [];
  for (const block of document.querySelectorAll('#rso div.g')) {
    const link = block.querySelector('a[href^="http"]');
    const title = block.querySelector('h3');
    if (!link || !title) continue;
    const snippet = block.querySelector('[data-sncf], .VwiC3b');
    organic.push({
      position: organic.length + 1,
      title: title.innerText.trim(),
      url: link.href,
      snippet: snippet ? snippet.innerText.trim() : '',
    });
  }

  return {overview, citations, organic};
}
"""


class GoogleSearchAdapter:
    """
    Google web search driven through a Playwright page.

    Attributes:
        base_url: Google domain for the study's market (e.g. google.co.in)
        expand_overview: Click "Show more" on truncated AI Overviews
        max_organic_results: Organic results kept per query
    """

    adapter_name = "google-search"
    kind = "session"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        expand_overview: bool = True,
        max_organic_results: int = MAX_ORGANIC_RESULTS,
        block_detector: BlockDetector | None = None,
        rng: random.Random | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.expand_overview = expand_overview
        self.max_organic_results = max_organic_results
        self.block_detector = block_detector or BlockDetector()
        self._rng = rng or random.Random()

    async def submit(
        self, handle: SessionHandle, query_text: str, timeout_ms: int
    ) -> SurfaceResponse:
        page = handle.page
        if page is None:
            raise SurfaceTransportError("google-search needs a browser page")

        start = monotonic_ms()
        navigation_timeout = min(timeout_ms, NAVIGATION_TIMEOUT_MS)

        try:
            await page.goto(self.base_url, wait_until="domcontentloaded", timeout=navigation_timeout)
            await self._raise_if_challenged(handle)

            search_box = page.locator(SEARCH_BOX_SELECTOR).first
            await search_box.click(timeout=navigation_timeout)
            await search_box.fill("")
            await search_box.type(query_text, delay=self._rng.randint(50, 150))
            await human_pause(300, self._rng)
            await page.keyboard.press("Enter")

            try:
                await page.wait_for_selector(RESULTS_SELECTOR, timeout=navigation_timeout)
            except PlaywrightTimeoutError:
                await self._raise_if_challenged(handle)
                raise

            await human_pause(OVERVIEW_SETTLE_MS, self._rng)
            if self.expand_overview:
                await self._expand_overview(page)

            data = await page.evaluate(EXTRACT_RESULTS_SCRIPT)
        except PlaywrightTimeoutError as e:
            raise SurfaceTransportError(f"Google results page timed out: {e}") from e
        except PlaywrightError as e:
            raise SurfaceTransportError(f"Browser navigation error: {e}") from e

        return self._build_response(data, elapsed_ms(start))

    async def _raise_if_challenged(self, handle: SessionHandle) -> None:
        detection = await self.block_detector.detect(handle)
        if detection.detected:
            raise SurfaceBlockedError(f"Google challenge page: {detection.indicator}")

    async def _expand_overview(self, page) -> None:
        button = page.locator(SHOW_MORE_SELECTOR)
        try:
            if await button.count() > 0:
                await button.first.click(timeout=3000)
                await human_pause(800, self._rng)
        except PlaywrightError as e:
            logger.debug(f"Could not expand AI Overview: {e}")

    def _build_response(self, data, duration_ms: int) -> SurfaceResponse:
        if not isinstance(data, dict):
            raise SurfaceResponseError("Unexpected extraction result from results page (parse error)")

        organic = [
            r for r in (data.get("organic") or []) if isinstance(r, dict) and r.get("url")
        ][: self.max_organic_results]
        citations = [c for c in (data.get("citations") or []) if isinstance(c, dict)]
        text = (data.get("overview") or "").strip()

        if not text:
            snippets = [r["snippet"] for r in organic[:FALLBACK_SNIPPET_COUNT] if r.get("snippet")]
            text = "\n\n".join(snippets)

        if not text and not organic:
            raise SurfaceResponseError("Google results page had no results (empty response)")

        logger.debug(
            f"Google results parsed: overview={bool(data.get('overview'))}, "
            f"organic={len(organic)}, citations={len(citations)}"
        )
        return SurfaceResponse(
            response_text=text,
            duration_ms=duration_ms,
            citations=citations,
            organic_results=organic,
            raw={"has_ai_overview": bool(data.get("overview"))},
        )


@AdapterRegistry.register
class GoogleSearchPlugin:
    """Registers the "google-search" adapter."""

    @classmethod
    def plugin_name(cls) -> str:
        return "google-search"

    @classmethod
    def adapter_kind(cls) -> str:
        return "session"

    @classmethod
    def create_adapter(cls, config: dict) -> GoogleSearchAdapter:
        return GoogleSearchAdapter(
            base_url=config.get("base_url", DEFAULT_BASE_URL),
            expand_overview=bool(config.get("expand_overview", True)),
            max_organic_results=config.get("max_organic_results", MAX_ORGANIC_RESULTS),
        )

    @classmethod
    def validate_config(cls, config: dict) -> tuple[bool, str]:
        base_url = config.get("base_url", DEFAULT_BASE_URL)
        if not str(base_url).startswith("https://"):
            return False, f"base_url must be an https URL (got: {base_url})"
        return True, ""

    @classmethod
    def required_env_vars(cls) -> list[str]:
        return []
