"""
Egress session managers.

A session is the live network path a study worker submits queries through:
a Playwright browser context for session-driven surfaces, or an httpx
client for API surfaces. Both are bound to exactly one EgressIdentity.

Key components:
- SessionManager: Protocol shared by both implementations
- BrowserSessionManager: Local Chromium or remote Steel browser via CDP
- HttpSessionManager: httpx.AsyncClient routed through the identity's proxy

Opening an identity that uses session-scoped proxy rotation always mints a
fresh session token, so reopening the same credentials yields a new IP.
"""

import asyncio
import logging
import random
import secrets
from typing import Protocol

import httpx
from playwright.async_api import async_playwright

try:
    from steel import Steel
except ImportError:
    Steel = None

from ..config.schema import SessionSettings
from ..exceptions import SessionOpenError
from .fingerprint import STEALTH_LAUNCH_ARGS, USER_AGENTS, build_fingerprint
from .models import EgressIdentity, SessionHandle
from .pacing import human_pause

logger = logging.getLogger(__name__)

WARM_UP_QUERIES = ["weather today", "time now", "what day is it", "hello google"]
CONSENT_BUTTON_LABELS = ["Accept all", "I agree", "Accept"]
SEARCH_BOX_SELECTOR = 'textarea[name="q"], input[name="q"]'
WARM_UP_NAVIGATION_TIMEOUT_MS = 15_000


class SessionManager(Protocol):
    """Opens and closes sessions bound to egress identities."""

    kind: str

    async def open(self, identity: EgressIdentity, warm_up: bool) -> SessionHandle:
        """Open a new session; raises SessionOpenError on failure."""
        ...

    async def close(self, handle: SessionHandle) -> None:
        """Close a session. Never raises."""
        ...

    async def shutdown(self) -> None:
        """Release manager-wide resources at the end of a run."""
        ...


def _session_key(identity: EgressIdentity) -> str:
    return f"{identity.name}-{identity.session_id_suffix or secrets.token_hex(4)}"


class BrowserSessionManager:
    """
    Playwright-backed sessions for surfaces driven through a real browser.

    Provider "local" launches Chromium with the identity's proxy. Provider
    "steel" creates a remote Steel session with the identity's proxy URL and
    attaches to it over CDP.

    Attributes:
        settings: Session settings from configuration
        kind: Always "browser"
    """

    kind = "browser"

    def __init__(self, settings: SessionSettings, rng: random.Random | None = None):
        if settings.provider == "steel" and Steel is None:
            raise ImportError(
                "Steel SDK is not installed. Install it with: pip install steel-sdk"
            )
        self.settings = settings
        self._rng = rng or random.Random()
        self._playwright = None
        self._start_lock = asyncio.Lock()
        self._steel_client = (
            Steel(steel_api_key=settings.steel_api_key)
            if settings.provider == "steel"
            else None
        )

    async def _ensure_playwright(self):
        async with self._start_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
        return self._playwright

    async def open(self, identity: EgressIdentity, warm_up: bool) -> SessionHandle:
        """
        Open a browser context for an identity.

        Args:
            identity: Identity to route through (a fresh session token is minted)
            warm_up: Run the warm-up routine after opening

        Returns:
            SessionHandle with context and page set

        Raises:
            SessionOpenError: If the browser, context or page cannot be created
        """
        identity = identity.with_fresh_session_token()
        fingerprint = build_fingerprint(identity.location, self._rng)
        resources: dict = {}

        try:
            playwright = await self._ensure_playwright()
            if self.settings.provider == "steel":
                browser = await self._connect_steel(playwright, identity, resources)
            else:
                browser = await playwright.chromium.launch(
                    headless=self.settings.headless,
                    args=STEALTH_LAUNCH_ARGS,
                    proxy=identity.playwright_proxy(),
                )
            resources["browser"] = browser

            context = await browser.new_context(**fingerprint.context_options())
            context.set_default_navigation_timeout(self.settings.navigation_timeout_ms)
            await context.add_init_script(fingerprint.init_script())
            page = await context.new_page()
        except Exception as e:
            await self._release_resources(resources)
            raise SessionOpenError(
                f"Failed to open browser session for {identity.label}: {e}"
            ) from e

        handle = SessionHandle(
            identity=identity,
            kind=self.kind,
            session_key=_session_key(identity),
            context=context,
            page=page,
            resources=resources,
        )
        logger.info(
            f"Opened browser session {handle.session_key} "
            f"({self.settings.provider}, viewport={fingerprint.viewport})"
        )

        if warm_up:
            await self.warm_up(handle)

        return handle

    async def _connect_steel(self, playwright, identity: EgressIdentity, resources: dict):
        create_params = {"api_timeout": self.settings.steel_session_timeout_ms}
        proxy_url = identity.proxy_url()
        if proxy_url:
            create_params["proxy_url"] = proxy_url

        session = await asyncio.to_thread(self._steel_client.sessions.create, **create_params)
        resources["steel_session_id"] = session.id
        logger.info(f"Created Steel session: {session.id}")

        ws_url = getattr(session, "websocket_url", None) or getattr(session, "cdp_url", None)
        if not ws_url:
            raise SessionOpenError(f"Steel session {session.id} has no CDP websocket URL")
        return await playwright.chromium.connect_over_cdp(ws_url)

    async def warm_up(self, handle: SessionHandle) -> None:
        """
        Behave like an ordinary visitor before the first real query.

        Opens the neutral home page, accepts cookie consent when a known
        button is present, issues one benign search and scrolls. Errors are
        logged and never raised.
        """
        page = handle.page
        try:
            await page.goto(
                self.settings.warm_up_url,
                wait_until="domcontentloaded",
                timeout=WARM_UP_NAVIGATION_TIMEOUT_MS,
            )
            await human_pause(2000, self._rng)

            for label in CONSENT_BUTTON_LABELS:
                button = page.get_by_role("button", name=label)
                if await button.count() > 0:
                    await button.first.click(timeout=3000)
                    logger.debug(f"Accepted cookie consent ({label})")
                    await human_pause(1000, self._rng)
                    break

            search_box = page.locator(SEARCH_BOX_SELECTOR).first
            if await search_box.count() > 0:
                await search_box.click()
                await search_box.type(
                    self._rng.choice(WARM_UP_QUERIES), delay=self._rng.randint(60, 140)
                )
                await page.keyboard.press("Enter")
                await page.wait_for_load_state(
                    "domcontentloaded", timeout=WARM_UP_NAVIGATION_TIMEOUT_MS
                )
                await human_pause(1500, self._rng)

            await page.mouse.wheel(0, 300)
            logger.debug(f"Warm-up complete for {handle.session_key}")
        except Exception as e:
            logger.warning(f"Warm-up failed for {handle.identity.label}: {e}")

    async def close(self, handle: SessionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if handle.context is not None:
            try:
                await handle.context.close()
            except Exception as e:
                logger.warning(f"Failed to close browser context {handle.session_key}: {e}")
        await self._release_resources(handle.resources)
        logger.debug(f"Closed browser session {handle.session_key}")

    async def _release_resources(self, resources: dict) -> None:
        browser = resources.get("browser")
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.warning(f"Failed to close browser: {e}")

        session_id = resources.get("steel_session_id")
        if session_id and self._steel_client is not None:
            try:
                await asyncio.to_thread(self._steel_client.sessions.release, session_id)
                logger.info(f"Released Steel session: {session_id}")
            except Exception as e:
                logger.warning(f"Failed to release Steel session {session_id}: {e}")

    async def shutdown(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Failed to stop Playwright: {e}")
            self._playwright = None


class HttpSessionManager:
    """
    httpx-backed sessions for API surfaces.

    Each session is an AsyncClient routed through the identity's proxy.
    Warm-up is a no-op.
    """

    kind = "http"

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        rng: random.Random | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._rng = rng or random.Random()

    async def open(self, identity: EgressIdentity, warm_up: bool) -> SessionHandle:
        identity = identity.with_fresh_session_token()
        try:
            client = httpx.AsyncClient(
                proxy=identity.proxy_url(),
                timeout=self.timeout_seconds,
                headers={"User-Agent": self._rng.choice(USER_AGENTS)},
                follow_redirects=True,
            )
        except (ValueError, ImportError, httpx.HTTPError) as e:
            raise SessionOpenError(
                f"Failed to open HTTP session for {identity.label}: {e}"
            ) from e

        handle = SessionHandle(
            identity=identity,
            kind=self.kind,
            session_key=_session_key(identity),
            client=client,
        )
        logger.debug(f"Opened HTTP session {handle.session_key}")
        return handle

    async def close(self, handle: SessionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            await handle.client.aclose()
        except Exception as e:
            logger.warning(f"Failed to close HTTP client {handle.session_key}: {e}")

    async def shutdown(self) -> None:
        return None
