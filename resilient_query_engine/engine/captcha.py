"""
reCAPTCHA solving through the 2Captcha service.

Flow:
1. Extract the site key from the challenge page (three fallbacks, in order)
2. Submit the task to 2Captcha (in.php, method=userrecaptcha, json=1)
3. Poll res.php until the token is ready, bounded by max_polls
4. Inject the token into #g-recaptcha-response and trigger the page's
   callback, falling back to submitting the enclosing form

Any failure returns False and leaves the page untouched. A True return only
means the token was injected; callers must re-run block detection.
"""

import asyncio
import logging

import httpx

from ..config.schema import CaptchaSettings
from .models import SessionHandle
from .pacing import CancellationToken

logger = logging.getLogger(__name__)

TWOCAPTCHA_SUBMIT_URL = "https://2captcha.com/in.php"
TWOCAPTCHA_RESULT_URL = "https://2captcha.com/res.php"
NOT_READY = "CAPCHA_NOT_READY"

# (description, script) pairs tried in order until one yields a key
SITE_KEY_EXTRACTORS = [
    (
        "data-sitekey attribute",
        """() => {
            const el = document.querySelector('.g-recaptcha, [data-sitekey]');
            return el ? el.getAttribute('data-sitekey') || '' : '';
        }""",
    ),
    (
        "recaptcha script k parameter",
        """() => {
            for (const script of document.querySelectorAll('script[src*="recaptcha"]')) {
                const match = script.src.match(/[?&]k=([^&]+)/);
                if (match) return decodeURIComponent(match[1]);
            }
            return '';
        }""",
    ),
    (
        "grecaptcha client registry",
        """() => {
            const cfg = window.___grecaptcha_cfg;
            if (!cfg || !cfg.clients) return '';
            const seen = new Set();
            const search = (obj, depth) => {
                if (!obj || typeof obj !== 'object' || depth > 5 || seen.has(obj)) return '';
                seen.add(obj);
                if (typeof obj.sitekey === 'string') return obj.sitekey;
                for (const key of Object.keys(obj)) {
                    const found = search(obj[key], depth + 1);
                    if (found) return found;
                }
                return '';
            };
            for (const id of Object.keys(cfg.clients)) {
                const found = search(cfg.clients[id], 0);
                if (found) return found;
            }
            return '';
        }""",
    ),
]

INJECT_TOKEN_SCRIPT = """(token) => {
    let field = document.getElementById('g-recaptcha-response');
    if (!field) {
        field = document.createElement('textarea');
        field.id = 'g-recaptcha-response';
        field.name = 'g-recaptcha-response';
        field.style.display = 'none';
        document.body.appendChild(field);
    }
    field.innerHTML = token;
    field.value = token;

    const cfg = window.___grecaptcha_cfg;
    const seen = new Set();
    const findCallback = (obj, depth) => {
        if (!obj || typeof obj !== 'object' || depth > 5 || seen.has(obj)) return null;
        seen.add(obj);
        if (typeof obj.callback === 'function') return obj.callback;
        if (typeof obj.callback === 'string' && typeof window[obj.callback] === 'function') {
            return window[obj.callback];
        }
        for (const key of Object.keys(obj)) {
            const found = findCallback(obj[key], depth + 1);
            if (found) return found;
        }
        return null;
    };
    if (cfg && cfg.clients) {
        for (const id of Object.keys(cfg.clients)) {
            const callback = findCallback(cfg.clients[id], 0);
            if (callback) {
                callback(token);
                return 'callback';
            }
        }
    }
    const form = field.closest('form') || document.querySelector('form');
    if (form) {
        form.submit();
        return 'form';
    }
    return 'none';
}"""


class CaptchaResolver:
    """
    Solves reCAPTCHA challenges on a browser session's page via 2Captcha.

    Attributes:
        api_key: 2Captcha API key; None disables solving
        settings: Poll interval, poll budget and HTTP timeout
    """

    def __init__(self, api_key: str | None, settings: CaptchaSettings | None = None):
        self.api_key = api_key
        self.settings = settings or CaptchaSettings()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and self.settings.enabled

    async def extract_site_key(self, page) -> str | None:
        """Return the page's reCAPTCHA site key, or None if none is found."""
        for description, script in SITE_KEY_EXTRACTORS:
            try:
                site_key = await page.evaluate(script)
            except Exception as e:
                logger.debug(f"Site key extraction via {description} failed: {e}")
                continue
            if site_key:
                logger.debug(f"Site key found via {description}")
                return str(site_key)
        return None

    async def resolve(
        self, handle: SessionHandle, cancel: CancellationToken | None = None
    ) -> bool:
        """
        Try to solve the challenge on the session's current page.

        Args:
            handle: Browser session showing a challenge page
            cancel: Checked between polls

        Returns:
            True if a token was obtained and injected, False otherwise
        """
        if not self.enabled:
            logger.info("CAPTCHA solving disabled (no API key configured)")
            return False
        if handle.page is None:
            return False

        page = handle.page
        site_key = await self.extract_site_key(page)
        if not site_key:
            logger.warning(f"Could not extract reCAPTCHA site key on {handle.session_key}")
            return False

        token = await self._solve(site_key, page.url, cancel)
        if not token:
            return False

        try:
            outcome = await page.evaluate(INJECT_TOKEN_SCRIPT, token)
        except Exception as e:
            logger.warning(f"Failed to inject CAPTCHA token on {handle.session_key}: {e}")
            return False

        logger.info(f"CAPTCHA token injected on {handle.session_key} (submitted via {outcome})")
        return True

    async def _solve(
        self, site_key: str, page_url: str, cancel: CancellationToken | None
    ) -> str | None:
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                response = await client.get(
                    TWOCAPTCHA_SUBMIT_URL,
                    params={
                        "key": self.api_key,
                        "method": "userrecaptcha",
                        "googlekey": site_key,
                        "pageurl": page_url,
                        "json": 1,
                    },
                )
                response.raise_for_status()
                submitted = response.json()
                if submitted.get("status") != 1:
                    logger.warning(f"2Captcha rejected the task: {submitted.get('request')}")
                    return None

                task_id = submitted["request"]
                logger.info(f"2Captcha task submitted: {task_id}")

                for poll in range(1, self.settings.max_polls + 1):
                    if cancel is not None:
                        if await cancel.sleep(self.settings.poll_interval_seconds):
                            logger.info("CAPTCHA polling cancelled")
                            return None
                    else:
                        await asyncio.sleep(self.settings.poll_interval_seconds)

                    response = await client.get(
                        TWOCAPTCHA_RESULT_URL,
                        params={
                            "key": self.api_key,
                            "action": "get",
                            "id": task_id,
                            "json": 1,
                        },
                    )
                    response.raise_for_status()
                    result = response.json()

                    if result.get("status") == 1:
                        logger.info(f"2Captcha task {task_id} solved after {poll} polls")
                        return str(result["request"])
                    if result.get("request") != NOT_READY:
                        logger.warning(f"2Captcha task {task_id} failed: {result.get('request')}")
                        return None

                logger.warning(
                    f"2Captcha task {task_id} not solved after {self.settings.max_polls} polls"
                )
                return None
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning(f"2Captcha request failed: {e}")
            return None
