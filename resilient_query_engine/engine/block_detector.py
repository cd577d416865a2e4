"""
Challenge and block page detection for browser sessions.
"""

import logging
from dataclasses import dataclass

from .models import SessionHandle

logger = logging.getLogger(__name__)

URL_BLOCK_MARKERS = ("sorry/index", "recaptcha")

# Searched in order; first hit is reported
BLOCK_INDICATORS = [
    "unusual traffic",
    "not a robot",
    "recaptcha",
    "captcha",
    "verify you",
    "automated requests",
    "sorry/index",
    "blocked",
]


@dataclass
class BlockDetection:
    """
    Attributes:
        detected: True when the page is a block or challenge page
        indicator: What matched ("URL redirect" or a text indicator)
    """

    detected: bool
    indicator: str | None = None


class BlockDetector:
    """Inspects the current page of a browser session for block signals."""

    async def detect(self, handle: SessionHandle) -> BlockDetection:
        """
        Check whether the session's page is a block or challenge page.

        HTTP sessions (no page) are never blocked. Errors while reading the
        page are logged and reported as not blocked.
        """
        page = handle.page
        if page is None:
            return BlockDetection(detected=False)

        try:
            url = (page.url or "").lower()
            if any(marker in url for marker in URL_BLOCK_MARKERS):
                return BlockDetection(detected=True, indicator="URL redirect")

            body_text = await page.inner_text("body")
            html = await page.content()
        except Exception as e:
            logger.debug(f"Block detection failed for {handle.session_key}: {e}")
            return BlockDetection(detected=False)

        text = f"{body_text}\n{html}".lower()
        for indicator in BLOCK_INDICATORS:
            if indicator in text:
                logger.warning(f"Block detected on {handle.session_key}: {indicator}")
                return BlockDetection(detected=True, indicator=indicator)

        return BlockDetection(detected=False)
