"""
Egress IP verification.

Looks up the session's public IP through the session's own network path and
compares its country with the country implied by the study location. A
mismatch is a warning, never an error; a failed lookup degrades to an
"unknown" result.
"""

import logging

from .fingerprint import location_prefix
from .models import IPInfo, IPVerification, SessionHandle

logger = logging.getLogger(__name__)

IPINFO_URL = "https://ipinfo.io/json"

EXPECTED_COUNTRY_BY_PREFIX = {
    "in": "IN",
    "us": "US",
    "uk": "GB",
    "gb": "GB",
    "de": "DE",
    "jp": "JP",
    "au": "AU",
    "ca": "CA",
    "fr": "FR",
    "br": "BR",
    "sg": "SG",
}


def expected_country(location: str) -> str:
    """
    Country code implied by a location slug.

    Example:
        >>> expected_country("in-mum")
        'IN'
        >>> expected_country("mars-base")
        'unknown'
    """
    return EXPECTED_COUNTRY_BY_PREFIX.get(location_prefix(location), "unknown")


class IPVerifier:
    """
    Verifies that a session egresses from the expected country.

    Attributes:
        lookup_url: IP-geolocation endpoint returning ipinfo.io-style JSON
        timeout_seconds: Bound on the lookup request
    """

    def __init__(self, lookup_url: str = IPINFO_URL, timeout_seconds: float = 10.0):
        self.lookup_url = lookup_url
        self.timeout_seconds = timeout_seconds

    async def lookup(self, handle: SessionHandle) -> IPInfo:
        """
        Fetch IP details through the session.

        Browser sessions use the page's request context (same proxy and
        cookies as the page); HTTP sessions use their httpx client.

        Raises:
            Exception: Any transport, status or JSON error from the lookup
        """
        if handle.page is not None:
            response = await handle.page.request.get(
                self.lookup_url, timeout=self.timeout_seconds * 1000
            )
            if not response.ok:
                raise RuntimeError(f"IP lookup returned status {response.status}")
            payload = await response.json()
        elif handle.client is not None:
            response = await handle.client.get(self.lookup_url, timeout=self.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        else:
            raise RuntimeError("Session has neither a page nor an HTTP client")

        if not isinstance(payload, dict):
            raise ValueError("IP lookup returned a non-object payload")
        return IPInfo.from_payload(payload)

    async def verify(self, handle: SessionHandle, expected_location: str) -> IPVerification:
        """
        Verify the session's egress country.

        Args:
            handle: Open session
            expected_location: Study location slug (e.g. "in-mum")

        Returns:
            IPVerification; confidence is "high" on a match, "low" on a
            mismatch and "unknown" when the lookup failed or the location has
            no known country. The handle's verified_ip is updated on success.
        """
        expected = expected_country(expected_location)

        try:
            info = await self.lookup(handle)
        except Exception as e:
            logger.warning(f"IP lookup failed for {handle.identity.label}: {e}")
            return IPVerification(
                ip="unknown",
                country="unknown",
                expected_country=expected,
                verified=False,
                confidence="unknown",
                warning=f"IP lookup failed: {e}",
            )

        handle.verified_ip = info

        if expected == "unknown":
            return IPVerification(
                ip=info.ip,
                country=info.country,
                expected_country=expected,
                verified=False,
                confidence="unknown",
                warning=f"No country known for location {expected_location}",
                ip_info=info,
            )

        verified = info.country.upper() == expected.upper()
        warning = None
        if not verified:
            warning = (
                f"IP {info.ip} is in {info.country}, expected {expected} "
                f"for location {expected_location}"
            )
            logger.warning(f"{handle.identity.label}: {warning}")
        else:
            logger.info(f"{handle.identity.label}: egress IP {info.ip} verified in {info.country}")

        return IPVerification(
            ip=info.ip,
            country=info.country,
            expected_country=expected,
            verified=verified,
            confidence="high" if verified else "low",
            warning=warning,
            ip_info=info,
        )
