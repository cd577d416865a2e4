"""
Tests for engine.ip_verifier module.

Tests cover:
- Location -> expected country mapping
- Lookup through an HTTP session (pytest-httpx) and a browser page (mocked)
- Match, mismatch and failed-lookup confidence levels
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from resilient_query_engine.engine.ip_verifier import IPINFO_URL, IPVerifier, expected_country
from resilient_query_engine.engine.models import EgressIdentity, IPInfo, SessionHandle

MUMBAI_PAYLOAD = {
    "ip": "103.21.124.9",
    "city": "Mumbai",
    "region": "Maharashtra",
    "country": "IN",
    "org": "AS9829 National Internet Backbone",
    "timezone": "Asia/Kolkata",
}


def http_handle(client) -> SessionHandle:
    return SessionHandle(
        identity=EgressIdentity("proxy-in-1", "in-mum", "http://gw.example:8000"),
        kind="http",
        session_key="proxy-in-1-abc",
        client=client,
    )


class TestExpectedCountry:
    """Test suite for expected_country()."""

    @pytest.mark.parametrize(
        "location,country",
        [("in-mum", "IN"), ("us-national", "US"), ("uk-lon", "GB"), ("mars-base", "unknown")],
    )
    def test_mapping(self, location, country):
        """Test location prefixes map to ISO country codes."""
        assert expected_country(location) == country


class TestIPInfo:
    """Test suite for IPInfo.from_payload()."""

    def test_missing_fields_unknown(self):
        """Test missing payload fields default to 'unknown'."""
        info = IPInfo.from_payload({"ip": "1.2.3.4"})

        assert info.ip == "1.2.3.4"
        assert info.country == "unknown"
        assert info.is_known

    def test_asn_object(self):
        """Test ipinfo's nested asn object is flattened."""
        info = IPInfo.from_payload({"ip": "1.2.3.4", "asn": {"asn": "AS13335"}})

        assert info.asn == "AS13335"


class TestVerifyHttpSession:
    """Test suite for verification through an httpx client."""

    @pytest.mark.asyncio
    async def test_verified(self, httpx_mock):
        """Test a matching country is verified with high confidence."""
        httpx_mock.add_response(url=IPINFO_URL, json=MUMBAI_PAYLOAD)

        async with httpx.AsyncClient() as client:
            handle = http_handle(client)
            verification = await IPVerifier().verify(handle, "in-mum")

        assert verification.verified is True
        assert verification.confidence == "high"
        assert verification.ip == "103.21.124.9"
        assert verification.warning is None
        assert handle.verified_ip.city == "Mumbai"

    @pytest.mark.asyncio
    async def test_mismatch(self, httpx_mock):
        """Test a different country is a low-confidence warning, not an error."""
        httpx_mock.add_response(url=IPINFO_URL, json={**MUMBAI_PAYLOAD, "country": "SG"})

        async with httpx.AsyncClient() as client:
            verification = await IPVerifier().verify(http_handle(client), "in-mum")

        assert verification.verified is False
        assert verification.confidence == "low"
        assert verification.expected_country == "IN"
        assert "expected IN" in verification.warning

    @pytest.mark.asyncio
    async def test_lookup_failure(self, httpx_mock):
        """Test a failed lookup degrades to unknown confidence."""
        httpx_mock.add_response(url=IPINFO_URL, status_code=503)

        async with httpx.AsyncClient() as client:
            handle = http_handle(client)
            verification = await IPVerifier().verify(handle, "in-mum")

        assert verification.verified is False
        assert verification.confidence == "unknown"
        assert verification.ip == "unknown"
        assert "IP lookup failed" in verification.warning
        assert handle.verified_ip is None

    @pytest.mark.asyncio
    async def test_unknown_location(self, httpx_mock):
        """Test a location without a known country records the IP but is unverified."""
        httpx_mock.add_response(url=IPINFO_URL, json=MUMBAI_PAYLOAD)

        async with httpx.AsyncClient() as client:
            handle = http_handle(client)
            verification = await IPVerifier().verify(handle, "mars-base")

        assert verification.confidence == "unknown"
        assert verification.ip == "103.21.124.9"
        assert handle.verified_ip.ip == "103.21.124.9"

    @pytest.mark.asyncio
    async def test_custom_lookup_url(self, httpx_mock):
        """Test the configured lookup URL is used."""
        httpx_mock.add_response(url="https://ip.example/json", json=MUMBAI_PAYLOAD)

        async with httpx.AsyncClient() as client:
            verification = await IPVerifier("https://ip.example/json", 2.0).verify(
                http_handle(client), "in-mum"
            )

        assert verification.verified is True


class TestVerifyBrowserSession:
    """Test suite for verification through a Playwright page."""

    @pytest.mark.asyncio
    async def test_uses_page_request_context(self):
        """Test browser sessions look up the IP with the page's request context."""
        response = MagicMock()
        response.ok = True
        response.json = AsyncMock(return_value=MUMBAI_PAYLOAD)
        page = MagicMock()
        page.request.get = AsyncMock(return_value=response)
        handle = SessionHandle(
            identity=EgressIdentity.direct("in-mum"), kind="browser", session_key="b", page=page
        )

        verification = await IPVerifier(timeout_seconds=5).verify(handle, "in-mum")

        assert verification.verified is True
        page.request.get.assert_awaited_once_with(IPINFO_URL, timeout=5000)

    @pytest.mark.asyncio
    async def test_page_error_status(self):
        """Test a non-OK page response is a failed lookup."""
        response = MagicMock()
        response.ok = False
        response.status = 429
        page = MagicMock()
        page.request.get = AsyncMock(return_value=response)
        handle = SessionHandle(
            identity=EgressIdentity.direct("in-mum"), kind="browser", session_key="b", page=page
        )

        verification = await IPVerifier().verify(handle, "in-mum")

        assert verification.confidence == "unknown"
        assert "429" in verification.warning

    @pytest.mark.asyncio
    async def test_no_page_or_client(self):
        """Test a handle without a transport is a failed lookup."""
        handle = SessionHandle(identity=EgressIdentity.direct("in-mum"), kind="http", session_key="x")

        verification = await IPVerifier().verify(handle, "in-mum")

        assert verification.confidence == "unknown"
