"""
Browser fingerprint-reduction settings.

Builds the Playwright launch arguments and per-context options that make a
controlled browser look like an ordinary visitor from the identity's claimed
location: a slightly randomized viewport, a common desktop user agent,
locale/timezone/geolocation consistent with the location, and an init
script that hides the usual automation markers.
"""

import random
from dataclasses import dataclass

# Chromium flags that remove the most obvious automation signals
STEALTH_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-extensions",
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]

# Masks navigator.webdriver and fills in plugin/language arrays that
# headless Chromium leaves empty
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => %(languages)s });
window.chrome = window.chrome || { runtime: {} };
"""


@dataclass(frozen=True)
class LocationProfile:
    """Locale settings a real visitor from a location would present."""

    country: str
    locale: str
    timezone_id: str
    latitude: float
    longitude: float
    accept_language: str


LOCATION_PROFILES: dict[str, LocationProfile] = {
    "in": LocationProfile("IN", "en-IN", "Asia/Kolkata", 19.076, 72.8777, "en-IN,en;q=0.9"),
    "us": LocationProfile("US", "en-US", "America/New_York", 40.7128, -74.006, "en-US,en;q=0.9"),
    "uk": LocationProfile("GB", "en-GB", "Europe/London", 51.5074, -0.1278, "en-GB,en;q=0.9"),
    "gb": LocationProfile("GB", "en-GB", "Europe/London", 51.5074, -0.1278, "en-GB,en;q=0.9"),
    "de": LocationProfile("DE", "de-DE", "Europe/Berlin", 52.52, 13.405, "de-DE,de;q=0.9,en;q=0.8"),
    "jp": LocationProfile("JP", "ja-JP", "Asia/Tokyo", 35.6762, 139.6503, "ja-JP,ja;q=0.9,en;q=0.8"),
    "au": LocationProfile("AU", "en-AU", "Australia/Sydney", -33.8688, 151.2093, "en-AU,en;q=0.9"),
    "ca": LocationProfile("CA", "en-CA", "America/Toronto", 43.6532, -79.3832, "en-CA,en;q=0.9"),
    "fr": LocationProfile("FR", "fr-FR", "Europe/Paris", 48.8566, 2.3522, "fr-FR,fr;q=0.9,en;q=0.8"),
    "br": LocationProfile("BR", "pt-BR", "America/Sao_Paulo", -23.5505, -46.6333, "pt-BR,pt;q=0.9,en;q=0.8"),
    "sg": LocationProfile("SG", "en-SG", "Asia/Singapore", 1.3521, 103.8198, "en-SG,en;q=0.9"),
}

DEFAULT_PROFILE = LOCATION_PROFILES["us"]


def location_prefix(location: str) -> str:
    """Return the country prefix of a location slug ("in-mum" -> "in")."""
    return location.split("-", 1)[0].lower()


def profile_for_location(location: str) -> LocationProfile:
    return LOCATION_PROFILES.get(location_prefix(location), DEFAULT_PROFILE)


@dataclass
class Fingerprint:
    """Concrete fingerprint chosen for one browser context."""

    viewport: dict
    user_agent: str
    profile: LocationProfile

    def context_options(self) -> dict:
        """Keyword arguments for Playwright's browser.new_context()."""
        return {
            "viewport": self.viewport,
            "user_agent": self.user_agent,
            "locale": self.profile.locale,
            "timezone_id": self.profile.timezone_id,
            "geolocation": {
                "latitude": self.profile.latitude,
                "longitude": self.profile.longitude,
            },
            "permissions": ["geolocation"],
            "extra_http_headers": {"Accept-Language": self.profile.accept_language},
        }

    def init_script(self) -> str:
        languages = [self.profile.locale, self.profile.locale.split("-")[0]]
        return STEALTH_INIT_SCRIPT % {"languages": repr(languages).replace("'", '"')}


def build_fingerprint(location: str, rng: random.Random | None = None) -> Fingerprint:
    """
    Choose a fingerprint for a new browser context.

    Args:
        location: Identity location slug (e.g. "in-mum")
        rng: Optional random source (tests pass a seeded one)

    Returns:
        Fingerprint with a 1280-1379 x 800-899 viewport
    """
    rng = rng or random.Random()
    return Fingerprint(
        viewport={"width": 1280 + rng.randrange(100), "height": 800 + rng.randrange(100)},
        user_agent=rng.choice(USER_AGENTS),
        profile=profile_for_location(location),
    )
