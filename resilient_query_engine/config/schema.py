"""
Configuration schema models for the Resilient Query Engine.

This module defines Pydantic models for validating the engine's YAML
configuration file and the resolved runtime configuration handed to the
study runners.

Models:
    DelaySettings: Inter-query, recovery and between-study pauses
    SessionSettings: Browser/HTTP session provider settings
    CaptchaSettings: 2Captcha solver settings
    IdentityConfig: Proxy identity declared in YAML
    SurfaceConfig: Surface adapter plugin and its configuration
    StudyDefinition: One study as written in YAML
    RunSettings: Output location and concurrency
    EngineConfig: Root configuration model (validates the entire YAML)
    StudyConfig: Immutable per-study settings used by the runner
    RuntimeStudy: StudyConfig + resolved surface config + query list
    RuntimeConfig: Fully resolved configuration (secrets and identities)
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ..engine.models import EgressIdentity, Query


def _validate_slug(value: str, what: str) -> str:
    if not value or value.isspace():
        raise ValueError(f"{what} cannot be empty")
    if not all(c.isalnum() or c in "-_" for c in value):
        raise ValueError(f"{what} must be alphanumeric with hyphens/underscores: {value}")
    return value


class DelaySettings(BaseModel):
    """
    Pause lengths in milliseconds.

    Attributes:
        base_ms: Pause between queries after a success (default 4s)
        after_failure_ms: Pause between queries after a failure (default 8s)
        variance: Random fraction of the base added to each pause (0-1)
        recovery_cooldown_ms: Pause after a successful identity rotation
        between_studies_ms: Pause before starting each further study
    """

    model_config = ConfigDict(frozen=True)

    base_ms: int = 4000
    after_failure_ms: int = 8000
    variance: float = 0.5
    recovery_cooldown_ms: int = 10000
    between_studies_ms: int = 5000

    @field_validator(
        "base_ms", "after_failure_ms", "recovery_cooldown_ms", "between_studies_ms"
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Delay must be non-negative, got: {v}")
        return v

    @field_validator("variance")
    @classmethod
    def validate_variance(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"variance must be between 0 and 1 (got: {v})")
        return v


class SessionSettings(BaseModel):
    """
    Session provider settings.

    Attributes:
        provider: "local" launches Chromium; "steel" attaches to a remote
            Steel browser session over CDP
        headless: Launch Chromium headless (local provider only)
        steel_api_key: Steel API key (required for provider "steel")
        steel_session_timeout_ms: Lifetime requested for Steel sessions
        warm_up_url: Neutral homepage visited during warm-up
        navigation_timeout_ms: Default Playwright navigation timeout
        ip_lookup_url: IP-geolocation endpoint used for verification
        ip_lookup_timeout_seconds: Timeout for the IP lookup
    """

    provider: Literal["local", "steel"] = "local"
    headless: bool = True
    steel_api_key: str | None = None
    steel_session_timeout_ms: int = 300_000
    warm_up_url: str = "https://www.google.com"
    navigation_timeout_ms: int = 30_000
    ip_lookup_url: str = "https://ipinfo.io/json"
    ip_lookup_timeout_seconds: float = 10.0

    @model_validator(mode="after")
    def validate_steel_key(self) -> "SessionSettings":
        if self.provider == "steel" and not self.steel_api_key:
            raise ValueError("session.steel_api_key is required when provider is 'steel'")
        return self


class CaptchaSettings(BaseModel):
    """
    2Captcha solver settings.

    A missing environment variable disables solving (the resolver returns
    False) rather than failing configuration.
    """

    enabled: bool = True
    env_api_key: str = "TWOCAPTCHA_API_KEY"
    poll_interval_seconds: float = 5.0
    max_polls: int = 30
    request_timeout_seconds: float = 30.0

    @field_validator("max_polls")
    @classmethod
    def validate_max_polls(cls, v: int) -> int:
        if not 1 <= v <= 120:
            raise ValueError(f"max_polls must be between 1 and 120 (got: {v})")
        return v


class IdentityConfig(BaseModel):
    """
    Proxy identity declared in YAML.

    Attributes:
        name: Unique identity name
        location: Claimed location slug (e.g. "in-mum")
        proxy_url: "scheme://[user:pass@]host:port" (may use ${ENV_VAR})
    """

    name: str
    location: str
    proxy_url: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_slug(v, "Identity name")


class SurfaceConfig(BaseModel):
    """
    Surface adapter selection.

    Attributes:
        adapter: Registered adapter plugin name (e.g. "serpapi", "google-search")
        config: Adapter-specific configuration; ${ENV_VAR} references are
            resolved by the loader
    """

    adapter: str
    config: dict = {}

    @field_validator("adapter")
    @classmethod
    def validate_adapter(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("surface.adapter cannot be empty")
        return v


class StudyDefinition(BaseModel):
    """One study as written in the YAML `studies` list."""

    id: str
    surface: SurfaceConfig
    expected_location: str
    prompt_transform: str | None = None
    timeout_ms: int = 60_000
    max_consecutive_failures: int = 3
    max_recovery_attempts: int = 5
    checkpoint_every: int = 5
    warm_up: bool = True
    verify_ip: bool = True
    delays: DelaySettings = DelaySettings()
    queries: list[str] = []
    queries_file: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _validate_slug(v, "Study ID")

    @field_validator("timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"timeout_ms must be positive (got: {v})")
        return v

    @field_validator("max_consecutive_failures", "max_recovery_attempts", "checkpoint_every")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be at least 1 (got: {v})")
        return v

    @field_validator("queries")
    @classmethod
    def validate_queries(cls, v: list[str]) -> list[str]:
        for position, text in enumerate(v):
            if not text or text.isspace():
                raise ValueError(f"Query at position {position} is empty")
        return v

    @model_validator(mode="after")
    def validate_query_source(self) -> "StudyDefinition":
        if self.queries and self.queries_file:
            raise ValueError("Specify either queries or queries_file, not both")
        if not self.queries and not self.queries_file:
            raise ValueError(f"Study '{self.id}' has no queries")
        return self


class RunSettings(BaseModel):
    """
    Run-wide settings.

    Attributes:
        output_dir: Base directory for run directories
        max_concurrent_studies: Studies executed in parallel (1-20)
        operator_timeout_seconds: Give up waiting for the operator after this
            long (treated as abort); None waits indefinitely
    """

    output_dir: str = "./output"
    max_concurrent_studies: int = 1
    operator_timeout_seconds: float | None = None

    @field_validator("output_dir")
    @classmethod
    def validate_output_dir(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("output_dir cannot be empty")
        return v

    @field_validator("max_concurrent_studies")
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        if not 1 <= v <= 20:
            raise ValueError(f"max_concurrent_studies must be between 1 and 20 (got: {v})")
        return v


class EngineConfig(BaseModel):
    """Root configuration model for the engine YAML file."""

    run_settings: RunSettings = RunSettings()
    session: SessionSettings = SessionSettings()
    captcha: CaptchaSettings = CaptchaSettings()
    identities: list[IdentityConfig] = []
    studies: list[StudyDefinition]

    @field_validator("studies")
    @classmethod
    def validate_studies_unique(cls, v: list[StudyDefinition]) -> list[StudyDefinition]:
        if not v:
            raise ValueError("At least one study must be configured")
        ids = [study.id for study in v]
        if len(ids) != len(set(ids)):
            duplicates = {i for i in ids if ids.count(i) > 1}
            raise ValueError(f"Duplicate study IDs found: {duplicates}")
        return v

    @field_validator("identities")
    @classmethod
    def validate_identities_unique(cls, v: list[IdentityConfig]) -> list[IdentityConfig]:
        names = [identity.name for identity in v]
        if len(names) != len(set(names)):
            duplicates = {n for n in names if names.count(n) > 1}
            raise ValueError(f"Duplicate identity names found: {duplicates}")
        return v


class StudyConfig(BaseModel):
    """
    Immutable settings for one study run.

    Created once per run from a StudyDefinition and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    study_id: str
    surface_id: str
    expected_location: str
    prompt_transform: str | None = None
    timeout_ms: int = 60_000
    max_consecutive_failures: int = 3
    max_recovery_attempts: int = 5
    checkpoint_every: int = 5
    warm_up: bool = True
    verify_ip: bool = True
    delays: DelaySettings = DelaySettings()

    @classmethod
    def from_definition(cls, definition: StudyDefinition) -> "StudyConfig":
        return cls(
            study_id=definition.id,
            surface_id=definition.surface.adapter,
            expected_location=definition.expected_location,
            prompt_transform=definition.prompt_transform,
            timeout_ms=definition.timeout_ms,
            max_consecutive_failures=definition.max_consecutive_failures,
            max_recovery_attempts=definition.max_recovery_attempts,
            checkpoint_every=definition.checkpoint_every,
            warm_up=definition.warm_up,
            verify_ip=definition.verify_ip,
            delays=definition.delays,
        )


class RuntimeStudy(BaseModel):
    """Study ready to run: settings, resolved adapter config and queries."""

    config: StudyConfig
    surface: SurfaceConfig
    queries: list[Query]


class RuntimeConfig(BaseModel):
    """
    Fully resolved configuration.

    Attributes:
        run_settings: Output and concurrency settings
        session: Session settings with secrets resolved
        captcha: Captcha settings
        captcha_api_key: Resolved 2Captcha key, or None (solver disabled)
        identities: Identities from YAML followed by those from the environment
        studies: Studies in configuration order
    """

    run_settings: RunSettings
    session: SessionSettings
    captcha: CaptchaSettings
    captcha_api_key: str | None = None
    identities: list[EgressIdentity] = []
    studies: list[RuntimeStudy]

    def select_studies(self, study_ids: list[str] | None) -> list[RuntimeStudy]:
        """
        Return the studies to run, preserving configuration order.

        Raises:
            ValueError: If an unknown study id is requested
        """
        if not study_ids:
            return list(self.studies)
        known = {study.config.study_id for study in self.studies}
        unknown = [study_id for study_id in study_ids if study_id not in known]
        if unknown:
            raise ValueError(f"Unknown study IDs: {unknown}")
        return [s for s in self.studies if s.config.study_id in study_ids]
