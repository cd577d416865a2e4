"""
Configuration loader for the Resilient Query Engine.

This module loads YAML configuration files, validates them with Pydantic models,
resolves ${ENV_VAR} references, collects egress identities from the environment,
and builds the per-study query lists to create a RuntimeConfig.

File configuration (EngineConfig from YAML) only references secrets as
${ENV_VAR}; runtime configuration (RuntimeConfig) holds the resolved values.

Functions:
    load_config: Main entrypoint to load and validate an engine config file
    load_identities_from_env: Collect proxy identities from environment variables
    parse_proxy_url: Split a proxy URL into an EgressIdentity
    load_queries: Build the immutable Query list for a study
    apply_prompt_transform: Append a location suffix to a query
"""

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..engine.models import EgressIdentity, Query
from ..exceptions import (
    APIKeyMissingError,
    ConfigFileNotFoundError,
    ConfigValidationError,
    InvalidQueryListError,
)
from .schema import (
    EngineConfig,
    RuntimeConfig,
    RuntimeStudy,
    StudyConfig,
    StudyDefinition,
    SurfaceConfig,
)

logger = logging.getLogger(__name__)

PROXY_URL_PATTERN = re.compile(r"^(socks5?|https?)://(?:([^:@/]+):([^@]+)@)?(.+)$")

# Numbered pool variables: PROXY_IN_1..PROXY_IN_5 etc.
NUMBERED_PROXY_ENV = [
    ("PROXY_IN", "in-mum"),
    ("PROXY_US", "us-national"),
]
MAX_NUMBERED_PROXIES = 5

# Single-proxy variables
NAMED_PROXY_ENV = [
    ("CHERRY_PROXY_IN", "cherry-in", "in-mum"),
    ("CHERRY_PROXY_US", "cherry-us", "us-national"),
    ("LOCAL_SOCKS_PROXY", "local-socks", "unknown"),
]

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def load_config(
    config_path: str | Path, environ: Mapping[str, str] | None = None
) -> RuntimeConfig:
    """
    Load an engine config file and resolve everything needed at runtime.

    This function:
    1. Loads YAML from the specified path
    2. Validates structure using the EngineConfig Pydantic model
    3. Resolves ${ENV_VAR} references in session and surface settings
    4. Collects identities from YAML and from environment variables
    5. Builds the Query list for each study
    6. Returns RuntimeConfig ready for the orchestrator

    Args:
        config_path: Path to the YAML file (relative or absolute)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        RuntimeConfig with resolved secrets, identities and queries

    Raises:
        ConfigFileNotFoundError: If config file doesn't exist at the specified path
        ConfigValidationError: If YAML is invalid or config validation fails
        APIKeyMissingError: If a referenced environment variable is missing

    Example:
        >>> config = load_config("engine.config.yaml")
        >>> config.studies[0].config.study_id
        'google-india'
    """
    environ = os.environ if environ is None else environ
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigFileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open(encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML syntax in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(
            f"Failed to read configuration file {config_path}: {e}"
        ) from e

    if raw_config is None:
        raise ConfigValidationError(f"Configuration file is empty: {config_path}")
    if not isinstance(raw_config, dict):
        raise ConfigValidationError(
            f"Configuration root must be a mapping in {config_path}"
        )

    # Session secrets (steel_api_key) are resolved before validation so the
    # steel provider check sees the real value
    if isinstance(raw_config.get("session"), dict):
        raw_config["session"] = _resolve_env_vars_recursive(raw_config["session"], environ)
    if isinstance(raw_config.get("identities"), list):
        raw_config["identities"] = _resolve_env_vars_recursive(
            raw_config["identities"], environ
        )

    engine_config = validate_engine_config(raw_config, config_path)

    identities = [
        _identity_from_config(identity.name, identity.location, identity.proxy_url)
        for identity in engine_config.identities
    ]
    known = {identity.name for identity in identities}
    for identity in load_identities_from_env(environ):
        if identity.name in known:
            logger.warning(
                f"Identity {identity.name} from environment shadowed by YAML entry"
            )
            continue
        identities.append(identity)

    studies = []
    for definition in engine_config.studies:
        resolved_surface = SurfaceConfig(
            adapter=definition.surface.adapter,
            config=_resolve_env_vars_recursive(dict(definition.surface.config), environ),
        )
        queries = load_queries(definition, base_dir=config_path.parent)
        studies.append(
            RuntimeStudy(
                config=StudyConfig.from_definition(definition),
                surface=resolved_surface,
                queries=queries,
            )
        )

    captcha_api_key = environ.get(engine_config.captcha.env_api_key) or None
    if engine_config.captcha.enabled and not captcha_api_key:
        logger.info(
            f"${engine_config.captcha.env_api_key} not set; CAPTCHA solving disabled"
        )

    return RuntimeConfig(
        run_settings=engine_config.run_settings,
        session=engine_config.session,
        captcha=engine_config.captcha,
        captcha_api_key=captcha_api_key if engine_config.captcha.enabled else None,
        identities=identities,
        studies=studies,
    )


def validate_engine_config(raw_config: dict, config_path: str | Path) -> EngineConfig:
    """
    Validate a raw YAML mapping with EngineConfig.

    Raises:
        ConfigValidationError: With one "  - loc: msg" line per pydantic error
    """
    try:
        return EngineConfig.model_validate(raw_config)
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            error_messages.append(f"  - {loc}: {msg}")

        raise ConfigValidationError(
            f"Configuration validation failed in {config_path}:\n"
            + "\n".join(error_messages)
        ) from e


def _resolve_env_vars_recursive(obj, environ: Mapping[str, str]):
    """
    Recursively resolve ${ENV_VAR} references in nested dicts/lists.

    Args:
        obj: Dict, list, or scalar value to process
        environ: Environment mapping

    Returns:
        Object with all ${ENV_VAR} references resolved

    Raises:
        APIKeyMissingError: If referenced env var is not set
    """
    if isinstance(obj, dict):
        return {key: _resolve_env_vars_recursive(value, environ) for key, value in obj.items()}

    if isinstance(obj, list):
        return [_resolve_env_vars_recursive(item, environ) for item in obj]

    if isinstance(obj, str):
        def substitute(match: re.Match) -> str:
            env_var_name = match.group(1)
            env_value = environ.get(env_var_name)
            if env_value is None:
                raise APIKeyMissingError(
                    f"Environment variable ${{{env_var_name}}} not set. "
                    f"Please set it in your environment or .env file."
                )
            return env_value

        # "prefix-${VAR}-suffix" is substituted in place
        return ENV_VAR_PATTERN.sub(substitute, obj)

    return obj


# ============================================================================
# Identities
# ============================================================================


def parse_proxy_url(name: str, location: str, url: str) -> EgressIdentity:
    """
    Parse "scheme://[user:pass@]host:port" into an EgressIdentity.

    Args:
        name: Identity name
        location: Claimed location slug
        url: Proxy URL with scheme socks5, socks, http or https

    Returns:
        EgressIdentity with server "scheme://host:port" and split credentials

    Raises:
        ValueError: If the URL does not match the expected format

    Example:
        >>> identity = parse_proxy_url("p1", "in-mum", "http://u:pw@gw.example:8000")
        >>> identity.server
        'http://gw.example:8000'
    """
    match = PROXY_URL_PATTERN.match(url.strip())
    if not match:
        raise ValueError(
            f"Invalid proxy URL for identity {name}: expected "
            f"scheme://[user:pass@]host:port with scheme socks5, socks, http or https"
        )
    scheme, username, password, host = match.groups()
    if scheme == "socks":
        scheme = "socks5"
    return EgressIdentity(
        name=name,
        location=location,
        server=f"{scheme}://{host.rstrip('/')}",
        username=username,
        password=password,
    )


def _identity_from_config(name: str, location: str, url: str) -> EgressIdentity:
    try:
        return parse_proxy_url(name, location, url)
    except ValueError as e:
        raise ConfigValidationError(str(e)) from e


def load_identities_from_env(
    environ: Mapping[str, str] | None = None,
) -> list[EgressIdentity]:
    """
    Collect proxy identities from environment variables.

    Recognised variables, in priority order:
    - PROXY_IN_1..PROXY_IN_5 -> proxy-in-N @ in-mum
    - PROXY_US_1..PROXY_US_5 -> proxy-us-N @ us-national
    - CHERRY_PROXY_IN / CHERRY_PROXY_US -> cherry-in / cherry-us
    - LOCAL_SOCKS_PROXY -> local-socks @ unknown

    Malformed URLs are logged and skipped.
    """
    environ = os.environ if environ is None else environ
    identities: list[EgressIdentity] = []

    candidates: list[tuple[str, str, str]] = []
    for prefix, location in NUMBERED_PROXY_ENV:
        for n in range(1, MAX_NUMBERED_PROXIES + 1):
            name = f"{prefix.lower().replace('_', '-')}-{n}"
            candidates.append((f"{prefix}_{n}", name, location))
    candidates.extend(NAMED_PROXY_ENV)

    for env_var, name, location in candidates:
        url = environ.get(env_var)
        if not url or url.isspace():
            continue
        try:
            identities.append(parse_proxy_url(name, location, url))
        except ValueError:
            # URL may embed credentials; log the variable name only
            logger.warning(f"Ignoring ${env_var}: not a valid proxy URL")

    return identities


# ============================================================================
# Queries
# ============================================================================


def apply_prompt_transform(text: str, transform: str | None) -> str:
    """
    Append a location suffix to a query, before any trailing "?".

    Queries already containing the suffix (case-insensitive) are unchanged.

    Example:
        >>> apply_prompt_transform("best crm?", "in India")
        'best crm in India?'
    """
    if not transform:
        return text
    if transform.lower() in text.lower():
        return text
    stripped = text.rstrip()
    if stripped.endswith("?"):
        return f"{stripped[:-1].rstrip()} {transform}?"
    return f"{stripped} {transform}"


def _read_queries_file(path: Path) -> list[str]:
    if not path.exists():
        raise ConfigValidationError(f"Queries file not found: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigValidationError(f"Failed to read queries file {path}: {e}") from e

    if path.suffix.lower() == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"Invalid JSON in queries file {path}: {e}") from e
        if not isinstance(data, list) or not all(isinstance(q, str) for q in data):
            raise ConfigValidationError(
                f"Queries file {path} must contain a JSON list of strings"
            )
        return [q.strip() for q in data if q.strip()]

    return [
        line.strip()
        for line in content.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]


def load_queries(definition: StudyDefinition, base_dir: Path | None = None) -> list[Query]:
    """
    Build the immutable Query list for a study.

    Query text is stored as written; the prompt transform is applied by the
    runner at submission time so resume compares against the original text.

    Raises:
        ConfigValidationError: If the queries file is missing or malformed
        InvalidQueryListError: If the study ends up with no queries
    """
    if definition.queries_file:
        path = Path(definition.queries_file)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        texts = _read_queries_file(path)
    else:
        texts = list(definition.queries)

    if not texts:
        raise InvalidQueryListError(f"Study '{definition.id}' has no queries")

    return [Query(index=i, text=text) for i, text in enumerate(texts)]
