"""Config loading for DeskGate.

Reads `.deskgate/config.yaml` (or `~/.deskgate/config.yaml`).
Raises SystemExit on parse errors or a missing/unsupported `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. DESKGATE_CONFIG environment variable (if set)
  3. `.deskgate/config.yaml` (working directory — for development)
  4. `~/.deskgate/config.yaml` (home directory — for production deployments)

Environment variable overrides (always applied last):
  REDIS_URL              — shared counter store URL (absent = admission fails open)
  MAX_FILE_SIZE          — uploads.max_file_size in bytes
  MAX_FILES_PER_REQUEST  — uploads.max_files
  DESKGATE_PORT          — server.port
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from deskgate.constants import (
    DEFAULT_HOST,
    DEFAULT_MAX_FIELD_NAME_SIZE,
    DEFAULT_MAX_FIELD_SIZE,
    DEFAULT_MAX_FIELDS,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_MAX_FILES,
    DEFAULT_PORT,
    MAX_COMPRESSION_RATIO,
    RATE_LIMIT_KEY_PREFIX,
    SCAN_PREFIX_BYTES,
    STORE_TIMEOUT_MS,
)
from deskgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".deskgate/config.yaml",
    os.path.expanduser("~/.deskgate/config.yaml"),
]

# Integer settings that may be supplied through the environment.
_ENV_INT_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("MAX_FILE_SIZE", "uploads", "max_file_size"),
    ("MAX_FILES_PER_REQUEST", "uploads", "max_files"),
    ("DESKGATE_PORT", "server", "port"),
)


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding and client-address handling.

    trust_forwarded_for: use the first ``X-Forwarded-For`` hop as the caller IP.
                         Only enable behind a proxy that overwrites the header,
                         otherwise callers can mint fresh rate-limit buckets.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    trust_forwarded_for: bool = False


@dataclass
class StoreConfig:
    """Shared counter store connection settings."""

    url: Optional[str] = None
    timeout_ms: int = STORE_TIMEOUT_MS
    key_prefix: str = RATE_LIMIT_KEY_PREFIX


@dataclass
class UploadConfig:
    """Upload limits plus table extensions for the integrity pipeline.

    The ``extra_*`` fields extend the built-in tables in
    ``deskgate.upload.definitions``; they never replace them.
    """

    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_files: int = DEFAULT_MAX_FILES
    max_fields: int = DEFAULT_MAX_FIELDS
    max_field_name_size: int = DEFAULT_MAX_FIELD_NAME_SIZE
    max_field_size: int = DEFAULT_MAX_FIELD_SIZE
    scan_prefix_bytes: int = SCAN_PREFIX_BYTES
    max_compression_ratio: int = MAX_COMPRESSION_RATIO
    extra_allowed_mime_types: list[str] = field(default_factory=list)
    extra_dangerous_extensions: list[str] = field(default_factory=list)
    extra_malicious_patterns: list[str] = field(default_factory=list)
    extra_signatures: dict[str, str] = field(default_factory=dict)


@dataclass
class RateLimitOverride:
    """Per-route-class override of the reference policy table.

    Unset fields keep the reference value for that route class.
    """

    window_ms: Optional[int] = None
    max_requests: Optional[int] = None
    skip_on_success: Optional[bool] = None
    skip_on_failure: Optional[bool] = None


@dataclass
class RouteRule:
    """Maps a path prefix to a route class. ``methods=None`` matches every method."""

    prefix: str
    route_class: str
    methods: Optional[list[str]] = None


def _default_routes() -> list[RouteRule]:
    # Most specific prefixes first: the first matching rule wins.
    return [
        RouteRule(prefix="/api/auth/login", route_class="auth", methods=["POST"]),
        RouteRule(prefix="/api/auth/register", route_class="auth", methods=["POST"]),
        RouteRule(prefix="/api/auth/forgot-password", route_class="strict", methods=["POST"]),
        RouteRule(prefix="/api/files", route_class="upload", methods=["POST"]),
        RouteRule(prefix="/api/search", route_class="search"),
        RouteRule(prefix="/api", route_class="general"),
    ]


@dataclass
class Config:
    """Root configuration object populated from .deskgate/config.yaml.

    All fields have safe defaults — DeskGate can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)
    rate_limits: dict[str, RateLimitOverride] = field(default_factory=dict)
    routes: list[RouteRule] = field(default_factory=_default_routes)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.

        Raises:
            SystemExit(1): On a malformed ``rate_limits`` or ``routes`` section.
        """
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", DEFAULT_HOST),
            port=server_raw.get("port", DEFAULT_PORT),
            trust_forwarded_for=bool(server_raw.get("trust_forwarded_for", False)),
        )

        store_raw = raw.get("store") or {}
        store = StoreConfig(
            url=store_raw.get("url"),
            timeout_ms=store_raw.get("timeout_ms", STORE_TIMEOUT_MS),
            key_prefix=store_raw.get("key_prefix", RATE_LIMIT_KEY_PREFIX),
        )

        uploads_raw = raw.get("uploads") or {}
        uploads = UploadConfig(
            max_file_size=uploads_raw.get("max_file_size", DEFAULT_MAX_FILE_SIZE),
            max_files=uploads_raw.get("max_files", DEFAULT_MAX_FILES),
            max_fields=uploads_raw.get("max_fields", DEFAULT_MAX_FIELDS),
            max_field_name_size=uploads_raw.get("max_field_name_size", DEFAULT_MAX_FIELD_NAME_SIZE),
            max_field_size=uploads_raw.get("max_field_size", DEFAULT_MAX_FIELD_SIZE),
            scan_prefix_bytes=uploads_raw.get("scan_prefix_bytes", SCAN_PREFIX_BYTES),
            max_compression_ratio=uploads_raw.get("max_compression_ratio", MAX_COMPRESSION_RATIO),
            extra_allowed_mime_types=list(uploads_raw.get("extra_allowed_mime_types") or []),
            extra_dangerous_extensions=list(uploads_raw.get("extra_dangerous_extensions") or []),
            extra_malicious_patterns=list(uploads_raw.get("extra_malicious_patterns") or []),
            extra_signatures=dict(uploads_raw.get("extra_signatures") or {}),
        )

        rate_limits = {
            str(name): _parse_override(name, entry)
            for name, entry in (raw.get("rate_limits") or {}).items()
        }

        routes_raw = raw.get("routes")
        routes = (
            [_parse_route(entry) for entry in routes_raw]
            if routes_raw is not None
            else _default_routes()
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            store=store,
            uploads=uploads,
            rate_limits=rate_limits,
            routes=routes,
            path=path,
        )


def _parse_override(name: Any, entry: Any) -> RateLimitOverride:
    if not isinstance(entry, dict):
        _fail(f"CONFIG ERROR: rate_limits.{name} must be a mapping.")
    override = RateLimitOverride(
        window_ms=entry.get("window_ms"),
        max_requests=entry.get("max_requests"),
        skip_on_success=entry.get("skip_on_success"),
        skip_on_failure=entry.get("skip_on_failure"),
    )
    if override.window_ms is not None and (
        not isinstance(override.window_ms, int) or override.window_ms <= 0
    ):
        _fail(f"CONFIG ERROR: rate_limits.{name}.window_ms must be a positive integer.")
    if override.max_requests is not None and (
        not isinstance(override.max_requests, int) or override.max_requests < 0
    ):
        _fail(f"CONFIG ERROR: rate_limits.{name}.max_requests must be a non-negative integer.")
    return override


def _parse_route(entry: Any) -> RouteRule:
    if not isinstance(entry, dict) or "prefix" not in entry or "route_class" not in entry:
        _fail("CONFIG ERROR: each routes entry needs 'prefix' and 'route_class'.")
    methods = entry.get("methods")
    return RouteRule(
        prefix=str(entry["prefix"]),
        route_class=str(entry["route_class"]),
        methods=[str(m).upper() for m in methods] if methods else None,
    )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate DeskGate configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes the error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       a malformed section, or a non-integer env override.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("DESKGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "DeskGate refuses to start with an invalid config."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.trust_forwarded_for:
        logger.warning(
            "trust_forwarded_for is enabled: X-Forwarded-For is used as the caller IP. "
            "Only enable this behind a proxy that overwrites the header."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        store_configured=config.store.url is not None,
        route_rules=len(config.routes),
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If an integer override is set but not a valid integer.
    """
    redis_url = os.environ.get("REDIS_URL")
    if redis_url:
        config.store.url = redis_url

    for env_name, section, attr in _ENV_INT_OVERRIDES:
        raw_value = os.environ.get(env_name)
        if raw_value is None:
            continue
        try:
            value = int(raw_value)
        except ValueError:
            _fail(
                f"CONFIG ERROR: {env_name} environment variable is not a valid "
                f"integer: '{raw_value}'"
            )
        setattr(getattr(config, section), attr, value)
