"""Runtime configuration for the catalog sync engine.

Reads shop connection settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    SHOP_DOMAIN: Shop domain, e.g. acme.myshopify.com (required)
    SHOP_ACCESS_TOKEN: Admin API access token (required)
    SHOP_API_VERSION: Admin API version (optional, default: 2024-01)
    CATALOG_READ_ONLY: Refuse write sessions (optional, default: false)
    CATALOG_RATE_LIMIT_DELAY_MS: Min spacing between API calls (optional, default: 500)
    CATALOG_MAX_RETRIES: Max retries per item (optional, default: 3)

The resulting ``Config`` is built once per invocation and passed to every
component; nothing reads configuration from module state.
"""

import logging
import os
import re
from dataclasses import dataclass, field

from .config_schema import SyncSettings

logger = logging.getLogger(__name__)

_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]*\.[a-z]{2,}$")


@dataclass
class ShopCredentials:
    shop_domain: str
    access_token: str
    api_version: str


@dataclass
class Config:
    shop_domain: str
    access_token: str
    api_version: str = "2024-01"
    timeout_seconds: float = 30.0
    debug: bool = False
    sync: SyncSettings = field(default_factory=SyncSettings)

    def credentials(self) -> ShopCredentials:
        """Default credential provider backed by this config."""
        return ShopCredentials(
            shop_domain=self.shop_domain,
            access_token=self.access_token,
            api_version=self.api_version,
        )

    def is_read_only(self) -> bool:
        """Default read-only flag provider backed by this config."""
        return self.sync.read_only_mode


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the domain is malformed or the token is empty.
    """
    # Accept pasted URLs: strip scheme and trailing slash
    domain = config.shop_domain.strip().lower()
    domain = domain.removeprefix("https://").removeprefix("http://")
    config.shop_domain = domain.removesuffix("/")

    if not _DOMAIN_PATTERN.match(config.shop_domain):
        raise ValueError(
            f"Invalid shop domain '{config.shop_domain}': "
            "expected a host name like acme.myshopify.com"
        )

    if not config.access_token.strip():
        raise ValueError(
            "Shop access token cannot be empty. Set SHOP_ACCESS_TOKEN environment variable."
        )

    if not re.match(r"^\d{4}-\d{2}$|^unstable$", config.api_version):
        raise ValueError(
            f"Invalid API version '{config.api_version}': expected YYYY-MM"
        )

    if config.sync.read_only_mode:
        logger.warning(
            "Read-only mode is enabled: write sessions will be refused."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, low: int, high: int) -> int | None:
    """Return an int from env var within [low, high], or None if unset."""
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    shop_domain: str | None = None,
    access_token: str | None = None,
    api_version: str | None = None,
    read_only: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
    sync_settings: SyncSettings | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        shop_domain: Override shop domain.
        access_token: Override access token.
        api_version: Override API version.
        read_only: Force read-only mode (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Dict of values from the YAML ``shop`` section.
        sync_settings: ``SyncSettings`` from the YAML ``sync`` section.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required config (domain, token) is missing after
            checking all sources, or a numeric env var is out of range.
    """
    fb = yaml_fallbacks or {}
    settings = sync_settings or SyncSettings()

    domain = shop_domain or os.getenv("SHOP_DOMAIN") or fb.get("domain")
    if not domain:
        raise ValueError(
            "Shop domain not found. Set SHOP_DOMAIN environment variable, "
            "pass --shop-domain, or add 'shop.domain' to config.yml."
        )

    token = (
        access_token
        or os.getenv("SHOP_ACCESS_TOKEN")
        or fb.get("access_token")
    )
    if not token:
        raise ValueError(
            "Shop access token not found. Set SHOP_ACCESS_TOKEN environment "
            "variable or add 'shop.access_token' to config.yml."
        )

    version = (
        api_version
        or os.getenv("SHOP_API_VERSION")
        or fb.get("api_version")
        or "2024-01"
    )

    # --- Sync overrides from env: env > YAML > default ---

    updates: dict = {}
    if read_only:
        updates["read_only_mode"] = True
    else:
        env_read_only = _get_bool_env("CATALOG_READ_ONLY")
        if env_read_only is not None:
            updates["read_only_mode"] = env_read_only

    delay = _get_int_env("CATALOG_RATE_LIMIT_DELAY_MS", 0, 60000)
    if delay is not None:
        updates["rate_limit_delay_ms"] = delay

    retries = _get_int_env("CATALOG_MAX_RETRIES", 0, 20)
    if retries is not None:
        updates["max_retries"] = retries

    if updates:
        settings = settings.model_copy(update=updates)

    config = Config(
        shop_domain=domain.strip(),
        access_token=token.strip(),
        api_version=version.strip(),
        timeout_seconds=float(fb.get("timeout_seconds", 30.0)),
        debug=debug or bool(_get_bool_env("CATALOG_DEBUG")),
        sync=settings,
    )

    validate_config(config)

    return config
