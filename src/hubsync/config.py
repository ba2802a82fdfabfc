"""Runtime configuration for hubsync.

Reads Supabase connection and sync tuning settings from CLI args,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    HUB_SUPABASE_URL: Supabase project URL (required)
    HUB_SUPABASE_KEY: Supabase anon/public API key (required)
    HUB_EMAIL: Account used to sign in (optional)
    HUB_PASSWORD: Password for HUB_EMAIL (optional)
    HUB_INSECURE: Skip SSL verification (optional, default: false)
    HUB_DEBUG: Enable debug logging (optional, default: false)
    HUB_RETRY_ATTEMPTS: Attempts per remote call (optional, default: 3)
    HUB_POLL_INTERVAL: Fallback refresh period in seconds (optional, default: 60)
    HUB_PAGE_SIZE: Rows per page for bulk reads (optional, default: 1000)
    HUB_MAX_PARALLEL_REQUESTS: Max parallel store requests (optional, default: 5)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_PLACEHOLDER_MARKERS = ("your-project", "your_project", "your-")


@dataclass
class Config:
    supabase_url: str
    api_key: str
    email: str | None = None
    password: str | None = None
    insecure: bool = False
    debug: bool = False
    retry_attempts: int = 3
    retry_base_delay: float = 0.3
    retry_factor: float = 2.0
    retry_max_delay: float = 3.0
    realtime: bool = True
    poll_interval: float = 60.0
    initial_refresh_delay: float = 2.0
    page_size: int = 1000
    activity_timeout: float = 1.5
    max_parallel_requests: int = 5
    request_timeout: tuple[float, float] = (10.0, 60.0)


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the URL is malformed, the key is empty, or either
            still holds a template placeholder.
    """
    config.supabase_url = config.supabase_url.strip()

    if _is_placeholder(config.supabase_url):
        raise ValueError(
            f"Supabase URL '{config.supabase_url}' looks like a placeholder. "
            "Set HUB_SUPABASE_URL to your project URL."
        )

    if not config.supabase_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid Supabase URL '{config.supabase_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.supabase_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid Supabase URL '{config.supabase_url}': URL must include a hostname"
        )

    config.supabase_url = config.supabase_url.removesuffix("/")

    if not config.api_key.strip():
        raise ValueError(
            "Supabase API key cannot be empty. Set HUB_SUPABASE_KEY environment variable."
        )
    if _is_placeholder(config.api_key):
        raise ValueError(
            "Supabase API key looks like a placeholder. Set HUB_SUPABASE_KEY."
        )

    if bool(config.email) != bool(config.password):
        raise ValueError(
            "HUB_EMAIL and HUB_PASSWORD must be set together."
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _numeric_setting(
    env_key: str,
    yaml_key: str,
    fb: dict,
    default: float,
    low: float,
    high: float,
    cast=int,
):
    """Resolve a numeric field from env > YAML > default with range checks."""
    raw = os.getenv(env_key)
    if raw is None:
        if yaml_key in fb:
            return cast(fb[yaml_key])
        return default
    message = f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(message) from None
    if not (low <= value <= high):
        raise ValueError(message)
    return value


def load_config(
    url: str | None = None,
    api_key: str | None = None,
    email: str | None = None,
    password: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override Supabase URL.
        api_key: Override Supabase API key.
        email: Override sign-in email.
        password: Override sign-in password.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Merged values from the YAML ``supabase`` and
            ``sync`` sections, used when CLI arg and env var are unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the URL or key is missing after checking all
            sources, or any value fails validation.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML ---

    supabase_url = url or os.getenv("HUB_SUPABASE_URL") or fb.get("url")
    if not supabase_url:
        raise ValueError(
            "Supabase URL not found. Set HUB_SUPABASE_URL environment variable, "
            "pass --url CLI argument, or add 'url' to config.yml."
        )

    key = api_key or os.getenv("HUB_SUPABASE_KEY") or fb.get("api_key")
    if not key:
        raise ValueError(
            "Supabase API key not found. Set HUB_SUPABASE_KEY environment variable, "
            "pass --key CLI argument, or add 'api_key' to config.yml."
        )

    final_email = email or os.getenv("HUB_EMAIL") or fb.get("email")
    final_password = password or os.getenv("HUB_PASSWORD") or fb.get("password")

    # --- Boolean fields: CLI > env > YAML > default ---

    def get_bool_env(key: str) -> bool | None:
        """Return True/False from env var, or None if unset."""
        val = os.getenv(key)
        if val is None:
            return None
        return val.lower() in ("true", "1", "yes", "on")

    if insecure:
        final_insecure = True
    else:
        env_insecure = get_bool_env("HUB_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("HUB_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    config = Config(
        supabase_url=supabase_url.strip(),
        api_key=key.strip(),
        email=final_email.strip() if final_email else None,
        password=final_password if final_password else None,
        insecure=final_insecure,
        debug=final_debug,
        retry_attempts=_numeric_setting(
            "HUB_RETRY_ATTEMPTS", "retry_attempts", fb, 3, 1, 10
        ),
        retry_base_delay=float(fb.get("retry_base_delay", 0.3)),
        retry_factor=float(fb.get("retry_factor", 2.0)),
        retry_max_delay=float(fb.get("retry_max_delay", 3.0)),
        realtime=bool(fb.get("realtime", True)),
        poll_interval=_numeric_setting(
            "HUB_POLL_INTERVAL", "poll_interval", fb, 60.0, 1, 3600, float
        ),
        initial_refresh_delay=float(fb.get("initial_refresh_delay", 2.0)),
        page_size=_numeric_setting(
            "HUB_PAGE_SIZE", "page_size", fb, 1000, 1, 10000
        ),
        activity_timeout=float(fb.get("activity_timeout", 1.5)),
        max_parallel_requests=_numeric_setting(
            "HUB_MAX_PARALLEL_REQUESTS", "max_parallel_requests", fb, 5, 1, 100
        ),
    )

    validate_config(config)

    return config
