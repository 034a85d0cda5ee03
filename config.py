"""Environment-driven configuration shared by every job."""
from dataclasses import dataclass
from typing import Mapping, Optional


DEFAULT_MTEK_BASE_URL = "https://bcycle.marianatek.com"
DEFAULT_TIMEZONE = "America/Toronto"


class ConfigError(Exception):
    """A required environment variable is missing or malformed."""


def require_env(environ: Mapping[str, str], name: str) -> str:
    """
    Return a required, non-blank environment variable.

    Args:
        environ: Environment mapping (usually os.environ)
        name: Variable name

    Raises:
        ConfigError: If the variable is absent or blank
    """
    value = (environ.get(name) or "").strip()
    if not value:
        raise ConfigError(f"Missing env var: {name}")
    return value


def require_any_env(environ: Mapping[str, str], *names: str) -> str:
    """Return the first non-blank variable among names."""
    for name in names:
        value = (environ.get(name) or "").strip()
        if value:
            return value
    raise ConfigError(f"Missing env var: {' or '.join(names)}")


def get_env(environ: Mapping[str, str], name: str, default: str = "") -> str:
    value = environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = get_env(environ, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Env var {name} must be an integer, got {raw!r}") from None


def get_bool_env(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = get_env(environ, name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ApiConfig:
    """Credentials and endpoints for the two APIs most jobs talk to."""
    airtable_token: str
    airtable_base_id: str
    mtek_token: Optional[str]
    mtek_base_url: str = DEFAULT_MTEK_BASE_URL
    request_timeout: int = 60
    mtek_max_attempts: int = 5

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str],
        *,
        base_id_vars: tuple = ("AIRTABLE_BASE_ID",),
        require_mtek: bool = True,
    ) -> "ApiConfig":
        airtable_token = require_any_env(environ, "AIRTABLE_TOKEN", "AIRTABLE_API_KEY")
        base_id = require_any_env(environ, *base_id_vars)
        if require_mtek:
            mtek_token = require_env(environ, "MTEK_API_TOKEN")
        else:
            mtek_token = get_env(environ, "MTEK_API_TOKEN") or None
        return cls(
            airtable_token=airtable_token,
            airtable_base_id=base_id,
            mtek_token=mtek_token,
            mtek_base_url=normalize_mtek_base_url(
                get_env(environ, "MTEK_BASE_URL", DEFAULT_MTEK_BASE_URL)
            ),
            request_timeout=get_int_env(environ, "REQUEST_TIMEOUT", 60),
            mtek_max_attempts=get_int_env(environ, "MTEK_MAX_ATTEMPTS", 5),
        )


def normalize_mtek_base_url(url: str) -> str:
    """
    Strip trailing slashes and a trailing /api segment.

    Deployments historically configured both "https://x.marianatek.com" and
    "https://x.marianatek.com/api"; the client appends /api itself.
    """
    url = url.strip().rstrip("/")
    if url.endswith("/api"):
        url = url[: -len("/api")]
    return url
