"""Config discovery and loading for esi-client."""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from . import __homepage__, __version__
from .errors import ConfigurationError
from .scopes import normalize_scopes

DEFAULT_ENDPOINT = "https://esi.evetech.net/latest"
DEFAULT_SSO_HOST = "login.eveonline.com"
DEFAULT_STORE_DIR = Path.home() / ".cache" / "esi-client"
DEFAULT_USER_AGENT = f"esi-client@{__version__} - {__homepage__}"

BODY_ENCODINGS = ("json", "form")

CONFIG_FILE_NAME = "esi.json"

# Directories to search for the config file, in priority order
CONFIG_SEARCH_DIRS = [
    Path("."),
    Path(".esi"),
    Path.home() / ".config" / "esi-client",
]

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "esi-client" / ".env",
]

# Environment variable -> config field
ENV_VARS = {
    "ESI_CLIENT_ID": "client_id",
    "ESI_SECRET_KEY": "secret_key",
    "ESI_CALLBACK_URI": "callback_uri",
    "ESI_SCOPES": "scopes",
    "ESI_ENDPOINT": "endpoint",
    "ESI_USER_AGENT": "user_agent",
    "ESI_SSO_HOST": "sso_host",
    "ESI_BODY_ENCODING": "body_encoding",
    "ESI_TIMEOUT": "timeout",
    "ESI_EXPIRY_BUFFER": "expiry_buffer",
    "ESI_STORE_DIR": "store_dir",
}


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Missing variables resolve to an empty string.
    """
    if "${" not in value:
        return value

    result = value
    for match in re.finditer(r'\$\{([^}]+)\}', value):
        result = result.replace(match.group(0), os.environ.get(match.group(1), ""))
    return result


@dataclass
class ESIConfig:
    """Complete esi-client configuration.

    Defaults are resolved once here; nothing downstream falls back at
    runtime.
    """

    client_id: str | None = None
    secret_key: str | None = None
    callback_uri: str | None = None
    scopes: frozenset[str] = field(default_factory=frozenset)
    endpoint: str = DEFAULT_ENDPOINT
    user_agent: str | None = None
    sso_host: str = DEFAULT_SSO_HOST
    body_encoding: str = "json"
    timeout: float = 30.0
    expiry_buffer: int = 0
    store_dir: Path = DEFAULT_STORE_DIR
    config_path: Path | None = None
    env_path: Path | None = None

    def __post_init__(self) -> None:
        self.scopes = normalize_scopes(self.scopes)
        self.endpoint = self.endpoint.rstrip("/")
        self.store_dir = Path(self.store_dir).expanduser()
        self.timeout = float(self.timeout)
        self.expiry_buffer = int(self.expiry_buffer)

        if self.body_encoding not in BODY_ENCODINGS:
            raise ConfigurationError(
                f"body_encoding must be one of {', '.join(BODY_ENCODINGS)}, "
                f"got {self.body_encoding!r}"
            )

    @property
    def resolved_user_agent(self) -> str:
        """User-Agent to send, falling back to the package identifier."""
        return self.user_agent or DEFAULT_USER_AGENT

    def has_credentials(self) -> bool:
        """Check whether everything needed to build an SSO client is set."""
        return bool(self.client_id and self.secret_key and self.callback_uri)


def find_config_file(explicit_path: Path | None = None) -> Path | None:
    """Find the esi.json config file."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for search_dir in CONFIG_SEARCH_DIRS:
        candidate = search_dir / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def parse_config_data(data: dict[str, Any]) -> dict[str, Any]:
    """Pick known fields out of config file data, expanding ${VAR} references."""
    values: dict[str, Any] = {}
    for name in ENV_VARS.values():
        if name not in data:
            continue
        value = data[name]
        if isinstance(value, str):
            value = _resolve_env_vars(value)
        elif isinstance(value, list):
            value = [_resolve_env_vars(v) if isinstance(v, str) else v for v in value]
        values[name] = value
    return values


def load_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
) -> ESIConfig:
    """Load configuration from esi.json, .env and ESI_* environment variables.

    Environment variables win over the config file.

    Args:
        config_path: Explicit path to config file (optional)
        env_path: Explicit path to .env file (optional)

    Returns:
        ESIConfig with defaults applied

    Raises:
        ConfigurationError: If the config file is invalid
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    values: dict[str, Any] = {}

    config_file = find_config_file(config_path)
    if config_file:
        try:
            with open(config_file) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config file {config_file} contains invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a JSON object")
        values.update(parse_config_data(data))

    for env_var, name in ENV_VARS.items():
        env_value = os.environ.get(env_var)
        if env_value:
            values[name] = env_value

    try:
        return ESIConfig(**values, config_path=config_file, env_path=env_file)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e
