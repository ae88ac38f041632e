"""esi-client - EVE Online SSO login, token refresh and authenticated ESI requests."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("esi-client")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__homepage__ = "https://github.com/esi-client/esi-client"

__all__ = [
    "__version__",
    # Client
    "ESI",
    "Registration",
    # Configuration
    "ESIConfig",
    "load_config",
    # Records
    "Account",
    "Character",
    "Token",
    # Storage
    "Provider",
    "MemoryProvider",
    "EncryptedFileProvider",
    # SSO
    "SingleSignOn",
    "CredentialRefresher",
    # Scopes
    "normalize_scopes",
    "scopes_equal",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("ESI", "Registration"):
        from .client import ESI, Registration
        return {"ESI": ESI, "Registration": Registration}[name]
    elif name in ("ESIConfig", "load_config"):
        from .config import ESIConfig, load_config
        return {"ESIConfig": ESIConfig, "load_config": load_config}[name]
    elif name in ("Account", "Character", "Token"):
        from .records import Account, Character, Token
        return {"Account": Account, "Character": Character, "Token": Token}[name]
    elif name == "Provider":
        from .provider import Provider
        return Provider
    elif name == "MemoryProvider":
        from .providers.memory import MemoryProvider
        return MemoryProvider
    elif name == "EncryptedFileProvider":
        from .providers.encrypted import EncryptedFileProvider
        return EncryptedFileProvider
    elif name == "SingleSignOn":
        from .sso import SingleSignOn
        return SingleSignOn
    elif name == "CredentialRefresher":
        from .credentials import CredentialRefresher
        return CredentialRefresher
    elif name in ("normalize_scopes", "scopes_equal"):
        from .scopes import normalize_scopes, scopes_equal
        return {"normalize_scopes": normalize_scopes, "scopes_equal": scopes_equal}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
