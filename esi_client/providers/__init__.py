"""Storage providers for accounts, characters and tokens."""

from .memory import MemoryProvider

__all__ = ["MemoryProvider", "EncryptedFileProvider"]


def __getattr__(name: str) -> object:
    """Lazy import so the in-memory provider does not pull in keyring."""
    if name == "EncryptedFileProvider":
        from .encrypted import EncryptedFileProvider
        return EncryptedFileProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
