"""Encrypted on-disk storage provider.

Persists accounts, characters and tokens using:
- Fernet symmetric encryption (AES-128-CBC + HMAC)
- OS keyring for encryption key storage (Keychain, libsecret, DPAPI)
- File permissions (0600 files in a 0700 directory)
- File locking so concurrent CLI invocations do not clobber each other

All file I/O runs in a worker thread so provider calls never block the
event loop.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generator, TypeVar

import keyring
from cryptography.fernet import Fernet, InvalidToken

from ..errors import ESIError
from ..provider import Provider
from ..records import Account, Character, Token, make_token
from ..scopes import ScopesInput, format_scopes, normalize_scopes

logger = logging.getLogger(__name__)

R = TypeVar("R")

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)


KEYRING_SERVICE = "esi-client"
KEYRING_USERNAME = "store-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "esi-client"

# All records live in one file so a login is written atomically
STORE_FILE = "store.json"


class StoreError(ESIError):
    """Error in encrypted store operations."""

    pass


class StoreDecryptionError(StoreError):
    """Failed to decrypt the store file.

    The encryption key has changed (keyring cleared, different machine) or
    the file is corrupted. Existing records cannot be read; the caller
    should clear the store and log in again.
    """

    pass


def _derive_fallback_key() -> bytes:
    """Derive a fallback encryption key from machine-specific data.

    Used when keyring is not available. Less secure than keyring but
    still provides encryption at rest.

    Returns:
        32-byte urlsafe-base64 key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "esi")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def _token_key(character_id: int, scopes: frozenset[str]) -> str:
    return f"{character_id}|{format_scopes(scopes)}"


class EncryptedFileProvider(Provider[Account, Character, Token]):
    """Provider storing records in an encrypted JSON file.

    Layout of the decrypted document::

        {
          "accounts":   {"<owner>": {...}},
          "characters": {"<character_id>": {...}},
          "tokens":     {"<character_id>|<sorted scopes>": {...}}
        }
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize the store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self._cipher: Fernet | None = None
        self._using_keyring = False

        self._init_storage()
        self._init_encryption()

    def _init_storage(self) -> None:
        """Create the storage directory with owner-only permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key). "
                f"Records are still encrypted but with reduced security."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def is_using_keyring(self) -> bool:
        """Check if the OS keyring holds the encryption key."""
        return self._using_keyring

    @property
    def store_path(self) -> Path:
        return self.store_dir / STORE_FILE

    # Low-level file access (blocking, run via _run)

    def _load(self) -> dict[str, Any]:
        """Decrypt the store document. Caller holds the file lock."""
        if self._cipher is None:
            raise StoreError("Encryption not initialized")

        filepath = self.store_path
        if not filepath.exists():
            return {"accounts": {}, "characters": {}, "tokens": {}}

        try:
            encrypted = filepath.read_text()
            data: dict[str, Any] = json.loads(
                self._cipher.decrypt(encrypted.encode("ascii")).decode("utf-8")
            )
        except InvalidToken as e:
            raise StoreDecryptionError(
                f"Cannot decrypt {filepath}. The encryption key may have changed. "
                f"Run 'esi reset' to clear stored records and log in again."
            ) from e
        except json.JSONDecodeError as e:
            raise StoreDecryptionError(
                f"Store file {filepath} is corrupted. "
                f"Run 'esi reset' to clear stored records and log in again."
            ) from e

        for section in ("accounts", "characters", "tokens"):
            data.setdefault(section, {})
        return data

    def _save(self, data: dict[str, Any]) -> None:
        """Encrypt and write the store document. Caller holds the file lock."""
        if self._cipher is None:
            raise StoreError("Encryption not initialized")

        filepath = self.store_path
        encrypted = self._cipher.encrypt(json.dumps(data, indent=2).encode("utf-8")).decode("ascii")
        filepath.write_text(encrypted)
        try:
            filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def _read(self) -> dict[str, Any]:
        """Read the store document under a shared lock."""
        with _file_lock(self.store_path, exclusive=False):
            return self._load()

    def _modify(self, change: Callable[[dict[str, Any]], R]) -> R:
        """Read-modify-write under one exclusive lock.

        ``change`` mutates the document in place; its return value is
        passed through.
        """
        with _file_lock(self.store_path, exclusive=True):
            data = self._load()
            result = change(data)
            self._save(data)
        return result

    async def _run(self, func: Callable[..., R], *args: Any) -> R:
        return await asyncio.to_thread(func, *args)

    # Lookups

    async def get_account(self, owner: str, on_login: bool = False) -> Account | None:
        data = await self._run(self._read)
        entry = data["accounts"].get(owner)
        return Account.from_dict(entry) if entry else None

    async def get_character(self, character_id: int, on_login: bool = False) -> Character | None:
        data = await self._run(self._read)
        entry = data["characters"].get(str(character_id))
        return Character.from_dict(entry) if entry else None

    async def get_token(self, character_id: int, scopes: ScopesInput = None) -> Token | None:
        data = await self._run(self._read)
        entry = data["tokens"].get(_token_key(character_id, normalize_scopes(scopes)))
        if entry is None:
            return None

        try:
            return Token.from_dict(entry)
        except (KeyError, ValueError) as e:
            logger.warning(f"Invalid token data for character {character_id}: {e}")
            return None

    # Creation

    async def create_account(self, owner: str) -> Account:
        account = Account(owner=owner)

        def change(data: dict[str, Any]) -> None:
            data["accounts"][owner] = account.to_dict()

        await self._run(self._modify, change)
        logger.debug(f"Stored account {owner}")
        return account

    async def create_character(self, owner: str, character_id: int, character_name: str) -> Character:
        character = Character(character_id=character_id, character_name=character_name, owner=owner)
        return await self.update_character(character)

    async def create_token(
        self,
        character_id: int,
        access_token: str,
        refresh_token: str,
        expires: datetime,
        scopes: ScopesInput = None,
    ) -> Token:
        token = make_token(character_id, access_token, refresh_token, expires, scopes)
        return await self.update_token(token)

    # Updates

    async def update_character(self, character: Character) -> Character:
        def change(data: dict[str, Any]) -> None:
            data["characters"][str(character.character_id)] = character.to_dict()

        await self._run(self._modify, change)
        logger.debug(f"Stored character {character.character_id}")
        return character

    async def update_token(self, token: Token) -> Token:
        def change(data: dict[str, Any]) -> None:
            data["tokens"][_token_key(token.character_id, token.scopes)] = token.to_dict()

        await self._run(self._modify, change)
        logger.debug(f"Stored token for character {token.character_id}")
        return token

    # Deletion

    async def delete_tokens(self, character_id: int) -> int:
        prefix = f"{character_id}|"

        def change(data: dict[str, Any]) -> int:
            keys = [key for key in data["tokens"] if key.startswith(prefix)]
            for key in keys:
                del data["tokens"][key]
            return len(keys)

        deleted = await self._run(self._modify, change)
        logger.debug(f"Deleted {deleted} token(s) for character {character_id}")
        return deleted

    async def delete_token(self, token: Token) -> bool:
        key = _token_key(token.character_id, token.scopes)

        def change(data: dict[str, Any]) -> bool:
            return data["tokens"].pop(key, None) is not None

        return await self._run(self._modify, change)

    async def delete_character(self, character_id: int) -> bool:
        prefix = f"{character_id}|"

        def change(data: dict[str, Any]) -> bool:
            for key in [key for key in data["tokens"] if key.startswith(prefix)]:
                del data["tokens"][key]
            return data["characters"].pop(str(character_id), None) is not None

        return await self._run(self._modify, change)

    async def delete_account(self, owner: str) -> bool:
        def change(data: dict[str, Any]) -> bool:
            return data["accounts"].pop(owner, None) is not None

        return await self._run(self._modify, change)

    # Listing

    async def list_characters(self) -> list[Character]:
        data = await self._run(self._read)
        characters = [Character.from_dict(entry) for entry in data["characters"].values()]
        return sorted(characters, key=lambda c: c.character_id)

    async def list_tokens(self, character_id: int) -> list[Token]:
        data = await self._run(self._read)
        return [
            Token.from_dict(entry)
            for entry in data["tokens"].values()
            if int(entry["character_id"]) == character_id
        ]

    def clear_all(self) -> None:
        """Delete the store file. Use with caution."""
        if self.store_path.exists():
            self.store_path.unlink()
        logger.info("Cleared all stored records")
