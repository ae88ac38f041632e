"""Storage provider interface.

A provider persists accounts, characters and tokens. The login flow and
the refresh protocol only talk to storage through this interface, so any
backend (memory, encrypted files, a database) can be plugged in.

Records are immutable; ``update_*`` methods replace the value stored under
the record's identity key:

    Account   -> owner
    Character -> character_id
    Token     -> (character_id, scopes)
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Generic, TypeVar

from .records import Account, Character, Token
from .scopes import ScopesInput

A = TypeVar("A", bound=Account)
C = TypeVar("C", bound=Character)
T = TypeVar("T", bound=Token)


class Provider(ABC, Generic[A, C, T]):
    """Abstract storage backend for accounts, characters and tokens."""

    # Lookups

    @abstractmethod
    async def get_account(self, owner: str, on_login: bool = False) -> A | None:
        """Get an account by owner hash.

        Args:
            owner: The SSO owner hash
            on_login: True when called from the login flow
        """

    @abstractmethod
    async def get_character(self, character_id: int, on_login: bool = False) -> C | None:
        """Get a character by ID.

        Args:
            character_id: The EVE character ID
            on_login: True when called from the login flow
        """

    @abstractmethod
    async def get_token(self, character_id: int, scopes: ScopesInput = None) -> T | None:
        """Get the token of a character whose scope set equals ``scopes``."""

    # Creation

    @abstractmethod
    async def create_account(self, owner: str) -> A:
        """Create and store a new account."""

    @abstractmethod
    async def create_character(self, owner: str, character_id: int, character_name: str) -> C:
        """Create and store a new character."""

    @abstractmethod
    async def create_token(
        self,
        character_id: int,
        access_token: str,
        refresh_token: str,
        expires: datetime,
        scopes: ScopesInput = None,
    ) -> T:
        """Create and store a new token."""

    # Updates

    @abstractmethod
    async def update_character(self, character: C) -> C:
        """Replace the stored character with the same character_id."""

    @abstractmethod
    async def update_token(self, token: T) -> T:
        """Replace the stored token with the same (character_id, scopes)."""

    # Deletion

    @abstractmethod
    async def delete_tokens(self, character_id: int) -> int:
        """Delete every token of a character.

        Returns:
            Number of tokens deleted
        """

    async def delete_token(self, token: T) -> bool:
        """Delete a single token. Returns False if it was not stored."""
        raise NotImplementedError(f"{type(self).__name__} does not support deleting tokens")

    async def delete_character(self, character_id: int) -> bool:
        """Delete a character and its tokens. Returns False if not stored."""
        raise NotImplementedError(f"{type(self).__name__} does not support deleting characters")

    async def delete_account(self, owner: str) -> bool:
        """Delete an account. Returns False if not stored."""
        raise NotImplementedError(f"{type(self).__name__} does not support deleting accounts")

    # Listing

    async def list_characters(self) -> list[C]:
        """List all stored characters."""
        raise NotImplementedError(f"{type(self).__name__} does not support listing characters")

    async def list_tokens(self, character_id: int) -> list[T]:
        """List all tokens of a character."""
        raise NotImplementedError(f"{type(self).__name__} does not support listing tokens")
