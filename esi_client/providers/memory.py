"""In-memory storage provider.

Keeps everything in dictionaries for the life of the process. Useful for
tests, scripts and web apps that do not need tokens to survive a restart.
"""

from datetime import datetime

from ..provider import Provider
from ..records import Account, Character, Token, TokenKey, make_token
from ..scopes import ScopesInput, normalize_scopes


class MemoryProvider(Provider[Account, Character, Token]):
    """Provider backed by plain dictionaries."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.characters: dict[int, Character] = {}
        self.tokens: dict[TokenKey, Token] = {}

    async def get_account(self, owner: str, on_login: bool = False) -> Account | None:
        return self.accounts.get(owner)

    async def get_character(self, character_id: int, on_login: bool = False) -> Character | None:
        return self.characters.get(character_id)

    async def get_token(self, character_id: int, scopes: ScopesInput = None) -> Token | None:
        return self.tokens.get((character_id, normalize_scopes(scopes)))

    async def create_account(self, owner: str) -> Account:
        account = Account(owner=owner)
        self.accounts[owner] = account
        return account

    async def create_character(self, owner: str, character_id: int, character_name: str) -> Character:
        character = Character(
            character_id=character_id,
            character_name=character_name,
            owner=owner,
        )
        self.characters[character_id] = character
        return character

    async def create_token(
        self,
        character_id: int,
        access_token: str,
        refresh_token: str,
        expires: datetime,
        scopes: ScopesInput = None,
    ) -> Token:
        token = make_token(character_id, access_token, refresh_token, expires, scopes)
        self.tokens[token.key] = token
        return token

    async def update_character(self, character: Character) -> Character:
        self.characters[character.character_id] = character
        return character

    async def update_token(self, token: Token) -> Token:
        self.tokens[token.key] = token
        return token

    async def delete_tokens(self, character_id: int) -> int:
        keys = [key for key in self.tokens if key[0] == character_id]
        for key in keys:
            del self.tokens[key]
        return len(keys)

    async def delete_token(self, token: Token) -> bool:
        return self.tokens.pop(token.key, None) is not None

    async def delete_character(self, character_id: int) -> bool:
        await self.delete_tokens(character_id)
        return self.characters.pop(character_id, None) is not None

    async def delete_account(self, owner: str) -> bool:
        return self.accounts.pop(owner, None) is not None

    async def list_characters(self) -> list[Character]:
        return sorted(self.characters.values(), key=lambda c: c.character_id)

    async def list_tokens(self, character_id: int) -> list[Token]:
        return [token for key, token in self.tokens.items() if key[0] == character_id]
