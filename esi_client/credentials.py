"""Credential refresh protocol.

Before a token is used, its access token is checked against its expiry.
Expired tokens are refreshed through the SSO refresh grant and written
back to the provider.

Refreshes are single-flighted per token: the first caller to find a token
expired starts the exchange, and callers arriving while it runs await the
same outcome, success or failure, instead of exchanging again. EVE SSO may
rotate the refresh token on every exchange, so two overlapping exchanges
could invalidate each other and lose the refresh token for good; a
rejected refresh token is never sent twice.
"""

import asyncio
import inspect
import logging
from dataclasses import replace
from typing import Awaitable, Callable

from .errors import TokenNotStored
from .provider import Provider
from .records import Token, TokenKey, expiry_from_now
from .sso import SingleSignOn

logger = logging.getLogger(__name__)

# Called with (old_refresh_token, new_refresh_token); may be sync or async
RotationCallback = Callable[[str, str], Awaitable[None] | None]


class CredentialRefresher:
    """Keeps tokens valid, refreshing them through the SSO when expired.

    Usage:
        refresher = CredentialRefresher(provider, sso)
        access_token = await refresher.ensure_valid(token)
    """

    def __init__(
        self,
        provider: Provider,
        sso: SingleSignOn,
        on_refresh_token_rotated: RotationCallback | None = None,
        expiry_buffer: int = 0,
    ):
        """Initialize the refresher.

        Args:
            provider: Storage the refreshed tokens are written back to
            sso: SSO client used for the refresh grant
            on_refresh_token_rotated: Invoked before a rotated refresh token
                replaces the stored one
            expiry_buffer: Seconds before expiry at which a token is treated
                as expired
        """
        self.provider = provider
        self.sso = sso
        self.on_refresh_token_rotated = on_refresh_token_rotated
        self.expiry_buffer = expiry_buffer

        # Refreshes currently running, by token key; removed when settled
        self._inflight: dict[TokenKey, asyncio.Future[Token]] = {}

    async def ensure_valid(self, token: Token, sso: SingleSignOn | None = None) -> str:
        """Return a usable access token, refreshing the token if expired."""
        valid = await self.get_valid_token(token, sso=sso)
        return valid.access_token

    async def get_valid_token(self, token: Token, sso: SingleSignOn | None = None) -> Token:
        """Return the token itself if valid, otherwise a refreshed copy.

        Args:
            token: The token to check
            sso: SSO client overriding the default one for this call

        Returns:
            A token whose access token is not expired

        Raises:
            AuthenticationFailed: If the SSO rejects the refresh token
            TokenNotStored: If the provider no longer holds the token
        """
        if not token.is_expired(self.expiry_buffer):
            logger.debug(f"Token for character {token.character_id} is still valid")
            return token

        key = token.key
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"Joining refresh in progress for character {token.character_id}")
            return await asyncio.shield(pending)

        # No await between lookup and insert, so this is atomic on the loop
        future: asyncio.Future[Token] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            refreshed = await self._refresh_stored(token, sso or self.sso)
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unjoined failure is not logged by asyncio
            future.exception()
            raise
        else:
            future.set_result(refreshed)
            return refreshed
        finally:
            if not future.done():
                future.cancel()
            del self._inflight[key]

    async def _refresh_stored(self, token: Token, sso: SingleSignOn) -> Token:
        """Refresh the provider's copy of a token, unless it is fresh already."""
        stored = await self.provider.get_token(token.character_id, token.scopes)
        if stored is None:
            raise TokenNotStored(
                f"Token for character {token.character_id} is no longer stored; log in again"
            )

        # Another caller may have refreshed it after this token was loaded
        if not stored.is_expired(self.expiry_buffer):
            logger.debug(f"Token for character {token.character_id} was already refreshed")
            return stored

        return await self._refresh(stored, sso)

    async def _refresh(self, token: Token, sso: SingleSignOn) -> Token:
        """Run the refresh grant for a token and persist the result."""
        logger.info(f"Access token for character {token.character_id} expired at {token.expires}, refreshing")

        response = await sso.get_access_token(token.refresh_token, is_refresh_token=True)

        refreshed = replace(
            token,
            access_token=response.access_token,
            expires=expiry_from_now(response.expires_in),
        )

        new_refresh = response.refresh_token
        if new_refresh and new_refresh != token.refresh_token:
            try:
                await self._notify_rotation(token.refresh_token, new_refresh)
            except Exception:
                logger.warning(
                    f"Refresh token rotation callback failed for character {token.character_id}; "
                    f"keeping the previous refresh token"
                )
                await self.provider.update_token(refreshed)
                raise
            refreshed = replace(refreshed, refresh_token=new_refresh)

        stored = await self.provider.update_token(refreshed)
        logger.info(f"Token refreshed for character {token.character_id}")
        return stored

    async def _notify_rotation(self, old: str, new: str) -> None:
        if self.on_refresh_token_rotated is None:
            return

        result = self.on_refresh_token_rotated(old, new)
        if inspect.isawaitable(result):
            await result
