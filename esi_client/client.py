"""ESI client: SSO login, identity reconciliation and authenticated requests.

This module provides the main interface of the package. ``ESI.register``
turns an authorization code into stored account, character and token
records; ``ESI.request`` calls the ESI API, refreshing the caller's token
first when it has expired.
"""

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from .config import ESIConfig
from .credentials import CredentialRefresher, RotationCallback
from .errors import ConfigurationError, SerializationError, UnexpectedStatus
from .provider import Provider
from .records import Account, Character, Token, expiry_from_now
from .scopes import ScopesInput, normalize_scopes
from .sso import SingleSignOn

logger = logging.getLogger(__name__)

# Default accepted status codes per method
GET_STATUS_CODES = frozenset({200})
MUTATING_STATUS_CODES = frozenset({200, 201})


@dataclass
class Registration:
    """Records produced by a successful login.

    Callers typically keep ``character.character_id`` in their session and
    look the character and token up again on later requests.
    """

    account: Account
    character: Character
    token: Token


def encode_body(body: Any, encoding: str) -> tuple[bytes, str]:
    """Serialize a request body.

    Args:
        body: The payload to encode
        encoding: "json" or "form"

    Returns:
        Tuple of (encoded bytes, Content-Type)

    Raises:
        SerializationError: If the body cannot be encoded
    """
    if encoding == "json":
        try:
            return json.dumps(body).encode("utf-8"), "application/json"
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Request body is not JSON serializable: {e}") from e

    if encoding == "form":
        if not isinstance(body, Mapping):
            raise SerializationError("Form-encoded bodies must be mappings")
        for key, value in body.items():
            if isinstance(value, Mapping):
                raise SerializationError(f"Form field {key!r} cannot be a nested mapping")
        try:
            return urlencode(body, doseq=True).encode("utf-8"), "application/x-www-form-urlencoded"
        except TypeError as e:
            raise SerializationError(f"Request body cannot be form-encoded: {e}") from e

    raise SerializationError(f"Unknown body encoding {encoding!r}")


class ESI:
    """Client for the EVE Swagger Interface.

    Usage:
        esi = ESI(MemoryProvider(), ESIConfig(client_id=..., secret_key=...,
                                              callback_uri=...))

        # Send the user to the SSO
        url = esi.get_redirect_url(state, "esi-skills.read_skills.v1")

        # On the callback
        registration = await esi.register(code)

        # Later, with a stored token
        response = await esi.request(
            f"/characters/{character_id}/skills/", token=token
        )
        skills = response.json()
    """

    def __init__(
        self,
        provider: Provider,
        config: ESIConfig | None = None,
        sso: SingleSignOn | None = None,
        http_client: httpx.AsyncClient | None = None,
        on_refresh_token_rotated: RotationCallback | None = None,
    ):
        """Initialize the client.

        Args:
            provider: Storage for accounts, characters and tokens
            config: Client configuration (defaults apply when omitted)
            sso: Preconstructed SSO client; built from config when omitted
            http_client: Optional shared HTTP client for ESI requests
            on_refresh_token_rotated: Invoked with (old, new) before a
                rotated refresh token replaces the stored one

        Raises:
            ConfigurationError: If neither sso nor SSO credentials are given
        """
        self.config = config or ESIConfig()

        if sso is None and not self.config.has_credentials():
            raise ConfigurationError(
                "sso or client_id, secret_key and callback_uri need to be set"
            )

        if self.config.user_agent:
            self.user_agent = self.config.user_agent
        elif sso is not None and sso.user_agent:
            self.user_agent = sso.user_agent
        else:
            self.user_agent = self.config.resolved_user_agent

        self.sso = sso or SingleSignOn(
            self.config.client_id,
            self.config.secret_key,
            self.config.callback_uri,
            scopes=self.config.scopes,
            user_agent=self.user_agent,
            host=self.config.sso_host,
            timeout=self.config.timeout,
        )
        self.endpoint = self.config.endpoint
        self.provider = provider
        self.refresher = CredentialRefresher(
            provider,
            self.sso,
            on_refresh_token_rotated=on_refresh_token_rotated,
            expiry_buffer=self.config.expiry_buffer,
        )

        self._http_client = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        self._owns_http_client = http_client is None

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "ESI":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def get_redirect_url(
        self,
        state: str,
        scopes: ScopesInput = None,
        sso: SingleSignOn | None = None,
    ) -> str:
        """Build the SSO authorization URL for a login."""
        return (sso or self.sso).get_redirect_url(state, scopes)

    async def register(
        self,
        code: str,
        is_refresh_token: bool = False,
        scopes: ScopesInput = None,
        sso: SingleSignOn | None = None,
    ) -> Registration:
        """Exchange a code for tokens and reconcile the stored records.

        1. Exchange the code with the SSO
        2. Create the account if the owner is new
        3. Create the character, or update its owner and name if they
           changed; an owner change deletes all of its tokens first
        4. Create a token for the granted scope set, or update the
           existing one in place

        Args:
            code: Authorization code (or refresh token when is_refresh_token)
            is_refresh_token: Exchange a refresh token instead of a code
            scopes: Scopes to request on a refresh exchange
            sso: SSO client overriding the default one for this call

        Returns:
            Registration with the account, character and token

        Raises:
            AuthenticationFailed: If the SSO rejects the code
        """
        response = await (sso or self.sso).get_access_token(code, is_refresh_token, scopes)

        claims = response.decoded_access_token
        owner = claims.owner
        character_id = claims.character_id
        expires = expiry_from_now(response.expires_in)
        provider = self.provider

        account = await provider.get_account(owner, on_login=True)
        if account is None:
            account = await provider.create_account(owner)
            logger.info(f"Created account {owner}")

        character = await provider.get_character(character_id, on_login=True)
        if character is None:
            character = await provider.create_character(owner, character_id, claims.name)
            logger.info(f"Created character {character_id} ({claims.name})")
        elif character.owner != account.owner or character.character_name != claims.name:
            if character.owner != account.owner:
                deleted = await provider.delete_tokens(character_id)
                logger.info(
                    f"Character {character_id} changed owner; deleted {deleted} token(s)"
                )
            character = await provider.update_character(
                replace(character, owner=owner, character_name=claims.name)
            )

        granted = normalize_scopes(claims.scopes)
        # A refresh exchange does not return a new refresh token unless rotated
        refresh_token = response.refresh_token or (code if is_refresh_token else None)

        token = await provider.get_token(character_id, granted)
        if token is None:
            token = await provider.create_token(
                character_id,
                response.access_token,
                refresh_token or "",
                expires,
                granted,
            )
            logger.info(f"Created token for character {character_id}")
        else:
            token = await provider.update_token(
                token.with_credentials(response.access_token, refresh_token or token.refresh_token, expires)
            )
            logger.debug(f"Updated token for character {character_id}")

        return Registration(account=account, character=character, token=token)

    async def request(
        self,
        uri: str,
        query: Mapping[str, Any] | None = None,
        body: Any = None,
        *,
        method: str | None = None,
        status_codes: set[int] | frozenset[int] | list[int] | None = None,
        headers: Mapping[str, str] | None = None,
        token: Token | None = None,
        sso: SingleSignOn | None = None,
        encoding: str | None = None,
    ) -> httpx.Response:
        """Send a request to the ESI API.

        Args:
            uri: Path relative to the configured endpoint
            query: Query string parameters
            body: Request payload
            method: HTTP method (default POST with a body, GET otherwise)
            status_codes: Accepted status codes (default {200} for GET,
                {200, 201} otherwise)
            headers: Extra request headers
            token: Token to authenticate with; refreshed first if expired
            sso: SSO client to refresh with
            encoding: Body encoding, "json" or "form" (default from config)

        Returns:
            The httpx response; call .json() to parse the body

        Raises:
            SerializationError: If the body cannot be encoded
            UnexpectedStatus: If the response status is not accepted
            AuthenticationFailed: If the token cannot be refreshed
        """
        method = (method or ("POST" if body is not None else "GET")).upper()
        accepted = frozenset(status_codes) if status_codes else (
            GET_STATUS_CODES if method == "GET" else MUTATING_STATUS_CODES
        )

        request_headers: dict[str, str] = dict(headers or {})
        request_headers["User-Agent"] = self.user_agent

        content: bytes | None = None
        if body is not None:
            content, content_type = encode_body(body, encoding or self.config.body_encoding)
            request_headers["Content-Type"] = content_type

        if token is not None:
            access_token = await self.refresher.ensure_valid(token, sso=sso)
            request_headers["Authorization"] = f"Bearer {access_token}"

        url = f"{self.endpoint}{uri}"
        if query:
            url = f"{url}?{urlencode(query, doseq=True)}"

        logger.debug(f"{method} {url}")
        response = await self._http_client.request(method, url, content=content, headers=request_headers)

        if response.status_code not in accepted:
            raise UnexpectedStatus(response.status_code, response.text, response)

        return response
