"""EVE Online Single Sign-On (OAuth 2.0 v2 endpoints).

Builds authorization URLs and exchanges authorization codes or refresh
tokens for access tokens. The access token is a JWT whose payload carries
the character identity; it is decoded here so the login flow can
reconcile accounts and characters without another round trip.
"""

import base64
import binascii
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx

from .errors import AuthenticationFailed, ConfigurationError, SSOError
from .scopes import ScopesInput, format_scopes, normalize_scopes

logger = logging.getLogger(__name__)

DEFAULT_SSO_HOST = "login.eveonline.com"
AUTHORIZE_PATH = "/v2/oauth/authorize"
TOKEN_PATH = "/v2/oauth/token"


def generate_state() -> str:
    """Generate a random state parameter for CSRF protection."""
    return secrets.token_hex(16)


def decode_jwt_payload(token: str) -> dict[str, Any]:
    """Decode the payload segment of a JWT without verifying it.

    Raises:
        AuthenticationFailed: If the token is not a well-formed JWT
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise AuthenticationFailed("Access token is not a JWT")

    payload = parts[1]
    payload += "=" * (-len(payload) % 4)

    try:
        decoded: dict[str, Any] = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AuthenticationFailed(f"Access token payload could not be decoded: {e}") from e

    if not isinstance(decoded, dict):
        raise AuthenticationFailed("Access token payload is not a JSON object")
    return decoded


@dataclass
class AccessTokenClaims:
    """Identity claims carried by an SSO access token.

    Attributes:
        owner: Owner hash; changes when the character is transferred
        sub: Composite subject, e.g. "CHARACTER:EVE:2112625428"
        name: Character display name
        scopes: Granted scopes
        exp: Expiry as a Unix timestamp
    """

    owner: str
    sub: str
    name: str
    scopes: frozenset[str] = field(default_factory=frozenset)
    exp: int | None = None

    @property
    def character_id(self) -> int:
        """Character ID parsed from the last segment of the subject."""
        try:
            return int(self.sub.rsplit(":", 1)[-1])
        except ValueError as e:
            raise AuthenticationFailed(f"Unexpected subject claim: {self.sub!r}") from e

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessTokenClaims":
        """Build claims from a decoded JWT payload.

        ``scp`` is a string for single-scope grants, a list otherwise, and
        missing when no scopes were requested.
        """
        try:
            return cls(
                owner=payload["owner"],
                sub=payload["sub"],
                name=payload["name"],
                scopes=normalize_scopes(payload.get("scp")),
                exp=payload.get("exp"),
            )
        except KeyError as e:
            raise AuthenticationFailed(f"Access token is missing claim {e}") from e


@dataclass
class TokenResponse:
    """Parsed token endpoint response."""

    access_token: str
    refresh_token: str | None
    expires_in: int
    decoded_access_token: AccessTokenClaims
    token_type: str = "Bearer"

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenResponse":
        try:
            access_token = data["access_token"]
            expires_in = int(data["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise SSOError(f"Malformed token response: {e}") from e

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_in=expires_in,
            decoded_access_token=AccessTokenClaims.from_payload(decode_jwt_payload(access_token)),
            token_type=data.get("token_type", "Bearer"),
        )


def _error_detail(response: httpx.Response) -> str:
    # Only extract the standard error fields; the raw body may echo secrets
    try:
        error_data = response.json()
        return f": {error_data.get('error', '')} - {error_data.get('error_description', '')}"
    except Exception:
        return ""


class SingleSignOn:
    """Client for the EVE SSO authorization and token endpoints.

    Usage:
        sso = SingleSignOn(client_id, secret_key, "http://localhost:8080/sso")
        url = sso.get_redirect_url(state, "esi-skills.read_skills.v1")
        response = await sso.get_access_token(code)
    """

    def __init__(
        self,
        client_id: str | None,
        secret_key: str | None,
        callback_uri: str | None,
        scopes: ScopesInput = None,
        user_agent: str | None = None,
        host: str = DEFAULT_SSO_HOST,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the SSO client.

        Args:
            client_id: Application client ID
            secret_key: Application secret key
            callback_uri: Callback URI registered for the application
            scopes: Default scopes for authorization URLs
            user_agent: User-Agent sent to the SSO
            host: SSO host name
            http_client: Optional shared HTTP client
            timeout: Timeout for requests made with an internal client

        Raises:
            ConfigurationError: If any credential is missing
        """
        if not client_id or not secret_key or not callback_uri:
            raise ConfigurationError("client_id, secret_key and callback_uri must all be set")

        self.client_id = client_id
        self.secret_key = secret_key
        self.callback_uri = callback_uri
        self.scopes = normalize_scopes(scopes)
        self.user_agent = user_agent
        self.host = host
        self.timeout = timeout
        self._http_client = http_client

    @property
    def token_url(self) -> str:
        return f"https://{self.host}{TOKEN_PATH}"

    def get_redirect_url(self, state: str, scopes: ScopesInput = None) -> str:
        """Build the authorization URL to send the user to.

        Args:
            state: Opaque value echoed back on the callback
            scopes: Scopes to request (defaults to the configured scopes)

        Returns:
            Complete authorization URL
        """
        requested = normalize_scopes(scopes) or self.scopes

        params: dict[str, str] = {
            "response_type": "code",
            "redirect_uri": self.callback_uri,
            "client_id": self.client_id,
        }
        if requested:
            params["scope"] = format_scopes(requested)
        params["state"] = state

        return f"https://{self.host}{AUTHORIZE_PATH}?{urlencode(params)}"

    def _auth_header(self) -> str:
        credentials = f"{self.client_id}:{self.secret_key}".encode("utf-8")
        return f"Basic {base64.b64encode(credentials).decode('ascii')}"

    async def get_access_token(
        self,
        code: str,
        is_refresh_token: bool = False,
        scopes: ScopesInput = None,
    ) -> TokenResponse:
        """Exchange an authorization code or refresh token for tokens.

        Args:
            code: Authorization code, or refresh token when is_refresh_token
            is_refresh_token: Use the refresh_token grant instead of authorization_code
            scopes: Optional narrower scope set for a refresh grant

        Returns:
            TokenResponse with the decoded access token claims

        Raises:
            AuthenticationFailed: If the SSO rejects the code or refresh token
            SSOError: On network errors or server-side failures
        """
        if is_refresh_token:
            form: dict[str, str] = {"grant_type": "refresh_token", "refresh_token": code}
            requested = normalize_scopes(scopes)
            if requested:
                form["scope"] = format_scopes(requested)
        else:
            form = {"grant_type": "authorization_code", "code": code}

        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Host": self.host,
        }
        if self.user_agent:
            headers["User-Agent"] = self.user_agent

        grant = form["grant_type"]
        http = self._http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self._http_client is None

        try:
            response = await http.post(self.token_url, data=form, headers=headers)
        except httpx.RequestError as e:
            raise SSOError(f"Network error during {grant} exchange: {e}") from e
        finally:
            if should_close:
                await http.aclose()

        if 400 <= response.status_code < 500:
            raise AuthenticationFailed(
                f"SSO rejected {grant} grant (HTTP {response.status_code}){_error_detail(response)}"
            )
        if response.status_code != 200:
            raise SSOError(
                f"SSO {grant} exchange failed (HTTP {response.status_code}){_error_detail(response)}"
            )

        logger.debug(f"SSO {grant} exchange succeeded")
        return TokenResponse.from_response(response.json())
