"""Exception hierarchy for esi-client."""

from typing import Any


class ESIError(Exception):
    """Base class for all esi-client errors."""

    pass


class ConfigurationError(ESIError):
    """Required configuration is missing or invalid."""

    pass


class SSOError(ESIError):
    """The SSO token endpoint could not be reached or failed server-side."""

    pass


class AuthenticationFailed(SSOError):
    """The SSO rejected an authorization code or refresh token.

    Retrying with the same credential cannot succeed; the user has to log
    in again.
    """

    pass


class SerializationError(ESIError):
    """A request body could not be encoded."""

    pass


class UnexpectedStatus(ESIError):
    """An ESI response had a status code outside the accepted set.

    Attributes:
        status_code: The HTTP status returned
        body: The raw response body text
        response: The underlying httpx response
    """

    def __init__(self, status_code: int, body: str, response: Any = None):
        self.status_code = status_code
        self.body = body
        self.response = response
        super().__init__(f"Unexpected status code {status_code}")


class TokenNotStored(ESIError):
    """A token was presented for refresh but its provider no longer holds it.

    The token was deleted (logout, or a change of character owner) after the
    caller loaded it; the character has to log in again.
    """

    pass
