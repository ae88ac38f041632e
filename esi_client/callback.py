"""Local HTTP endpoint for the SSO login redirect.

EVE SSO only redirects to the callback URI registered for the
application, so the listener binds to the host, port and path of the
configured ``callback_uri`` (e.g. ``http://localhost:8080/sso``). The first
GET on that path settles the login; anything else (favicon requests, other
paths, other methods) gets an error status and is otherwise ignored.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from .errors import ConfigurationError, ESIError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120

LOCAL_HOSTS = ("localhost", "127.0.0.1")


class CallbackError(ESIError):
    """The login redirect could not be received."""

    pass


class CallbackTimeoutError(CallbackError):
    """No login redirect arrived in time."""

    pass


@dataclass(frozen=True)
class LoginRedirect:
    """Query parameters the SSO appended to the callback URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @property
    def authorized(self) -> bool:
        """True when the SSO handed back an authorization code."""
        return bool(self.code) and self.error is None

    @classmethod
    def from_target(cls, target: str) -> "LoginRedirect":
        """Parse a request target such as ``/sso?code=...&state=...``.

        Repeated parameters keep their first value.
        """
        query = {name: values[0] for name, values in parse_qs(urlparse(target).query).items()}
        return cls(
            code=query.get("code"),
            state=query.get("state"),
            error=query.get("error"),
            error_description=query.get("error_description"),
        )


PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{ font-family: sans-serif; background: #101820; color: #e8e8e8;
               display: flex; align-items: center; justify-content: center;
               height: 100vh; margin: 0; }}
        main {{ background: #1c2833; padding: 32px 48px; border-radius: 8px; }}
    </style>
</head>
<body>
    <main>
        <h1>{title}</h1>
        <p>{message}</p>
    </main>
</body>
</html>"""


def render_page(title: str, message: str) -> str:
    """Render the page shown in the browser after the redirect."""
    return PAGE_TEMPLATE.format(title=html.escape(title), message=html.escape(message))


def _http_response(status: HTTPStatus, body: str, content_type: str = "text/plain; charset=utf-8") -> bytes:
    payload = body.encode("utf-8")
    head = "\r\n".join(
        [
            f"HTTP/1.1 {status.value} {status.phrase}",
            f"Content-Type: {content_type}",
            f"Content-Length: {len(payload)}",
            "Cache-Control: no-store",
            "Connection: close",
            "",
            "",
        ]
    )
    return head.encode("ascii") + payload


class CallbackServer:
    """Waits for a single SSO login redirect.

    Usage:
        async with CallbackServer.from_callback_uri(config.callback_uri) as server:
            webbrowser.open(esi.get_redirect_url(state))
            redirect = await server.wait_for_callback()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8080,
        path: str = "/callback",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.path = path
        self.timeout = timeout

        self._server: asyncio.Server | None = None
        self._redirect: asyncio.Future[LoginRedirect] | None = None

    @classmethod
    def from_callback_uri(cls, callback_uri: str, timeout: float = DEFAULT_TIMEOUT) -> "CallbackServer":
        """Build a listener for the host, port and path of ``callback_uri``.

        Raises:
            ConfigurationError: If the URI is not a local http URL
        """
        parsed = urlparse(callback_uri)
        if parsed.scheme != "http" or parsed.hostname not in LOCAL_HOSTS:
            raise ConfigurationError(
                f"Browser login needs a local http callback_uri, got {callback_uri!r}"
            )
        return cls(
            host="127.0.0.1",
            port=parsed.port or 80,
            path=parsed.path or "/",
            timeout=timeout,
        )

    @property
    def received(self) -> bool:
        """Whether a redirect has been accepted."""
        return self._redirect is not None and self._redirect.done()

    async def start(self) -> None:
        self._redirect = asyncio.get_running_loop().create_future()
        try:
            self._server = await asyncio.start_server(self._serve, self.host, self.port)
        except OSError as e:
            raise CallbackError(f"Could not listen on {self.host}:{self.port}: {e}") from e
        logger.debug(f"Waiting for login redirect on {self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.debug("Callback listener closed")

    async def wait_for_callback(self) -> LoginRedirect:
        """Wait until the browser is redirected back.

        Raises:
            CallbackError: If the listener was never started
            CallbackTimeoutError: If no redirect arrives within the timeout
        """
        if self._redirect is None:
            raise CallbackError("Callback listener not started")

        try:
            return await asyncio.wait_for(asyncio.shield(self._redirect), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"No login redirect received within {self.timeout} seconds"
            ) from None

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            writer.write(await self._respond(reader))
            await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.warning(f"Dropped callback connection: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _respond(self, reader: asyncio.StreamReader) -> bytes:
        """Read one request and settle the login if it is the redirect."""
        request_line = (await reader.readline()).decode("latin-1").split()

        # Drain headers up to the blank line
        while (await reader.readline()).strip():
            pass

        if len(request_line) < 2:
            return _http_response(HTTPStatus.BAD_REQUEST, "Bad request")

        method, target = request_line[0], request_line[1]
        if method != "GET":
            return _http_response(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
        if urlparse(target).path != self.path:
            return _http_response(HTTPStatus.NOT_FOUND, "Not found")

        redirect = LoginRedirect.from_target(target)
        if self._redirect is not None and not self._redirect.done():
            self._redirect.set_result(redirect)

        if redirect.authorized:
            page = render_page("Login successful", "You can close this window and return to the terminal.")
        else:
            page = render_page(
                "Login failed",
                f"{redirect.error or 'unknown_error'}: {redirect.error_description or 'no description'}",
            )
        return _http_response(HTTPStatus.OK, page, content_type="text/html; charset=utf-8")

    async def __aenter__(self) -> "CallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
