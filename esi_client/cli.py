"""CLI entry point for esi-client."""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import webbrowser
from pathlib import Path
from typing import Any, NoReturn

import click

from . import __version__
from .callback import CallbackError, CallbackServer
from .client import ESI, Registration
from .config import ESIConfig, load_config
from .errors import (
    AuthenticationFailed,
    ConfigurationError,
    ESIError,
    TokenNotStored,
    UnexpectedStatus,
)
from .output import OutputHandler, format_expiry
from .providers.encrypted import EncryptedFileProvider, StoreDecryptionError
from .records import Token
from .scopes import format_scopes
from .sso import SingleSignOn, generate_state

logger = logging.getLogger("esi")


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to esi.json config file")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--store-dir", "store_dir", type=click.Path(file_okay=False), help="Directory for stored tokens")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    json_mode: bool,
    config_path: str | None,
    env_path: str | None,
    store_dir: str | None,
    verbose: bool,
) -> None:
    """esi - Log in with EVE SSO and call ESI with stored tokens."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["store_dir"] = Path(store_dir) if store_dir else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> ESIConfig | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        config = load_config(ctx.obj["config_path"], ctx.obj["env_path"])
    except ConfigurationError as e:
        output.error(e, help_text="Check esi.json and the ESI_* environment variables.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error

    if ctx.obj["store_dir"] is not None:
        config.store_dir = ctx.obj["store_dir"]
    return config


def get_provider(ctx: click.Context, config: ESIConfig) -> EncryptedFileProvider:
    """Open the encrypted token store."""
    return EncryptedFileProvider(store_dir=config.store_dir)


CREDENTIALS_HELP = (
    "Set ESI_CLIENT_ID, ESI_SECRET_KEY and ESI_CALLBACK_URI, "
    "or add client_id, secret_key and callback_uri to esi.json."
)


def get_client(ctx: click.Context, config: ESIConfig) -> ESI:
    """Build an ESI client, reporting missing credentials."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return ESI(get_provider(ctx, config), config)
    except ConfigurationError as e:
        output.error(e, help_text=CREDENTIALS_HELP)
        raise SystemExit(1)


def get_sso(ctx: click.Context, config: ESIConfig) -> SingleSignOn:
    """Build just the SSO client, for commands that never touch storage or ESI."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return SingleSignOn(
            config.client_id,
            config.secret_key,
            config.callback_uri,
            scopes=config.scopes,
            user_agent=config.resolved_user_agent,
            host=config.sso_host,
            timeout=config.timeout,
        )
    except ConfigurationError as e:
        output.error(e, help_text=CREDENTIALS_HELP)
        raise SystemExit(1)


def handle_error(output: OutputHandler, error: Exception) -> NoReturn:
    """Report an ESI error with a hint matching its kind."""
    if isinstance(error, AuthenticationFailed):
        output.error(error, help_text="The SSO rejected the credentials. Run 'esi login' again.")
    elif isinstance(error, TokenNotStored):
        output.error(error, help_text="The token was removed from the store. Run 'esi login' again.")
    elif isinstance(error, UnexpectedStatus):
        output.error(error, help_text=error.body)
    elif isinstance(error, StoreDecryptionError):
        output.error(error, help_text="Run 'esi reset' to clear stored records.")
    else:
        output.error(error)
    raise SystemExit(1)


def registration_to_dict(registration: Registration) -> dict[str, Any]:
    """Non-secret summary of a registration."""
    token = registration.token
    return {
        "owner": registration.account.owner,
        "character_id": registration.character.character_id,
        "character_name": registration.character.character_name,
        "scopes": sorted(token.scopes),
        "expires": token.expires.isoformat(),
    }


def parse_query(pairs: tuple[str, ...]) -> dict[str, list[str]]:
    """Parse repeated key=value options into a query mapping."""
    query: dict[str, list[str]] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--query")
        query.setdefault(key, []).append(value)
    return query


@main.command()
@click.option("--state", default=None, help="State value (random if omitted)")
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.pass_context
def url(ctx: click.Context, state: str | None, scopes: tuple[str, ...]) -> None:
    """Print the SSO authorization URL."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    sso = get_sso(ctx, config)

    state = state or generate_state()
    redirect_url = sso.get_redirect_url(state, scopes or None)
    output.success({"url": redirect_url, "state": state}, human_message=redirect_url)


async def _login(
    esi: ESI,
    config: ESIConfig,
    output: OutputHandler,
    scopes: tuple[str, ...],
    timeout: int,
    open_browser: bool,
) -> Registration:
    state = generate_state()

    async with esi:
        async with CallbackServer.from_callback_uri(config.callback_uri or "", timeout=timeout) as server:
            auth_url = esi.get_redirect_url(state, scopes or None)
            output.status(f"Waiting for SSO callback on {config.callback_uri}")

            if not open_browser or not webbrowser.open(auth_url):
                output.status(f"Open this URL to log in:\n{auth_url}")

            redirect = await server.wait_for_callback()

        if not redirect.authorized:
            raise CallbackError(f"Login failed: {redirect.error} - {redirect.error_description}")

        if not hmac.compare_digest(redirect.state or "", state):
            raise CallbackError("State mismatch in login redirect, possible CSRF attempt")

        output.status("Exchanging code for tokens...")
        return await esi.register(redirect.code or "")


@main.command()
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.option("--timeout", default=120, help="Seconds to wait for the browser callback")
@click.option("--no-browser", is_flag=True, help="Print the login URL instead of opening a browser")
@click.pass_context
def login(ctx: click.Context, scopes: tuple[str, ...], timeout: int, no_browser: bool) -> None:
    """Log in through the browser and store the character's token."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    esi = get_client(ctx, config)

    try:
        registration = asyncio.run(_login(esi, config, output, scopes, timeout, not no_browser))
    except ESIError as e:
        handle_error(output, e)

    data = registration_to_dict(registration)
    output.success(data, human_message=f"Logged in as {data['character_name']} ({data['character_id']})")


async def _register(esi: ESI, code: str) -> Registration:
    async with esi:
        return await esi.register(code)


@main.command()
@click.argument("code")
@click.pass_context
def register(ctx: click.Context, code: str) -> None:
    """Exchange an authorization CODE obtained elsewhere."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    esi = get_client(ctx, config)

    try:
        registration = asyncio.run(_register(esi, code))
    except ESIError as e:
        handle_error(output, e)

    data = registration_to_dict(registration)
    output.success(data, human_message=f"Registered {data['character_name']} ({data['character_id']})")


async def _list_tokens(provider: EncryptedFileProvider) -> list[list[str]]:
    rows: list[list[str]] = []
    for character in await provider.list_characters():
        tokens = await provider.list_tokens(character.character_id)
        if not tokens:
            rows.append([str(character.character_id), character.character_name, "-", "-"])
        for token in tokens:
            rows.append([
                str(character.character_id),
                character.character_name,
                format_scopes(token.scopes) or "(none)",
                format_expiry(token.expires),
            ])
    return rows


@main.command()
@click.pass_context
def characters(ctx: click.Context) -> None:
    """List stored characters and their tokens."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    provider = get_provider(ctx, config)

    try:
        rows = asyncio.run(_list_tokens(provider))
    except ESIError as e:
        handle_error(output, e)

    if not rows and not output.json_mode:
        output.success([], human_message="No stored characters. Run 'esi login' first.")
        return
    output.table(["ID", "Character", "Scopes", "Access token expires"], rows)


async def _find_token(
    provider: EncryptedFileProvider,
    character_id: int,
    scopes: tuple[str, ...],
) -> Token:
    if scopes:
        token = await provider.get_token(character_id, scopes)
        if token is None:
            raise ESIError(
                f"No token for character {character_id} with scopes {format_scopes(scopes)}"
            )
        return token

    tokens = await provider.list_tokens(character_id)
    if not tokens:
        raise ESIError(f"No token stored for character {character_id}")
    if len(tokens) > 1:
        raise ESIError(
            f"Character {character_id} has {len(tokens)} tokens; pick one with --scope"
        )
    return tokens[0]


async def _request(
    esi: ESI,
    uri: str,
    query: dict[str, list[str]],
    body: Any,
    method: str | None,
    status_codes: tuple[int, ...],
    character_id: int | None,
    scopes: tuple[str, ...],
) -> tuple[int, Any]:
    async with esi:
        token = None
        if character_id is not None:
            token = await _find_token(esi.provider, character_id, scopes)  # type: ignore[arg-type]

        response = await esi.request(
            uri,
            query or None,
            body,
            method=method,
            status_codes=set(status_codes) or None,
            token=token,
        )
        data = response.json() if response.content else None
        return response.status_code, data


@main.command()
@click.argument("uri")
@click.option("--character-id", "-c", type=int, default=None, help="Authenticate as this character")
@click.option("--scope", "scopes", multiple=True, help="Select the token with these scopes (repeatable)")
@click.option("--method", "-X", default=None, help="HTTP method (default GET, POST with --data)")
@click.option("--query", "-q", "query_pairs", multiple=True, help="Query parameter key=value (repeatable)")
@click.option("--data", "-d", "data", default=None, help="JSON request body")
@click.option("--status", "status_codes", type=int, multiple=True, help="Accepted status code (repeatable)")
@click.pass_context
def request(
    ctx: click.Context,
    uri: str,
    character_id: int | None,
    scopes: tuple[str, ...],
    method: str | None,
    query_pairs: tuple[str, ...],
    data: str | None,
    status_codes: tuple[int, ...],
) -> None:
    """Send a request to ESI and print the JSON response."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    esi = get_client(ctx, config)

    query = parse_query(query_pairs)

    body = None
    if data is not None:
        try:
            body = json.loads(data)
        except json.JSONDecodeError as e:
            output.error(e, error_type="InvalidBody", help_text="--data must be valid JSON.")
            return

    try:
        status, payload = asyncio.run(
            _request(esi, uri, query, body, method, status_codes, character_id, scopes)
        )
    except ESIError as e:
        handle_error(output, e)

    output.success(payload, human_message=json.dumps(payload, indent=2) if payload is not None else f"HTTP {status}")


async def _logout(provider: EncryptedFileProvider, character_id: int, remove_character: bool) -> int:
    if remove_character:
        tokens = await provider.list_tokens(character_id)
        await provider.delete_character(character_id)
        return len(tokens)
    return await provider.delete_tokens(character_id)


@main.command()
@click.argument("character_id", type=int)
@click.option("--all", "remove_character", is_flag=True, help="Also forget the character record")
@click.pass_context
def logout(ctx: click.Context, character_id: int, remove_character: bool) -> None:
    """Delete stored tokens of CHARACTER_ID."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    provider = get_provider(ctx, config)

    try:
        deleted = asyncio.run(_logout(provider, character_id, remove_character))
    except ESIError as e:
        handle_error(output, e)

    output.success(
        {"character_id": character_id, "deleted_tokens": deleted},
        human_message=f"Deleted {deleted} token(s) for character {character_id}",
    )


@main.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx: click.Context, yes: bool) -> None:
    """Delete all stored accounts, characters and tokens."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    if not yes and not click.confirm("Delete all stored records?"):
        output.success({"cleared": False}, human_message="Aborted")
        return

    get_provider(ctx, config).clear_all()
    output.success({"cleared": True}, human_message="Cleared all stored records")


if __name__ == "__main__":
    main()
