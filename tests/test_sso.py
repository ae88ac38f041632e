"""Tests for the SSO client."""

import base64
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from esi_client.errors import AuthenticationFailed, ConfigurationError, SSOError
from esi_client.sso import (
    AccessTokenClaims,
    SingleSignOn,
    TokenResponse,
    decode_jwt_payload,
    generate_state,
)


def _payload(**overrides):
    payload = {
        "owner": "o1",
        "sub": "CHARACTER:EVE:2112625428",
        "name": "Jane Doe",
        "scp": ["esi-skills.read_skills.v1", "esi-wallet.read_character_wallet.v1"],
        "exp": 1700000000,
    }
    payload.update(overrides)
    return payload


def _sso_with(handler, **kwargs) -> SingleSignOn:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SingleSignOn(
        "client-id",
        "secret-key",
        "http://localhost:8080/sso",
        http_client=http_client,
        **kwargs,
    )


class TestConstruction:
    """Tests for SingleSignOn construction."""

    @pytest.mark.parametrize(
        "client_id,secret_key,callback_uri",
        [
            (None, "secret", "http://localhost/cb"),
            ("id", "", "http://localhost/cb"),
            ("id", "secret", None),
        ],
    )
    def test_missing_credentials(self, client_id, secret_key, callback_uri) -> None:
        with pytest.raises(ConfigurationError):
            SingleSignOn(client_id, secret_key, callback_uri)

    def test_default_scopes_normalized(self) -> None:
        sso = SingleSignOn("id", "secret", "http://localhost/cb", scopes="b a")
        assert sso.scopes == frozenset({"a", "b"})


class TestRedirectUrl:
    """Tests for get_redirect_url."""

    def test_contains_required_params(self) -> None:
        sso = SingleSignOn("id", "secret", "http://localhost:8080/sso")
        url = urlparse(sso.get_redirect_url("xyz", "b a"))
        params = parse_qs(url.query)

        assert url.scheme == "https"
        assert url.netloc == "login.eveonline.com"
        assert url.path == "/v2/oauth/authorize"
        assert params["response_type"] == ["code"]
        assert params["redirect_uri"] == ["http://localhost:8080/sso"]
        assert params["client_id"] == ["id"]
        assert params["scope"] == ["a b"]
        assert params["state"] == ["xyz"]

    def test_falls_back_to_default_scopes(self) -> None:
        sso = SingleSignOn("id", "secret", "http://localhost/cb", scopes=["x"])
        params = parse_qs(urlparse(sso.get_redirect_url("s")).query)
        assert params["scope"] == ["x"]

    def test_omits_scope_when_none(self) -> None:
        sso = SingleSignOn("id", "secret", "http://localhost/cb")
        params = parse_qs(urlparse(sso.get_redirect_url("s")).query)
        assert "scope" not in params

    def test_custom_host(self) -> None:
        sso = SingleSignOn("id", "secret", "http://localhost/cb", host="login.example.test")
        assert sso.get_redirect_url("s").startswith("https://login.example.test/v2/oauth/authorize?")


class TestJwt:
    """Tests for JWT payload decoding and claims."""

    def test_decode_payload(self, make_jwt) -> None:
        assert decode_jwt_payload(make_jwt({"a": 1})) == {"a": 1}

    def test_decode_not_a_jwt(self) -> None:
        with pytest.raises(AuthenticationFailed):
            decode_jwt_payload("not-a-jwt")

    def test_decode_garbage_payload(self) -> None:
        with pytest.raises(AuthenticationFailed):
            decode_jwt_payload("a.!!!!.c")

    def test_character_id_from_sub(self) -> None:
        claims = AccessTokenClaims.from_payload(_payload())
        assert claims.character_id == 2112625428

    def test_bad_sub(self) -> None:
        claims = AccessTokenClaims.from_payload(_payload(sub="CHARACTER:EVE:abc"))
        with pytest.raises(AuthenticationFailed):
            _ = claims.character_id

    def test_single_scope_string(self) -> None:
        claims = AccessTokenClaims.from_payload(_payload(scp="esi-skills.read_skills.v1"))
        assert claims.scopes == frozenset({"esi-skills.read_skills.v1"})

    def test_missing_scp(self) -> None:
        payload = _payload()
        del payload["scp"]
        assert AccessTokenClaims.from_payload(payload).scopes == frozenset()

    def test_missing_claim(self) -> None:
        payload = _payload()
        del payload["owner"]
        with pytest.raises(AuthenticationFailed, match="owner"):
            AccessTokenClaims.from_payload(payload)

    def test_token_response_from_response(self, make_jwt) -> None:
        response = TokenResponse.from_response(
            {
                "access_token": make_jwt(_payload()),
                "refresh_token": "r",
                "expires_in": "1199",
                "token_type": "Bearer",
            }
        )
        assert response.expires_in == 1199
        assert response.refresh_token == "r"
        assert response.decoded_access_token.name == "Jane Doe"

    def test_token_response_malformed(self) -> None:
        with pytest.raises(SSOError):
            TokenResponse.from_response({"refresh_token": "r"})


class TestGetAccessToken:
    """Tests for the token exchange."""

    @pytest.mark.asyncio
    async def test_authorization_code_grant(self, make_jwt) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": make_jwt(_payload()),
                    "refresh_token": "refresh-1",
                    "expires_in": 1199,
                },
            )

        sso = _sso_with(handler, user_agent="agent/1.0")
        response = await sso.get_access_token("abc123")

        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "https://login.eveonline.com/v2/oauth/token"
        assert parse_qs(request.content.decode()) == {
            "grant_type": ["authorization_code"],
            "code": ["abc123"],
        }
        expected_auth = base64.b64encode(b"client-id:secret-key").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert request.headers["Host"] == "login.eveonline.com"
        assert request.headers["User-Agent"] == "agent/1.0"

        assert response.refresh_token == "refresh-1"
        assert response.decoded_access_token.character_id == 2112625428

    @pytest.mark.asyncio
    async def test_refresh_grant(self, make_jwt) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(
                200,
                json={"access_token": make_jwt(_payload()), "expires_in": 1199},
            )

        sso = _sso_with(handler)
        response = await sso.get_access_token("refresh-1", is_refresh_token=True, scopes="b a")

        form = parse_qs(captured[0].content.decode())
        assert form == {
            "grant_type": ["refresh_token"],
            "refresh_token": ["refresh-1"],
            "scope": ["a b"],
        }
        assert response.refresh_token is None

    @pytest.mark.asyncio
    async def test_client_error_is_authentication_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Invalid refresh token"},
            )

        sso = _sso_with(handler)
        with pytest.raises(AuthenticationFailed, match="invalid_grant"):
            await sso.get_access_token("bad", is_refresh_token=True)

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        sso = _sso_with(handler)
        with pytest.raises(SSOError) as exc_info:
            await sso.get_access_token("code")
        assert not isinstance(exc_info.value, AuthenticationFailed)

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sso = _sso_with(handler)
        with pytest.raises(SSOError, match="Network error"):
            await sso.get_access_token("code")


def test_generate_state_is_random() -> None:
    assert generate_state() != generate_state()
    assert len(generate_state()) == 32
