"""Account, character and token records.

Records are immutable values. Changing a record means building a new one
with ``dataclasses.replace`` and handing it back to the provider, which
stores it under the record's identity key.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from .scopes import ScopesInput, normalize_scopes

TokenKey = tuple[int, frozenset[str]]


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def expiry_from_now(expires_in: int | float) -> datetime:
    """Absolute expiry for a token lifetime given in seconds."""
    return utcnow() + timedelta(seconds=float(expires_in))


def _ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Account:
    """A player account, identified by the SSO ``owner`` hash."""

    owner: str

    def to_dict(self) -> dict[str, Any]:
        return {"owner": self.owner}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Account":
        return cls(owner=data["owner"])


@dataclass(frozen=True)
class Character:
    """An in-game character belonging to exactly one account.

    Attributes:
        character_id: Stable EVE character ID
        character_name: Display name (may change between logins)
        owner: Owner hash of the account the character belongs to
    """

    character_id: int
    character_name: str
    owner: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "character_id": self.character_id,
            "character_name": self.character_name,
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Character":
        return cls(
            character_id=int(data["character_id"]),
            character_name=data["character_name"],
            owner=data["owner"],
        )


@dataclass(frozen=True)
class Token:
    """Access/refresh token pair granted to a character for a scope set.

    A character holds at most one token per distinct scope set, so
    ``(character_id, scopes)`` identifies a token.

    Attributes:
        character_id: The character the token was issued for
        access_token: Short-lived bearer credential
        refresh_token: Long-lived credential used to mint access tokens
        expires: When the access token expires (UTC datetime)
        scopes: Normalized set of granted scopes
    """

    character_id: int
    access_token: str
    refresh_token: str
    expires: datetime
    scopes: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "scopes", normalize_scopes(self.scopes))
        object.__setattr__(self, "expires", _ensure_aware(self.expires))

    @property
    def key(self) -> TokenKey:
        """Identity of this token within a provider."""
        return (self.character_id, self.scopes)

    def is_expired(self, buffer_seconds: int = 0, now: datetime | None = None) -> bool:
        """Check if the access token is expired.

        Args:
            buffer_seconds: Consider the token expired this many seconds
                before the actual expiry
            now: Reference time (defaults to the current UTC time)

        Returns:
            True if the token is expired or expires within buffer_seconds
        """
        now = _ensure_aware(now) if now is not None else utcnow()
        return now >= self.expires - timedelta(seconds=buffer_seconds)

    def with_credentials(
        self,
        access_token: str,
        refresh_token: str,
        expires: datetime,
    ) -> "Token":
        """Return a copy carrying new credentials; scopes are unchanged."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token,
            expires=expires,
        )

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize token to a JSON-compatible dictionary."""
        return {
            "character_id": self.character_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires": self.expires.isoformat(),
            "scopes": sorted(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Token":
        """Deserialize a token stored via to_dict."""
        return cls(
            character_id=int(data["character_id"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires=datetime.fromisoformat(data["expires"]),
            scopes=normalize_scopes(data.get("scopes")),
        )


def make_token(
    character_id: int,
    access_token: str,
    refresh_token: str,
    expires: datetime,
    scopes: ScopesInput = None,
) -> Token:
    """Build a Token from loosely typed scope input."""
    return Token(
        character_id=character_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires=expires,
        scopes=normalize_scopes(scopes),
    )
