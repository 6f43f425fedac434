import time

from pydantic import Field

from .common import BasePydanticModel

# Schemes a stored token may already carry; such tokens are sent verbatim.
KNOWN_AUTH_SCHEMES = ("Bearer ", "token ", "Basic ")


class Credential(BasePydanticModel):
    access_token: str = Field(..., min_length=1)
    token_type: str = Field(default="Bearer")
    expires_at: float | None = Field(default=None, description="Unix timestamp; None when the expiry is unknown.")
    refresh_token: str | None = None
    token_endpoint: str | None = Field(default=None, description="OAuth token endpoint used for refresh.")
    client_id: str | None = None
    scope: str | None = None  # Space-separated list of scopes
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def from_token_response(cls, data: dict, **extra) -> "Credential":
        """Builds a credential from an RFC 6749 token response (`expires_in` is relative)."""
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_at=time.time() + float(expires_in) if expires_in else None,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            **extra,
        )

    @property
    def is_expired(self) -> bool:
        """Check if token is expired with a 5-minute buffer."""
        if self.expires_at is None:
            return False
        return time.time() + 300 >= self.expires_at

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.token_endpoint)

    def authorization_header(self) -> str:
        if self.access_token.startswith(KNOWN_AUTH_SCHEMES):
            return self.access_token
        return f"{self.token_type or 'Bearer'} {self.access_token}"


class TokenRequest(BasePydanticModel):
    grant_type: str
    refresh_token: str | None = None
    client_id: str | None = None
    scope: str | None = None


# RFC 6749, Section 5.2
class OAuthError(BasePydanticModel):
    error: str
    error_description: str | None = None
    error_uri: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True}
