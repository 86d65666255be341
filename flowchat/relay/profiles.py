"""
Connection Profiles

Server-side description of how to reach one instance's automation endpoint.
Profiles hold credentials and therefore never leave the relay; clients get
the ClientProfile projection instead.
"""

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from flowchat.chat.models import DEFAULT_INPUT_KEY, DEFAULT_SESSION_KEY, ClientProfile


class AuthKind(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"


class Credentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str | None = None
    password: SecretStr | None = None
    token: SecretStr | None = None


class ConnectionProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: str
    endpoint_url: str | None = None
    auth_kind: AuthKind = AuthKind.NONE
    credentials: Credentials = Field(default_factory=Credentials)
    timeout_seconds: float | None = Field(default=None, gt=0)
    custom_headers: dict[str, str] = Field(default_factory=dict)
    streaming_enabled: bool = True
    input_key_name: str = DEFAULT_INPUT_KEY
    session_key_name: str = DEFAULT_SESSION_KEY
    enabled: bool = True

    @property
    def requires_secret(self) -> bool:
        return self.auth_kind is not AuthKind.NONE

    def to_client_profile(
        self,
        relay_url: str,
        *,
        max_input_length: int = 4000,
        timeout_seconds: float | None = None,
    ) -> ClientProfile:
        # Custom headers may carry API keys, so only a bare endpoint is exposed.
        direct = not self.requires_secret and not self.custom_headers
        return ClientProfile(
            instance_id=self.instance_id,
            relay_url=relay_url,
            direct_url=self.endpoint_url if direct else None,
            streaming_enabled=self.streaming_enabled,
            input_key_name=self.input_key_name,
            session_key_name=self.session_key_name,
            max_input_length=max_input_length,
            timeout_seconds=self.timeout_seconds if timeout_seconds is None else timeout_seconds,
        )


def profile_from_instance(instance_id: str, data: Mapping[str, Any]) -> ConnectionProfile:
    """Build a profile from the instance settings document.

    Accepts the camelCase keys the admin surface stores (`webhookUrl`,
    `authType`, `enableStreaming`, ...) as well as the field names above.
    """

    def pick(*keys: str, default: Any = None) -> Any:
        for key in keys:
            if key in data and data[key] is not None:
                return data[key]
        return default

    auth = str(pick("auth_kind", "authType", default="none")).lower()
    if auth not in {kind.value for kind in AuthKind}:
        raise ValueError(f"Unsupported auth type for instance {instance_id!r}: {auth!r}")

    credentials = pick("credentials")
    if not isinstance(credentials, Mapping):
        credentials = {
            "username": pick("username"),
            "password": pick("password"),
            "token": pick("token", "bearerToken", "apiKey"),
        }

    return ConnectionProfile(
        instance_id=instance_id,
        endpoint_url=pick("endpoint_url", "webhookUrl") or None,
        auth_kind=AuthKind(auth),
        credentials=Credentials(**credentials),
        timeout_seconds=pick("timeout_seconds", "timeout"),
        custom_headers=dict(pick("custom_headers", "customHeaders", default={})),
        streaming_enabled=bool(pick("streaming_enabled", "enableStreaming", default=True)),
        input_key_name=pick("input_key_name", "chatInputKey", default=DEFAULT_INPUT_KEY),
        session_key_name=pick("session_key_name", "sessionKey", default=DEFAULT_SESSION_KEY),
        enabled=bool(pick("enabled", "isEnabled", default=True)),
    )
