"""Pydantic configuration models for torcweb.

These models are only used at construction time. Message handling works on the
plain dataclasses in ``torcweb.wire``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SUBPROTOCOL = "torc.json-rpc"
DEFAULT_SERVICES_PATH = "/services/"
DEFAULT_TOKEN_METHOD = "GetWebSocketToken"

# Call ids wrap back to 1 once they pass this value
DEFAULT_MAX_CALL_ID = 0x2000000


class TransportConfig(BaseModel):
    """Configuration for a single transport (one socket lifetime).

    Attributes:
        server_authority: host[:port] of the server, without a scheme
        secure: Use wss:// and https:// instead of ws:// and http://
        services_path: Path prefix shared by all services
        token_method: Method (under services_path) that hands out access tokens
        subprotocol: WebSocket subprotocol offered when opening the socket
        call_timeout: Seconds after which an unanswered call is failed
        expire_interval: Seconds between sweeps for expired calls
        max_call_id: Largest call id before ids wrap back to 1
        token_timeout: Seconds to wait for the token request
    """

    model_config = ConfigDict(frozen=True)

    server_authority: str = Field(default="localhost:4840", description="host[:port]")
    secure: bool = False
    services_path: str = DEFAULT_SERVICES_PATH
    token_method: str = DEFAULT_TOKEN_METHOD
    subprotocol: str = DEFAULT_SUBPROTOCOL
    call_timeout: float = Field(default=60.0, gt=0, description="Call expiry in seconds")
    expire_interval: float = Field(default=10.0, gt=0, description="Sweep interval in seconds")
    max_call_id: int = Field(default=DEFAULT_MAX_CALL_ID, gt=0)
    token_timeout: float = Field(default=10.0, gt=0)

    @field_validator("server_authority")
    @classmethod
    def validate_authority(cls, v: str) -> str:
        """Validate the authority has no scheme or path."""
        if not v:
            raise ValueError("server_authority cannot be empty")
        if "://" in v:
            raise ValueError("server_authority must not include a scheme")
        if "/" in v:
            raise ValueError("server_authority must not include a path")
        return v

    @field_validator("services_path")
    @classmethod
    def validate_services_path(cls, v: str) -> str:
        """Service paths are concatenated with method names, so slashes matter."""
        if not (v.startswith("/") and v.endswith("/")):
            raise ValueError("services_path must start and end with '/'")
        return v

    @property
    def websocket_url(self) -> str:
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{self.server_authority}/"

    @property
    def token_url(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.server_authority}{self.services_path}{self.token_method}"


class ConnectionConfig(BaseModel):
    """Configuration for the connection lifecycle.

    Attributes:
        transport: Settings used for every transport the connection creates
        reconnect_delay: Seconds to wait after a disconnect before reconnecting
        discovery_service: Name of the built-in service directory service
        discovery_property: Property of the discovery service holding the
            directory
    """

    model_config = ConfigDict(frozen=True)

    transport: TransportConfig = Field(default_factory=TransportConfig)
    reconnect_delay: float = Field(default=5.0, gt=0, description="Reconnect delay in seconds")
    discovery_service: str = "services"
    discovery_property: str = "serviceList"

    @field_validator("discovery_service", "discovery_property")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("discovery names cannot be empty")
        return v
