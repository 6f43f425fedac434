from typing import Any

from pydantic import Field, field_validator, model_validator

from .common import BasePydanticModel, FramingType, TransportType


class ServerDescriptor(BasePydanticModel):
    """A registered MCP server. Immutable once loaded."""

    name: str = Field(..., min_length=1, description="Unique name of the server in the registry.")
    transport: TransportType
    # stdio parameters
    command: str | None = Field(None, description="Executable to spawn (stdio).")
    args: list[str] = Field(default_factory=list, description="Arguments passed to the executable.")
    env: dict[str, str] = Field(default_factory=dict, description="Environment overrides; values may use ${env:VAR}.")
    cwd: str | None = None
    framing: FramingType = FramingType.NEWLINE
    # http parameters
    url: str | None = Field(None, description="Endpoint URL (http).")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra headers sent with every HTTP request.")
    sse: bool = Field(False, description="Use a persistent SSE channel instead of streamable HTTP.")
    auth_required: bool = Field(False, description="The server rejects requests without a bearer credential.")

    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "use_enum_values": True,
        "frozen": True,
    }

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v

    @model_validator(mode="after")
    def validate_transport_parameters(self) -> "ServerDescriptor":
        if self.transport == TransportType.STDIO and not self.command:
            raise ValueError("stdio servers require a command")
        if self.transport == TransportType.HTTP and not self.url:
            raise ValueError("http servers require a url")
        return self

    @property
    def uses_sse_channel(self) -> bool:
        return self.sse or bool(self.url and self.url.rstrip("/").endswith("/sse"))

    @property
    def target(self) -> str:
        """Human-readable spawn command or URL."""
        if self.transport == TransportType.STDIO:
            return " ".join([self.command or "", *self.args]).strip()
        return self.url or ""


class ToolDescriptor(BasePydanticModel):
    """A tool as advertised by `tools/list`. Unknown fields are preserved verbatim."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = Field(None, alias="inputSchema")

    model_config = {
        "extra": "allow",
        "populate_by_name": True,
        "use_enum_values": True,
    }

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ToolsListResult(BasePydanticModel):
    tools: list[ToolDescriptor] = Field(default_factory=list)
    next_cursor: str | None = Field(None, alias="nextCursor")

    model_config = {"extra": "allow", "populate_by_name": True}


class ServerInfo(BasePydanticModel):
    name: str
    version: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True}


class ServerCapabilities(BasePydanticModel):
    tools: dict[str, Any] | None = None
    resources: dict[str, Any] | None = None
    prompts: dict[str, Any] | None = None
    logging: dict[str, Any] | None = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def tools_list_changed(self) -> bool:
        return bool(self.tools and self.tools.get("listChanged"))


class InitializeResult(BasePydanticModel):
    """The negotiated capability set returned by the server's handshake."""

    protocol_version: str = Field(..., alias="protocolVersion")
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    server_info: ServerInfo = Field(..., alias="serverInfo")
    instructions: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True}


class ContentItem(BasePydanticModel):
    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = Field(None, alias="mimeType")
    resource: dict[str, Any] | None = None

    model_config = {"extra": "allow", "populate_by_name": True}


class ToolCallResult(BasePydanticModel):
    content: list[ContentItem] = Field(default_factory=list)
    is_error: bool = Field(False, alias="isError")
    structured_content: dict[str, Any] | None = Field(None, alias="structuredContent")

    model_config = {"extra": "allow", "populate_by_name": True}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PingResult(BasePydanticModel):
    """Outcome of a `ping` operation."""

    server: str
    protocol_version: str
    server_name: str | None = None
    server_version: str | None = None
    elapsed_ms: float = Field(ge=0)
