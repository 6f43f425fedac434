from enum import Enum

from pydantic import BaseModel


class BasePydanticModel(BaseModel):
    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "use_enum_values": True,
    }


class TransportType(str, Enum):
    STDIO = "stdio"
    HTTP = "http"


class FramingType(str, Enum):
    """How JSON-RPC messages are delimited on a byte stream."""
    NEWLINE = "newline"
    CONTENT_LENGTH = "content-length"
