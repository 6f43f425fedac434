"""
JSON-RPC 2.0 message shapes used on every transport.

Messages travel as plain dicts; these helpers build outbound messages and
classify inbound ones without forcing a full model validation on the hot path.
"""
from typing import Any

from .common import BasePydanticModel

JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class JSONRPCError(BasePydanticModel):
    code: int
    message: str
    data: Any | None = None

    model_config = {"extra": "allow"}


def make_request(request_id: int | str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Builds a JSON-RPC 2.0 request. `params` is omitted when None."""
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: int | str, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id: int | str | None, code: int, message: str, data: Any | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def is_response(message: dict[str, Any]) -> bool:
    return "id" in message and "method" not in message and ("result" in message or "error" in message)


def is_request(message: dict[str, Any]) -> bool:
    return "method" in message and message.get("id") is not None


def is_notification(message: dict[str, Any]) -> bool:
    return "method" in message and "id" not in message
