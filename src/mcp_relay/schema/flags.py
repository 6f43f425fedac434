"""
Turns a tool's JSON Schema into command-line flags and parses ``--flag value``
arguments into a typed argument object.
"""
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import jsonschema
import structlog

from ..mcp_client.exceptions import MCPArgumentError

logger = structlog.get_logger(__name__)

_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")


class FlagType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    ENUM = "enum"


@dataclass
class SchemaFlag:
    name: str
    flag_type: FlagType = FlagType.STRING
    description: str = ""
    required: bool = False
    default: Any = None
    has_default: bool = False
    choices: list[str] = field(default_factory=list)

    @property
    def cli_name(self) -> str:
        return f"--{camel_to_kebab(self.name).replace('_', '-')}"

    def matches(self, flag_name: str) -> bool:
        """Accepts the property name as written, or its snake, kebab and camel variants."""
        return (
            self.name == flag_name
            or self.name.replace("_", "-") == flag_name
            or self.name == flag_name.replace("-", "_")
            or camel_to_kebab(self.name) == flag_name
            or self.name == kebab_to_camel(flag_name)
        )


def camel_to_kebab(name: str) -> str:
    """libraryName -> library-name"""
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


def kebab_to_camel(name: str) -> str:
    """library-name -> libraryName"""
    head, *rest = name.split("-")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def parse_type(prop: dict[str, Any]) -> tuple[FlagType, list[str]]:
    enum_values = prop.get("enum")
    if isinstance(enum_values, list):
        return FlagType.ENUM, [v for v in enum_values if isinstance(v, str)]
    type_name = prop.get("type", "string")
    if isinstance(type_name, list):
        # ["string", "null"] style unions: take the first non-null member.
        type_name = next((t for t in type_name if t != "null"), "string")
    try:
        return FlagType(type_name), []
    except ValueError:
        return FlagType.STRING, []


def parse_schema(schema: dict[str, Any] | None) -> list[SchemaFlag]:
    """Flags for every schema property; required ones first, then by name."""
    if not schema:
        return []
    properties = schema.get("properties")
    if properties is None:
        return []
    if not isinstance(properties, dict):
        raise MCPArgumentError("Schema must have properties object")
    required = {name for name in schema.get("required") or [] if isinstance(name, str)}

    flags = []
    for name, prop in properties.items():
        prop = prop if isinstance(prop, dict) else {}
        flag_type, choices = parse_type(prop)
        flags.append(SchemaFlag(
            name=name,
            flag_type=flag_type,
            description=prop.get("description") or "",
            required=name in required,
            default=prop.get("default"),
            has_default="default" in prop,
            choices=choices,
        ))
    flags.sort(key=lambda f: (not f.required, f.name))
    return flags


def parse_value(raw: str, flag: SchemaFlag) -> Any:
    match flag.flag_type:
        case FlagType.STRING:
            return raw
        case FlagType.INTEGER:
            try:
                return int(raw)
            except ValueError:
                raise MCPArgumentError(f"Invalid integer: {raw}") from None
        case FlagType.NUMBER:
            try:
                return float(raw)
            except ValueError:
                raise MCPArgumentError(f"Invalid number: {raw}") from None
        case FlagType.BOOLEAN:
            lowered = raw.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise MCPArgumentError(f"Invalid boolean: {raw}")
        case FlagType.ARRAY:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
            return [item.strip() for item in raw.split(",")]
        case FlagType.OBJECT:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                raise MCPArgumentError(f"Invalid JSON object: {e}") from e
            if not isinstance(parsed, dict):
                raise MCPArgumentError(f"Invalid JSON object: {raw}")
            return parsed
        case FlagType.ENUM:
            if raw in flag.choices:
                return raw
            raise MCPArgumentError(f"Invalid enum value '{raw}'. Must be one of: {', '.join(flag.choices)}")
    return raw


def parse_args(args: list[str], flags: list[SchemaFlag]) -> dict[str, Any]:
    """Parses ``--flag value`` / ``--flag=value`` pairs against `flags`.

    Boolean flags take an optional ``true``/``false``. Defaults from the schema
    fill in absent optional flags; a missing required flag is an error.
    """
    result: dict[str, Any] = {}
    i = 0
    while i < len(args):
        arg = args[i]
        if not arg.startswith("--"):
            raise MCPArgumentError(f"Unexpected argument: {arg}")
        flag_name, has_inline, inline_value = arg[2:].partition("=")
        flag = next((f for f in flags if f.matches(flag_name)), None)
        if flag is None:
            raise MCPArgumentError(f"Unknown flag: --{flag_name}")

        if has_inline:
            value = parse_value(inline_value, flag)
        elif flag.flag_type == FlagType.BOOLEAN:
            value = True
            if i + 1 < len(args) and args[i + 1] in ("true", "false"):
                i += 1
                value = args[i] == "true"
        else:
            if i + 1 >= len(args):
                raise MCPArgumentError(f"Flag --{flag_name} requires a value")
            i += 1
            value = parse_value(args[i], flag)

        result[flag.name] = value
        i += 1

    for flag in flags:
        if flag.name not in result and flag.has_default:
            result[flag.name] = flag.default
    for flag in flags:
        if flag.required and flag.name not in result:
            raise MCPArgumentError(f"Required flag {flag.cli_name} is missing")
    return result


def check_required(schema: dict[str, Any] | None, arguments: dict[str, Any]) -> None:
    """Validates a ready-made argument object against the schema's ``required`` list."""
    if not isinstance(arguments, dict):
        raise MCPArgumentError("Tool arguments must be a JSON object")
    missing = [name for name in (schema or {}).get("required") or [] if name not in arguments]
    if missing:
        raise MCPArgumentError(f"Missing required argument(s): {', '.join(missing)}")


def validate_arguments(schema: dict[str, Any] | None, arguments: dict[str, Any]) -> None:
    """Checks an argument object against the tool's full input schema before dispatch.

    Raises:
        MCPArgumentError: missing required arguments, or any type, enum or shape
            mismatch reported by jsonschema.
    """
    check_required(schema, arguments)
    if not schema:
        return
    try:
        jsonschema.validate(instance=arguments, schema=schema)
    except jsonschema.ValidationError as e:
        location = "/".join(str(part) for part in e.absolute_path)
        detail = f"{location}: {e.message}" if location else e.message
        raise MCPArgumentError(f"Invalid tool arguments: {detail}") from e
    except jsonschema.SchemaError as e:
        logger.warning("Tool input schema is not valid JSON Schema; skipping local validation.", error=e.message)
