from .flags import FlagType, SchemaFlag, check_required, parse_args, parse_schema, parse_value, validate_arguments

__all__ = [
    "FlagType",
    "SchemaFlag",
    "check_required",
    "parse_args",
    "parse_schema",
    "parse_value",
    "validate_arguments",
]
