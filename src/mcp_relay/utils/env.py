import os
import re
from collections.abc import Mapping

_ENV_REFERENCE = re.compile(r"\$\{env:([A-Za-z_][A-Za-z0-9_]*)\}")


def interpolate_env(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expands ``${env:VAR}`` references from the host environment.

    A reference to a variable that is not set is left as written so the
    server can report it instead of receiving an empty string.
    """
    source = os.environ if environ is None else environ

    def _replace(match: re.Match) -> str:
        return source.get(match.group(1), match.group(0))

    return _ENV_REFERENCE.sub(_replace, value)


def build_child_env(overrides: Mapping[str, str], environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Host environment plus interpolated overrides."""
    base = dict(os.environ if environ is None else environ)
    base.update({key: interpolate_env(value, base) for key, value in overrides.items()})
    return base
