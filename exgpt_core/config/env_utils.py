"""Secret indirection helpers.

A credential stored as ``$NAME`` is a reference, not a value: it is resolved
from the process environment at use time (falling back to the project .env
file, since desktop launches often do not inherit a shell environment).
"""

from __future__ import annotations

import os
from collections import OrderedDict
from pathlib import Path
from typing import MutableMapping, Optional


ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
ENV_REFERENCE_PREFIX = "$"
MASK = "••••••••"


def read_env_file(path: Optional[Path] = None) -> MutableMapping[str, str]:
    """Return key/value pairs from the .env file (order preserved)."""

    env_file = path or ENV_FILE
    pairs: MutableMapping[str, str] = OrderedDict()
    if not env_file.exists():
        return pairs
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        pairs[key.strip()] = value.strip().strip('"').strip("'")
    return pairs


def is_env_reference(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(ENV_REFERENCE_PREFIX)


def resolve_secret(value: Optional[str], env_file: Optional[Path] = None) -> str:
    """Resolve a stored credential.

    ``"$ANTHROPIC_API_KEY"`` reads the variable from ``os.environ`` (then the
    .env file); anything else is returned as-is. Unset references resolve to
    an empty string.
    """

    if not value:
        return ""
    if not is_env_reference(value):
        return value
    name = value[len(ENV_REFERENCE_PREFIX):].strip()
    if not name:
        return ""
    resolved = os.environ.get(name)
    if resolved:
        return resolved
    return read_env_file(env_file).get(name, "")


def mask_secret(value: Optional[str]) -> str:
    """Display form of a credential: references verbatim, literals masked."""

    if not value:
        return ""
    if is_env_reference(value):
        return value
    return MASK
