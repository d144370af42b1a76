from __future__ import annotations

import os
from typing import Iterable, List, Optional

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _raw(name: str) -> Optional[str]:
    # Blank values count as unset so `FOO=` in an env file falls back to the default
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_bool(name: str, *, default: bool = False) -> bool:
    """Boolean setting; unknown spellings are a configuration error."""
    value = _raw(name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def env_int(name: str, *, default: int, minimum: int | None = None) -> int:
    """Integer setting with an optional lower bound (applied to the default too)."""
    value = _raw(name)
    try:
        result = default if value is None else int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if minimum is not None and result < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {result})")
    return result


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    value = os.getenv(name)
    if value is None:
        return list(default or [])
    return [part.strip() for part in value.split(separator) if part.strip()]


__all__ = ["env_bool", "env_int", "env_list"]
