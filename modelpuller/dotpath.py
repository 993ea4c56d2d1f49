"""Set string values inside nested JSON-style configuration using dotted paths.

Kept deliberately simple:

* only string values are supported;
* paths trace object keys only, never arrays;
* only existing values that are strings may be overwritten.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any

__all__ = ["OverrideError", "apply_parameter_overrides"]


class OverrideError(ValueError):
    """Raised when a dotted-path override cannot be applied."""


def apply_parameter_overrides(
    params: MutableMapping[str, Any] | None, overrides: Mapping[str, str] | None
) -> None:
    """Apply every ``dotpath -> value`` pair of *overrides* to *params* in place."""
    for dotpath, value in (overrides or {}).items():
        _set(params, dotpath, value)


def _set(params: MutableMapping[str, Any] | None, dotpath: str, value: str) -> None:
    if params is None:
        raise OverrideError("got no mapping, unable to set value")

    *parents, last = dotpath.split(".")

    current: MutableMapping[str, Any] = params
    for depth, field in enumerate(parents, start=1):
        if field not in current:
            child: dict[str, Any] = {}
            current[field] = child
            current = child
            continue
        existing = current[field]
        if not isinstance(existing, MutableMapping):
            raise OverrideError(f"expected an object at '{'.'.join(parents[:depth])}'")
        current = existing

    if last in current and not isinstance(current[last], str):
        raise OverrideError(
            f"expected a string at '{dotpath}', but got {current[last]!r}"
        )
    current[last] = value