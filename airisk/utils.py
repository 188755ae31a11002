"""Shared utility functions used across AIRisk modules."""
from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def unique_names(names: Iterable[str | None]) -> list[str]:
    """Trim, drop blanks, and de-duplicate case-insensitively keeping first spelling and order."""
    seen: set[str] = set()
    out: list[str] = []
    for raw in names:
        name = (raw or "").strip()
        if not name or name.casefold() in seen:
            continue
        seen.add(name.casefold())
        out.append(name)
    return out
