"""Option-key validation with closest-match hints."""

from __future__ import annotations

import difflib
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from copilot_engine.errors import ConfigurationError


def known_keys(model: type[BaseModel]) -> set[str]:
    """Field names and aliases accepted by a model."""
    keys: set[str] = set()
    for name, info in model.model_fields.items():
        keys.add(name)
        if info.alias:
            keys.add(info.alias)
    return keys


def check_keys(values: Mapping[str, Any], valid: Iterable[str], *, what: str = "option") -> None:
    """Reject keys outside the valid set.

    Raises:
        ConfigurationError: Naming every unknown key and, where one exists,
            the closest valid key.
    """
    valid = sorted(set(valid))
    unknown = [key for key in values if key not in valid]
    if not unknown:
        return

    suggestions: dict[str, str] = {}
    parts = []
    for key in unknown:
        close = difflib.get_close_matches(key, valid, n=1, cutoff=0.5)
        if close:
            suggestions[key] = close[0]
            parts.append(f"{key!r} (did you mean {close[0]!r}?)")
        else:
            parts.append(repr(key))

    raise ConfigurationError(
        f"Unknown {what}{'s' if len(unknown) > 1 else ''}: {', '.join(parts)}",
        unknown_keys=unknown,
        suggestions=suggestions,
    )


def build_model(model: type[BaseModel], values: Mapping[str, Any], *, what: str = "option"):
    """Validate values into model, raising ConfigurationError on any problem."""
    check_keys(values, known_keys(model), what=what)
    try:
        return model.model_validate(dict(values))
    except ValidationError as e:
        problems = []
        for error in e.errors():
            original = (error.get("ctx") or {}).get("error")
            if isinstance(original, ConfigurationError):
                raise original from None
            location = ".".join(str(part) for part in error["loc"])
            problems.append(f"{location}: {error['msg']}" if location else error["msg"])
        raise ConfigurationError(f"Invalid {what}s: " + "; ".join(problems)) from e
