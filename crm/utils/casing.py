from __future__ import annotations

import re
from typing import Any

_SNAKE_SEGMENT = re.compile(r"_([a-z])")
_UPPER = re.compile(r"[A-Z]")


def camel_key(key: str) -> str:
    return _SNAKE_SEGMENT.sub(lambda match: match.group(1).upper(), key)


def snake_key(key: str) -> str:
    return _UPPER.sub(lambda match: f"_{match.group(0).lower()}", key)


def to_camel(value: Any) -> Any:
    """Recursively rename snake_case mapping keys to camelCase.

    Lists and tuples are walked element by element; scalars and non-string keys
    pass through untouched, so the transform is defined for any JSON-like value.
    """
    if isinstance(value, dict):
        return {
            (camel_key(key) if isinstance(key, str) else key): to_camel(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [to_camel(item) for item in value]
    return value


def to_snake(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            (snake_key(key) if isinstance(key, str) else key): to_snake(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [to_snake(item) for item in value]
    return value
