"""
JSON codec for frozen record dataclasses.

datetimes are stored as ISO strings, Enums by value. Decoding walks the
dataclass type hints, so a record round-trips to an equal instance.
"""

from __future__ import annotations

import dataclasses
import json
import types
import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


def _unwrap_optional(hint: Any) -> Any:
    origin = typing.get_origin(hint)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def _decode_value(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    hint = _unwrap_optional(hint)
    if hint is datetime:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


def encode_record(record: Any) -> str:
    """Serialize a dataclass instance to a JSON object string."""
    if not dataclasses.is_dataclass(record):
        raise TypeError(f"Expected a dataclass instance, got {type(record).__name__}")
    body = {f.name: _encode_value(getattr(record, f.name)) for f in dataclasses.fields(record)}
    return json.dumps(body, sort_keys=True)


def decode_record(record_type: type[T], text: str) -> T:
    """Rebuild a *record_type* instance from encode_record() output. Unknown keys are ignored."""
    body = json.loads(text)
    hints = typing.get_type_hints(record_type)
    kwargs = {}
    for f in dataclasses.fields(record_type):  # type: ignore[arg-type]
        if f.name in body:
            kwargs[f.name] = _decode_value(hints.get(f.name), body[f.name])
    return record_type(**kwargs)
