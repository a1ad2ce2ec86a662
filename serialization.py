"""
serialization.py – JSON encoding and decoding of model dataclasses.

Dates are written as ISO-8601 strings, enums as their values.  Decoding is
driven by the dataclass type hints, so adding a field to a model needs no
change here; unknown keys in the JSON are ignored and missing keys fall back
to the field defaults (files written by older versions keep loading).
"""

import base64
import dataclasses
import json
import typing
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Type, TypeVar

T = TypeVar("T")


class ModelJSONEncoder(json.JSONEncoder):
    """JSON encoder for dataclasses, datetimes and enums."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, bytes):
            return base64.b64encode(obj).decode("ascii")
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return to_dict(obj)
        return super().default(obj)


def to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a dataclass instance to a plain dict (fields only, no properties)."""
    return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}


def dumps(obj: Any, sort_keys: bool = False, indent: int = 2) -> str:
    return json.dumps(obj, cls=ModelJSONEncoder, ensure_ascii=False,
                      sort_keys=sort_keys, indent=indent)


def _convert(value: Any, hint: Any) -> Any:
    if value is None:
        return None

    origin = typing.get_origin(hint)
    if origin is typing.Union:
        # Optional[X] is Union[X, None]
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        return _convert(value, args[0]) if len(args) == 1 else value
    if origin in (list, List):
        (item_hint,) = typing.get_args(hint) or (Any,)
        return [_convert(v, item_hint) for v in value]

    if hint is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    if hint is float and isinstance(value, int):
        return float(value)
    return value


def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
    """Build a *cls* instance from a dict produced by to_dict()/JSON."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            kwargs[f.name] = _convert(data[f.name], hints[f.name])
    return cls(**kwargs)


def from_list(cls: Type[T], items: List[Dict[str, Any]]) -> List[T]:
    return [from_dict(cls, item) for item in items if isinstance(item, dict)]
