"""
Serializable mixin for the record dataclasses.

Snapshot records, their nested metadata and lineage, and the config all
round-trip through JSON documents. The mixin walks dataclasses.fields():
nested Serializable values become dicts, str-valued Enums become their
value, and from_dict() reverses both using the field annotations.

Loading is lenient: unknown keys are ignored and missing fields fall back
to their defaults, so documents written before a field was added still
load.
"""

import dataclasses
from enum import Enum
from types import UnionType
from typing import get_args, get_origin, get_type_hints


class Serializable:
    """Mixin that adds to_dict() and from_dict() to dataclasses."""

    def to_dict(self) -> dict:
        return {f.name: _dump(getattr(self, f.name)) for f in dataclasses.fields(self)}  # type: ignore[arg-type]

    @classmethod
    def from_dict(cls, d: dict):
        hints = get_type_hints(cls)
        kwargs = {
            f.name: _load(d[f.name], hints.get(f.name))
            for f in dataclasses.fields(cls)  # type: ignore[arg-type]
            if f.name in d
        }
        return cls(**kwargs)


def _dump(value):
    if isinstance(value, Serializable):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _load(value, annotation):
    if value is None:
        return None
    target = _strip_none(annotation)
    if get_origin(target) is not None or not isinstance(target, type):
        return value
    if issubclass(target, Serializable) and isinstance(value, dict):
        return target.from_dict(value)
    if issubclass(target, Enum):
        return target(value)
    return value


def _strip_none(annotation):
    """X | None -> X; anything else unchanged."""
    if isinstance(annotation, UnionType):
        members = [a for a in get_args(annotation) if a is not type(None)]
        if len(members) == 1:
            return members[0]
    return annotation
