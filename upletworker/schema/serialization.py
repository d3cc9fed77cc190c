"""UUID and key conversion helpers shared by task and resource records."""

from __future__ import annotations

import uuid
from typing import Any, Iterable, List, Optional

from upletworker.utils.errors import ValidationError

NIL_UUID = uuid.UUID(int=0)


def parse_uuid(value: Any, field_name: str) -> Optional[uuid.UUID]:
    """Parse an optional UUID; empty values mean unset."""
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"{field_name} field holds an invalid UUID: {value!r}") from e


def parse_uuid_list(values: Optional[Iterable[Any]], field_name: str) -> List[Optional[uuid.UUID]]:
    # Nil entries are kept so check() can report their position.
    if values is None:
        return []
    if isinstance(values, (str, bytes)):
        raise ValidationError(f"{field_name} field must be a list of UUIDs")
    return [parse_uuid(v, field_name) for v in values]


def uuid_to_str(value: Optional[uuid.UUID]) -> str:
    return str(value) if value is not None else ""


def is_unset(value: Optional[uuid.UUID]) -> bool:
    return value is None or value == NIL_UUID


def uuid_from_key(key: str) -> uuid.UUID:
    """Extract the UUID from a ledger key of the form ``<object>_<uuid>``."""
    parts = key.split("_")
    if len(parts) != 2:
        raise ValidationError(f"key {key!r} is not of the form <object>_<uuid>")
    return parse_uuid(parts[1], parts[0]) or NIL_UUID


def key_from_uuid(kind: str, value: uuid.UUID) -> str:
    return f"{kind}_{value}"
