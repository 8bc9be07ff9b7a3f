import dataclasses
import json
from enum import Enum
from pathlib import Path
from typing import Any


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def json_default(obj: Any) -> Any:
    """
    Fallback for values json cannot encode on its own.

    Image bytes are reduced to their length so events and reports never
    embed pixel data.
    """
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"bytes": len(obj)}
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    return str(obj)


def stable_json_dumps(obj: Any, *, indent: int | None = 2) -> str:
    """
    Deterministic JSON: sorted keys, non-ASCII kept, compact separators
    when `indent` is None.
    """
    if indent is None:
        return json.dumps(
            obj,
            sort_keys=True,
            ensure_ascii=False,
            separators=(",", ":"),
            default=json_default,
        )
    return json.dumps(
        obj, sort_keys=True, ensure_ascii=False, indent=indent, default=json_default
    )
