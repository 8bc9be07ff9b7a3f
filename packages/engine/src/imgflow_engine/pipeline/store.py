from __future__ import annotations

from typing import Iterator, Mapping, Optional

from .types import StoreValue


class VariableStore:
    """
    Run-scoped mapping from variable name to artifact, save result or
    collected list.

    Writes go through `apply`, which the coordinating task calls once per
    settled step (or once per wave); steps only ever read.
    """

    def __init__(self, initial: Mapping[str, StoreValue] | None = None) -> None:
        self._values: dict[str, StoreValue] = dict(initial or {})

    def get(self, name: str) -> Optional[StoreValue]:
        return self._values.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __getitem__(self, name: str) -> StoreValue:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def names(self) -> set[str]:
        return set(self._values)

    def apply(self, writes: Mapping[str, StoreValue]) -> None:
        for name, value in writes.items():
            self._values[name] = value

    def snapshot(self) -> dict[str, StoreValue]:
        return dict(self._values)
