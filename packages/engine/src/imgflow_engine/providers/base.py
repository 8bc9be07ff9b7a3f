from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, Sequence, Union, runtime_checkable

from imgflow_engine.pipeline.types import Artifact, ImageArtifact

# Providers may be sync or async; the dispatcher awaits coroutines and runs
# plain callables in a worker thread.
MaybeAwaitable = Union[Any, Awaitable[Any]]


@runtime_checkable
class ImageGenerator(Protocol):
    name: str

    def generate(self, params: dict[str, Any]) -> MaybeAwaitable: ...


@runtime_checkable
class TransformProvider(Protocol):
    name: str

    def transform(
        self, image: ImageArtifact, op: str, params: dict[str, Any]
    ) -> MaybeAwaitable: ...


@runtime_checkable
class VisionProvider(Protocol):
    name: str

    def analyze(self, image: ImageArtifact, params: dict[str, Any]) -> MaybeAwaitable: ...


@runtime_checkable
class TextProvider(Protocol):
    name: str

    def generate(self, params: dict[str, Any]) -> MaybeAwaitable: ...


@runtime_checkable
class SaveProvider(Protocol):
    name: str

    def save(self, image: ImageArtifact, path: str, **options: Any) -> MaybeAwaitable: ...


@dataclass(frozen=True, slots=True)
class GateVerdict:
    allowed: bool
    reason: str | None = None
    categories: Sequence[str] = field(default_factory=tuple)


@runtime_checkable
class ContentGate(Protocol):
    """
    External check applied to a step result before it is accepted
    (e.g. content moderation). Returns a GateVerdict or a plain bool;
    anything else fails the step.
    """

    def check(self, artifact: Artifact) -> MaybeAwaitable: ...
