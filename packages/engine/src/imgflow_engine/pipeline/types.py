from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Mapping, Optional, TypeAlias, Union

if TYPE_CHECKING:
    from .steps import Step

ImageFormat: TypeAlias = str
DataType: TypeAlias = Literal["text", "json"]

MIME_TO_EXT: dict[str, str] = {
    "image/svg+xml": "svg",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/avif": "avif",
}


@dataclass(frozen=True, slots=True)
class ImageArtifact:
    """
    Opaque image payload flowing between steps.

    `format` is a MIME type such as "image/png".
    """

    bytes: bytes
    format: ImageFormat
    width: Optional[int] = None
    height: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    source: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.bytes)

    @property
    def extension(self) -> str:
        return MIME_TO_EXT.get(self.format, "png")


@dataclass(frozen=True, slots=True)
class DataArtifact:
    """
    Text or JSON payload. `parsed` is set for json artifacts.
    """

    type: DataType
    content: str
    parsed: Optional[Mapping[str, Any]] = None
    source: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, content: str, *, source: str | None = None) -> "DataArtifact":
        return cls(type="text", content=content, source=source)

    @classmethod
    def from_json(
        cls,
        obj: Mapping[str, Any],
        *,
        source: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> "DataArtifact":
        return cls(
            type="json",
            content=json.dumps(obj, ensure_ascii=False, default=_summarize),
            parsed=obj,
            source=source,
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True, slots=True)
class SaveResult:
    provider: str
    location: str
    size: int
    format: ImageFormat
    metadata: Mapping[str, Any] = field(default_factory=dict)


Artifact: TypeAlias = Union[ImageArtifact, DataArtifact]
StoreValue: TypeAlias = Union[ImageArtifact, DataArtifact, SaveResult, list]


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """
    Externally observable record of one completed step.
    """

    step: "Step"
    out: str
    value: Optional[StoreValue]


def is_artifact(value: object) -> bool:
    return isinstance(value, (ImageArtifact, DataArtifact))


def data_artifact_from_value(value: Any, *, source: str) -> DataArtifact:
    """
    Wrap a plain JSON-ish value (primitive, list or mapping) as a json artifact.
    """
    parsed = dict(value) if isinstance(value, Mapping) else {"value": value}
    return DataArtifact(
        type="json",
        content=json.dumps(value, ensure_ascii=False, default=_summarize),
        parsed=parsed,
        source=source,
    )


def summarize_parsed(parsed: Mapping[str, Any]) -> dict[str, Any]:
    """
    Plain-JSON copy of `parsed` with nested artifacts summarized.
    """
    return json.loads(json.dumps(dict(parsed), ensure_ascii=False, default=_summarize))


def _summarize(obj: Any) -> Any:
    """json.dumps fallback for values that are not plain JSON."""
    if isinstance(obj, ImageArtifact):
        return {
            "format": obj.format,
            "size": obj.size,
            "width": obj.width,
            "height": obj.height,
            "source": obj.source,
        }
    if isinstance(obj, DataArtifact):
        return obj.parsed if obj.parsed is not None else obj.content
    if isinstance(obj, SaveResult):
        return {"provider": obj.provider, "location": obj.location, "size": obj.size}
    if isinstance(obj, Mapping):
        return dict(obj)
    if isinstance(obj, (bytes, bytearray)):
        return f"<{len(obj)} bytes>"
    return str(obj)
