from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from imgflow_engine.core import GenerationError, NetworkError, UploadError
from imgflow_engine.pipeline.types import DataArtifact, ImageArtifact, SaveResult
from imgflow_engine.providers.fs import FsSaveProvider
from imgflow_engine.providers.registry import ProviderRegistry


class FakeGenerator:
    """
    Async generator; params control behavior:
      prompt  becomes the image bytes
      delay   seconds to sleep before returning
      fail    raise a GenerationError
      flaky   raise a retryable NetworkError
    """

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, params: dict[str, Any]) -> ImageArtifact:
        self.calls.append(params)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(float(params.get("delay", 0)))
            if params.get("fail"):
                raise GenerationError("generation refused", provider=self.name)
            if params.get("flaky"):
                raise NetworkError("upstream timed out", provider=self.name)
            prompt = str(params.get("prompt", "img"))
            return ImageArtifact(
                bytes=prompt.encode(),
                format="image/png",
                width=8,
                height=8,
                metadata={"prompt": prompt, **params.get("meta", {})},
                source=f"{self.name}:{prompt}",
            )
        finally:
            self.in_flight -= 1


class FakeTransform:
    """Synchronous transform; appends the op name to the bytes."""

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def transform(
        self, image: ImageArtifact, op: str, params: dict[str, Any]
    ) -> ImageArtifact:
        self.calls.append((op, params))
        if op == "explode":
            raise ValueError("cannot explode")
        return ImageArtifact(
            bytes=image.bytes + f"|{op}".encode(),
            format=params.get("to", image.format),
            width=image.width,
            height=image.height,
            metadata=dict(image.metadata),
            source=f"{self.name}:{op}",
        )


class FakeVision:
    name = "fake"

    async def analyze(self, image: ImageArtifact, params: dict[str, Any]) -> DataArtifact:
        result = params.get("result", {"description": image.bytes.decode()})
        return DataArtifact.from_json(result, source=f"vision:{self.name}")


class FakeText:
    name = "fake"

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def generate(self, params: dict[str, Any]) -> DataArtifact:
        self.calls.append(params)
        if "json" in params:
            return DataArtifact.from_json(params["json"], source=f"text:{self.name}")
        text = f"{params.get('prompt', '')}|{params.get('context', '')}"
        return DataArtifact.text(text, source=f"text:{self.name}")


class MemorySave:
    name = "memory"

    def __init__(self) -> None:
        self.saved: dict[str, bytes] = {}

    async def save(self, image: ImageArtifact, path: str, **options: Any) -> SaveResult:
        if path.startswith("fail"):
            raise UploadError(f"cannot write {path}", provider=self.name)
        self.saved[path] = image.bytes
        return SaveResult(
            provider=self.name,
            location=f"memory://{path}",
            size=image.size,
            format=image.format,
        )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def transformer() -> FakeTransform:
    return FakeTransform()


@pytest.fixture
def text_provider() -> FakeText:
    return FakeText()


@pytest.fixture
def memory_save() -> MemorySave:
    return MemorySave()


@pytest.fixture
def registry(
    tmp_path: Path,
    generator: FakeGenerator,
    transformer: FakeTransform,
    text_provider: FakeText,
    memory_save: MemorySave,
) -> ProviderRegistry:
    reg = ProviderRegistry(
        default_generator="fake",
        default_transform="fake",
        default_save="memory",
        default_ai="fake",
    )
    reg.register_generator(generator)
    reg.register_transform(transformer)
    reg.register_vision(FakeVision())
    reg.register_text(text_provider)
    reg.register_save(memory_save)
    reg.register_save(FsSaveProvider(tmp_path / "out"))
    return reg
