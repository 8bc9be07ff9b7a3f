from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Mapping, Optional

from imgflow_engine.core import ILogger, load_settings
from imgflow_engine.pipeline.concurrency import call_provider
from imgflow_engine.pipeline.events import EventSink, StepEvent
from imgflow_engine.pipeline.progressive import (
    CancelSignal,
    Previewer,
    ProgressiveResult,
    ProgressiveRunner,
    data_url_preview,
)
from imgflow_engine.pipeline.runner import PipelineRunner, RunnerConfig, WaveRun
from imgflow_engine.pipeline.steps import Pipeline
from imgflow_engine.pipeline.types import (
    DataArtifact,
    ImageArtifact,
    PipelineResult,
    SaveResult,
)
from imgflow_engine.providers.base import ContentGate
from imgflow_engine.providers.fs import FsSaveProvider
from imgflow_engine.providers.registry import Capabilities, ProviderRegistry

PipelineLike = Pipeline | Mapping[str, Any]


class Engine:
    """
    Entry point: owns a provider registry and runs pipelines against it.

      engine = Engine()
      engine.registry.register_generator(MyGenerator())
      results = await engine.run({"steps": [...]})
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry | None = None,
        concurrency: Optional[int] = None,
        gate: ContentGate | None = None,
        gate_strict: bool | None = None,
        previewer: Previewer | None = data_url_preview,
        logger: ILogger | None = None,
        events: EventSink | None = None,
        allow_duplicate_outputs: bool = False,
    ) -> None:
        settings = load_settings()
        if registry is None:
            registry = ProviderRegistry()
            registry.register_save(FsSaveProvider(settings.output_dir))
        if events is None and settings.events_dir is not None:
            events = EventSink(settings.events_dir / "events.jsonl")

        self.registry = registry
        self.wave_runner = PipelineRunner(
            registry=registry,
            cfg=RunnerConfig(
                concurrency=concurrency if concurrency is not None else settings.concurrency,
                allow_duplicate_outputs=allow_duplicate_outputs,
            ),
            logger=logger,
            events=events,
        )
        self.progressive_runner = ProgressiveRunner(
            registry=registry,
            gate=gate,
            gate_strict=gate_strict,
            previewer=previewer,
            logger=logger,
            events=events,
            allow_duplicate_outputs=allow_duplicate_outputs,
        )

    # Pipelines

    async def run(self, pipeline: PipelineLike) -> list[PipelineResult]:
        return await self.wave_runner.run(pipeline)

    async def execute(self, pipeline: PipelineLike) -> WaveRun:
        return await self.wave_runner.execute(pipeline)

    async def run_progressive(
        self,
        pipeline: PipelineLike,
        *,
        cancel: CancelSignal | None = None,
        on_event: Callable[[StepEvent], None] | None = None,
    ) -> ProgressiveResult:
        return await self.progressive_runner.run(
            pipeline, cancel=cancel, on_event=on_event
        )

    def stream(
        self, pipeline: PipelineLike, *, cancel: CancelSignal | None = None
    ) -> AsyncIterator[StepEvent]:
        return self.progressive_runner.stream(pipeline, cancel=cancel)

    # Single operations

    async def generate(
        self, params: Mapping[str, Any] | None = None, *, generator: str | None = None
    ) -> ImageArtifact:
        provider = self.registry.generator(generator)
        return await call_provider(provider.generate, dict(params or {}))

    async def transform(
        self,
        image: ImageArtifact,
        op: str,
        params: Mapping[str, Any] | None = None,
        *,
        provider: str | None = None,
        to: str | None = None,
    ) -> ImageArtifact:
        p = dict(params or {})
        if to:
            p["to"] = to
        impl = self.registry.transform(provider)
        return await call_provider(impl.transform, image, op, p)

    async def analyze_image(
        self,
        image: ImageArtifact,
        params: Mapping[str, Any] | None = None,
        *,
        provider: str | None = None,
    ) -> DataArtifact:
        impl = self.registry.vision_provider(provider)
        return await call_provider(impl.analyze, image, dict(params or {}))

    async def generate_text(
        self,
        params: Mapping[str, Any] | None = None,
        *,
        provider: str | None = None,
        context: DataArtifact | None = None,
    ) -> DataArtifact:
        p = dict(params or {})
        if context is not None:
            p["context"] = context.content
        impl = self.registry.text_provider(provider)
        return await call_provider(impl.generate, p)

    async def save(
        self, image: ImageArtifact, destination: str, *, provider: str | None = None
    ) -> SaveResult:
        dest = self.registry.parse_destination(destination, provider=provider)
        impl = self.registry.save_provider(dest.provider)
        return await call_provider(impl.save, image, dest.path, **dict(dest.options))

    def capabilities(self) -> Capabilities:
        return self.registry.capabilities()
