from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import structlog
from imgflow_engine.core.errors import ConfigurationError, ProviderError
from imgflow_engine.providers.registry import ProviderRegistry

from .concurrency import call_provider
from .graph import StepNode
from .steps import (
    CollectStep,
    FanOutStep,
    GenerateStep,
    RouterStep,
    SaveStep,
    TextStep,
    TransformStep,
    VisionStep,
)
from .store import VariableStore
from .types import (
    DataArtifact,
    ImageArtifact,
    SaveResult,
    StoreValue,
    data_artifact_from_value,
    is_artifact,
)

log = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """
    What a dispatched step produced.

    `writes` holds every variable the step assigns (several for fan-out);
    `out`/`value` are the primary pair reported as the PipelineResult.
    """

    node: StepNode
    out: str
    value: Optional[StoreValue]
    writes: Mapping[str, StoreValue] = field(default_factory=dict)


class StepDispatcher:
    """
    Routes one step to its provider (or evaluates a control-flow step) and
    normalizes the result. Reads from the store, never writes to it.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    async def dispatch(self, node: StepNode, store: VariableStore) -> StepOutcome:
        step = node.step
        log.debug("step.dispatch", step=node.step_id, kind=node.kind)

        match step:
            case GenerateStep():
                return await self._generate(node, step)
            case TransformStep():
                return await self._transform(node, step, store)
            case SaveStep():
                return await self._save(node, step, store)
            case VisionStep():
                return await self._vision(node, step, store)
            case TextStep():
                return await self._text(node, step, store)
            case FanOutStep():
                return self._fan_out(node, step, store)
            case CollectStep():
                return self._collect(node, step, store)
            case RouterStep():
                return self._router(node, step, store)

        raise ConfigurationError(f"Unknown step kind: {getattr(step, 'kind', step)!r}")

    # Provider-backed kinds

    async def _generate(self, node: StepNode, step: GenerateStep) -> StepOutcome:
        generator = self.registry.generator(step.generator)
        image = await call_provider(generator.generate, dict(step.params))
        _expect(image, ImageArtifact, generator.name, "generate")
        return _single(node, step.out, image)

    async def _transform(
        self, node: StepNode, step: TransformStep, store: VariableStore
    ) -> StepOutcome:
        image = _require_image(store, step.in_, "Transform")
        provider = self.registry.transform(step.provider)
        params = dict(step.params)
        if step.to:
            params["to"] = step.to
        result = await call_provider(provider.transform, image, step.op, params)
        _expect(result, ImageArtifact, provider.name, step.op)
        return _single(node, step.out, result)

    async def _save(
        self, node: StepNode, step: SaveStep, store: VariableStore
    ) -> StepOutcome:
        image = _require_image(store, step.in_, "Save")
        dest = self.registry.parse_destination(step.destination, provider=step.provider)
        provider = self.registry.save_provider(dest.provider)
        result: SaveResult = await call_provider(
            provider.save, image, dest.path, **dict(dest.options)
        )
        _expect(result, SaveResult, provider.name, "save")
        out = step.out or step.destination
        writes = {step.out: result} if step.out else {}
        return StepOutcome(node=node, out=out, value=result, writes=writes)

    async def _vision(
        self, node: StepNode, step: VisionStep, store: VariableStore
    ) -> StepOutcome:
        image = _require_image(store, step.in_, "Vision")
        provider = self.registry.vision_provider(step.provider)
        result = await call_provider(provider.analyze, image, dict(step.params))
        _expect(result, DataArtifact, provider.name, "analyze")
        return _single(node, step.out, result)

    async def _text(
        self, node: StepNode, step: TextStep, store: VariableStore
    ) -> StepOutcome:
        params = dict(step.params)
        if step.in_:
            # Only data artifacts contribute context; anything else is ignored.
            ctx_value = store.get(step.in_)
            if isinstance(ctx_value, DataArtifact):
                params["context"] = ctx_value.content
        provider = self.registry.text_provider(step.provider)
        result = await call_provider(provider.generate, params)
        _expect(result, DataArtifact, provider.name, "text")
        return _single(node, step.out, result)

    # Control-flow kinds

    def _fan_out(
        self, node: StepNode, step: FanOutStep, store: VariableStore
    ) -> StepOutcome:
        value = store.get(step.in_)
        if value is None:
            raise ConfigurationError(
                f"Fan-out step references undefined variable: {step.in_}"
            )

        writes: dict[str, StoreValue] = {}
        if step.mode == "count":
            count = step.count if step.count is not None else len(step.out)
            for name in step.out[:count]:
                writes[name] = value
            log.debug("fanout.count", step=node.step_id, branches=len(writes))
        else:
            items = _fan_out_items(step, value)
            for name, item in zip(step.out, items):
                writes[name] = (
                    item
                    if is_artifact(item)
                    else data_artifact_from_value(item, source="fan-out")
                )
            log.debug(
                "fanout.array",
                step=node.step_id,
                items=len(items),
                branches=len(writes),
            )

        first = step.out[0]
        return StepOutcome(node=node, out=first, value=writes.get(first), writes=writes)

    def _collect(
        self, node: StepNode, step: CollectStep, store: VariableStore
    ) -> StepOutcome:
        collected: list[Optional[StoreValue]] = []
        for name in step.in_:
            value = store.get(name)
            if value is None and step.wait_mode == "all":
                raise ConfigurationError(
                    f'Collect step with waitMode="all" requires all inputs. Missing: {name}'
                )
            collected.append(value)

        items = [v for v in collected if v is not None]
        valid = len(items)
        if (
            step.wait_mode == "available"
            and step.min_required is not None
            and valid < step.min_required
        ):
            raise ConfigurationError(
                f"Collect step requires at least {step.min_required} inputs, "
                f"but only {valid} available"
            )

        artifact = DataArtifact.from_json(
            {"items": items},
            source="collect",
            metadata={"input_count": len(step.in_), "valid_count": valid},
        )
        log.debug("collect", step=node.step_id, valid=valid, inputs=len(step.in_))
        return _single(node, step.out, artifact)

    def _router(
        self, node: StepNode, step: RouterStep, store: VariableStore
    ) -> StepOutcome:
        selection = store.get(step.selection_in)
        if selection is None:
            raise ConfigurationError(
                f"Router step references undefined selection variable: {step.selection_in}"
            )
        if not isinstance(selection, DataArtifact) or selection.parsed is None:
            raise ConfigurationError(
                "Router selection must be a data artifact with parsed JSON "
                f"containing {step.selection_property!r}"
            )
        selection_value = selection.parsed.get(step.selection_property)
        candidates = _candidates(store, step.in_)

        if step.selection_type == "index":
            index = _as_index(selection_value)
            if index is None or index < 0 or index >= len(candidates):
                raise ConfigurationError(
                    f"Router index {selection_value!r} out of bounds "
                    f"(0-{len(candidates) - 1})"
                )
            selected = candidates[index]
        else:
            matches = [
                c
                for c in candidates
                if _matches(c, step.selection_property, selection_value)
            ]
            if not matches:
                raise ConfigurationError(
                    f"Router could not find candidate with "
                    f"{step.selection_property}={selection_value!r}"
                )
            selected = matches[0]

        log.debug(
            "router.selected",
            step=node.step_id,
            selection_type=step.selection_type,
            candidates=len(candidates),
        )
        if not is_artifact(selected) and not isinstance(selected, SaveResult):
            selected = data_artifact_from_value(selected, source="router")
        return _single(node, step.out, selected)


def _single(node: StepNode, out: str, value: Any) -> StepOutcome:
    return StepOutcome(node=node, out=out, value=value, writes={out: value})


def _expect(result: Any, expected: type, provider: str, operation: str) -> None:
    if not isinstance(result, expected):
        raise ProviderError(
            f"Provider {provider!r} returned {type(result).__name__}, "
            f"expected {expected.__name__}",
            provider=provider,
            operation=operation,
        )


def _require_image(store: VariableStore, name: str, what: str) -> ImageArtifact:
    value = store.get(name)
    if not isinstance(value, ImageArtifact):
        raise ConfigurationError(
            f"{what} step references undefined or invalid variable: {name}"
        )
    return value


def _fan_out_items(step: FanOutStep, value: Any) -> Sequence[Any]:
    if isinstance(value, DataArtifact) and value.parsed is not None and step.array_property:
        items = value.parsed.get(step.array_property)
        if not isinstance(items, list):
            raise ConfigurationError(
                f"Fan-out array property {step.array_property!r} is not an array"
            )
        return items
    if isinstance(value, list):
        return value
    raise ConfigurationError(
        "Fan-out in array mode requires array input or a data artifact with arrayProperty"
    )


def _candidates(store: VariableStore, name: str) -> list[Any]:
    value = store.get(name)
    if isinstance(value, list):
        return value
    if isinstance(value, DataArtifact) and value.parsed is not None:
        items = value.parsed.get("items")
        if isinstance(items, list):
            return items
    raise ConfigurationError(f"Router input {name!r} must be a collected array")


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or not number.is_integer():
        return None
    return int(number)


def _candidate_fields(candidate: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(candidate, DataArtifact):
        return candidate.parsed
    if isinstance(candidate, ImageArtifact):
        return candidate.metadata
    if isinstance(candidate, SaveResult):
        return candidate.metadata
    if isinstance(candidate, Mapping):
        return candidate
    return None


def _matches(candidate: Any, prop: str, expected: Any) -> bool:
    fields = _candidate_fields(candidate)
    return fields is not None and prop in fields and fields[prop] == expected
