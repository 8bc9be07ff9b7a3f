from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from imgflow_engine.core.errors import PipelineDefinitionError
from imgflow_engine.core.json import read_json
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from .types import Artifact

VarName = Annotated[str, StringConstraints(min_length=1, strip_whitespace=True)]
Params = dict[str, Any]


class _StepBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    id: Optional[str] = None


class GenerateStep(_StepBase):
    kind: Literal["generate"] = "generate"
    generator: Optional[str] = None
    params: Params = Field(default_factory=dict)
    out: VarName


class TransformStep(_StepBase):
    kind: Literal["transform"] = "transform"
    op: str = Field(..., min_length=1)
    in_: VarName = Field(..., alias="in")
    params: Params = Field(default_factory=dict)
    out: VarName
    provider: Optional[str] = None
    to: Optional[str] = None


class SaveStep(_StepBase):
    kind: Literal["save"] = "save"
    in_: VarName = Field(..., alias="in")
    destination: str = Field(..., min_length=1)
    provider: Optional[str] = None
    out: Optional[VarName] = None


class VisionStep(_StepBase):
    kind: Literal["vision"] = "vision"
    provider: Optional[str] = None
    in_: VarName = Field(..., alias="in")
    params: Params = Field(default_factory=dict)
    out: VarName


class TextStep(_StepBase):
    kind: Literal["text"] = "text"
    provider: Optional[str] = None
    in_: Optional[VarName] = Field(default=None, alias="in")
    params: Params = Field(default_factory=dict)
    out: VarName


class FanOutStep(_StepBase):
    kind: Literal["fan-out"] = "fan-out"
    in_: VarName = Field(..., alias="in")
    mode: Literal["count", "array"]
    count: Optional[int] = Field(default=None, ge=0)
    array_property: Optional[str] = Field(default=None, alias="arrayProperty")
    out: list[VarName] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate(self) -> "FanOutStep":
        if len(self.out) != len(set(self.out)):
            raise ValueError("fan-out output names must be unique")
        return self


class CollectStep(_StepBase):
    kind: Literal["collect"] = "collect"
    in_: list[VarName] = Field(..., alias="in", min_length=1)
    wait_mode: Literal["all", "available"] = Field(default="all", alias="waitMode")
    min_required: Optional[int] = Field(default=None, ge=1, alias="minRequired")
    out: VarName


class RouterStep(_StepBase):
    kind: Literal["router"] = "router"
    in_: VarName = Field(..., alias="in")
    selection_in: VarName = Field(..., alias="selectionIn")
    selection_type: Literal["index", "property"] = Field(..., alias="selectionType")
    selection_property: str = Field(..., min_length=1, alias="selectionProperty")
    out: VarName


Step = Annotated[
    Union[
        GenerateStep,
        TransformStep,
        SaveStep,
        VisionStep,
        TextStep,
        FanOutStep,
        CollectStep,
        RouterStep,
    ],
    Field(discriminator="kind"),
]

class Pipeline(BaseModel):
    """
    A declarative workflow: ordered steps plus the variables available
    before any step runs.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    name: Optional[str] = None
    steps: list[Step] = Field(default_factory=list)
    concurrency: Optional[int] = Field(default=None, ge=1)
    initial_variables: dict[str, Any] = Field(
        default_factory=dict, alias="initialVariables"
    )

    @model_validator(mode="after")
    def _validate_initial_variables(self) -> "Pipeline":
        for k in self.initial_variables:
            if not isinstance(k, str) or not k:
                raise ValueError("initial variable names must be non-empty strings")
        return self

    @property
    def display_name(self) -> str:
        return self.name or "unnamed"


_STEP_ADAPTER: TypeAdapter[Step] = TypeAdapter(Step)


def parse_step(raw: Mapping[str, Any] | Step) -> Step:
    if isinstance(raw, BaseModel):
        return raw  # type: ignore[return-value]
    try:
        return _STEP_ADAPTER.validate_python(dict(raw))
    except PydanticValidationError as e:
        raise PipelineDefinitionError(
            f"Invalid step definition: {e}", errors=e.errors()
        ) from e


def load_pipeline(
    source: Path | str | Mapping[str, Any],
    *,
    initial_variables: Mapping[str, Artifact] | None = None,
) -> Pipeline:
    """
    Build a Pipeline from a mapping or a JSON file.

    `initial_variables` are merged over any declared in the source; artifacts
    cannot be expressed in JSON so file-based pipelines usually pass them here.
    """
    if isinstance(source, Mapping):
        raw = dict(source)
    else:
        try:
            raw = read_json(Path(source))
        except json.JSONDecodeError as e:
            raise PipelineDefinitionError(f"Pipeline is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise PipelineDefinitionError(
            f"Pipeline must be a JSON object, got {type(raw).__name__}"
        )

    if initial_variables:
        merged = dict(raw.get("initialVariables") or raw.get("initial_variables") or {})
        merged.update(initial_variables)
        raw.pop("initial_variables", None)
        raw["initialVariables"] = merged

    try:
        return Pipeline.model_validate(raw)
    except PydanticValidationError as e:
        raise PipelineDefinitionError(
            f"Invalid pipeline definition: {e}", errors=e.errors()
        ) from e


def step_inputs(step: Step) -> list[str]:
    """Every variable name a step declares it reads, in declaration order."""
    match step:
        case GenerateStep():
            return []
        case TransformStep() | SaveStep() | VisionStep() | FanOutStep():
            return [step.in_]
        case TextStep():
            return [step.in_] if step.in_ else []
        case CollectStep():
            return list(step.in_)
        case RouterStep():
            return [step.in_, step.selection_in]
    raise PipelineDefinitionError(f"Unknown step kind: {getattr(step, 'kind', step)!r}")


def step_outputs(step: Step) -> list[str]:
    match step:
        case FanOutStep():
            return list(step.out)
        case SaveStep():
            return [step.out] if step.out else []
        case (
            GenerateStep()
            | TransformStep()
            | VisionStep()
            | TextStep()
            | CollectStep()
            | RouterStep()
        ):
            return [step.out]
    raise PipelineDefinitionError(f"Unknown step kind: {getattr(step, 'kind', step)!r}")
