from __future__ import annotations

import traceback
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, Optional, Sequence


class ErrorCategory(StrEnum):
    """
    Classification used by callers to pick a handling strategy.
    """

    USER_INPUT = "user_input"
    PROVIDER_ERROR = "provider_error"
    PROVIDER_CONFIG = "provider_config"
    VALIDATION = "validation"
    EXECUTION = "execution"
    NETWORK = "network"
    GATING = "gating"
    INTERNAL = "internal"


class FlowError(RuntimeError):
    """Base error"""

    default_code = "FLOW_ERROR"
    default_category = ErrorCategory.INTERNAL
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        provider: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.provider = provider
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        cause = self.__cause__
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "retryable": self.retryable,
            "provider": self.provider,
            "operation": self.operation,
            "cause": str(cause) if cause is not None else None,
        }


# Configuration kind: never retryable, always surfaced.


class ConfigurationError(FlowError):
    """
    The pipeline or a provider is configured in a way that cannot run:
    missing variable, unknown step kind, router selection out of range,
    collect threshold unmet.
    """

    default_code = "CONFIGURATION_ERROR"
    default_category = ErrorCategory.PROVIDER_CONFIG

    def __init__(self, message: str, **kw: Any) -> None:
        kw["retryable"] = False
        super().__init__(message, **kw)


class ProviderNotFoundError(ConfigurationError):
    default_code = "PROVIDER_NOT_FOUND"

    def __init__(self, provider_type: str, provider_name: str) -> None:
        super().__init__(
            f"Provider {provider_name!r} not found for type {provider_type!r}",
            provider=provider_name,
            operation=provider_type,
        )
        self.provider_type = provider_type


class PipelineError(ConfigurationError):
    """Pre-execution validation failure of a pipeline graph"""

    default_code = "PIPELINE_ERROR"
    default_category = ErrorCategory.VALIDATION


class UnsatisfiableGraphError(PipelineError):
    """
    Raised when scheduling cannot make progress: a true cycle or an input
    that is neither pre-supplied nor produced by any step.

    `unsatisfied` lists every blocked step with its missing names.
    """

    def __init__(self, unsatisfied: Sequence[dict[str, Any]]) -> None:
        self.unsatisfied = [dict(u) for u in unsatisfied]
        parts = [
            f"{u['step']} ({u['kind']}) needs {', '.join(u['needs']) or '-'}"
            for u in self.unsatisfied
        ]
        super().__init__(
            "Circular dependency or missing input detected in pipeline. "
            "Unsatisfied steps: " + "; ".join(parts)
        )

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["unsatisfied"] = self.unsatisfied
        return d


class DuplicateOutputError(PipelineError):
    def __init__(self, name: str, steps: Sequence[str]) -> None:
        super().__init__(
            f"Output variable {name!r} is declared by more than one step: "
            + ", ".join(steps)
        )
        self.name = name
        self.steps = list(steps)


class PipelineDefinitionError(PipelineError):
    """Pipeline definition failed model validation"""

    def __init__(self, message: str, *, errors: Sequence[Any] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


class ValidationError(FlowError):
    """Invalid user-provided values (bad params, missing fields)"""

    default_code = "VALIDATION_ERROR"
    default_category = ErrorCategory.USER_INPUT

    def __init__(self, message: str, **kw: Any) -> None:
        kw["retryable"] = False
        super().__init__(message, **kw)


# Execution kind: the provider call itself failed. The retryable flag is
# forwarded to the caller, never acted on by the engine.


class GenerationError(FlowError):
    default_code = "GENERATION_ERROR"
    default_category = ErrorCategory.EXECUTION


class TransformError(FlowError):
    default_code = "TRANSFORM_ERROR"
    default_category = ErrorCategory.EXECUTION


class UploadError(FlowError):
    default_code = "UPLOAD_ERROR"
    default_category = ErrorCategory.EXECUTION
    default_retryable = True


class NetworkError(FlowError):
    default_code = "NETWORK_ERROR"
    default_category = ErrorCategory.NETWORK
    default_retryable = True


class ProviderError(FlowError):
    default_code = "PROVIDER_ERROR"
    default_category = ErrorCategory.PROVIDER_ERROR


# Gating kind


class GatingRejectedError(FlowError):
    """
    A result was produced but an external gate (e.g. content moderation)
    refused it.
    """

    default_code = "GATE_REJECTED"
    default_category = ErrorCategory.GATING

    def __init__(
        self, message: str, *, categories: Sequence[str] = (), **kw: Any
    ) -> None:
        kw["retryable"] = False
        super().__init__(message, **kw)
        self.categories = list(categories)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, FlowError):
        return exc.retryable
    return False


def error_category(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, FlowError):
        return exc.category
    return ErrorCategory.INTERNAL


def wrap_error(exc: BaseException, **kw: Any) -> FlowError:
    """
    Normalize an arbitrary exception into a FlowError. FlowErrors are
    returned as-is.
    """
    if isinstance(exc, FlowError):
        return exc
    wrapped = FlowError(str(exc) or type(exc).__name__, **kw)
    wrapped.__cause__ = exc
    return wrapped


@dataclass(frozen=True, slots=True)
class StepError:
    """
    A normalized error record for step failures.
    """

    exc_type: str
    message: str
    code: str
    category: str
    retryable: bool
    traceback: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def step_error_from_exc(exc: BaseException) -> StepError:
    wrapped = wrap_error(exc)
    return StepError(
        exc_type=type(exc).__name__,
        message=str(exc),
        code=wrapped.code,
        category=wrapped.category.value,
        retryable=wrapped.retryable,
        traceback="".join(traceback.format_exception(exc)),
    )
