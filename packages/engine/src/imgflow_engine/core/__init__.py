from .config import Settings, load_settings
from .errors import (
    ConfigurationError,
    DuplicateOutputError,
    ErrorCategory,
    FlowError,
    GatingRejectedError,
    GenerationError,
    NetworkError,
    PipelineDefinitionError,
    PipelineError,
    ProviderError,
    ProviderNotFoundError,
    StepError,
    TransformError,
    UnsatisfiableGraphError,
    UploadError,
    ValidationError,
    error_category,
    is_retryable,
    step_error_from_exc,
    wrap_error,
)
from .fs import atomic_write_bytes, safe_unlink
from .hashing import sha256_bytes
from .json import json_default, read_json, stable_json_dumps
from .logging import ILogger, bound, configure_logging, get_logger
from .provenance import new_run_id
from .time import format_duration_ms, monotonic_ms, utc_now_iso

__all__ = [
    "Settings",
    "load_settings",
    "ErrorCategory",
    "FlowError",
    "ConfigurationError",
    "ProviderNotFoundError",
    "PipelineError",
    "UnsatisfiableGraphError",
    "DuplicateOutputError",
    "PipelineDefinitionError",
    "ValidationError",
    "GenerationError",
    "TransformError",
    "UploadError",
    "NetworkError",
    "ProviderError",
    "GatingRejectedError",
    "StepError",
    "step_error_from_exc",
    "is_retryable",
    "error_category",
    "wrap_error",
    "atomic_write_bytes",
    "safe_unlink",
    "sha256_bytes",
    "json_default",
    "read_json",
    "stable_json_dumps",
    "ILogger",
    "configure_logging",
    "get_logger",
    "bound",
    "new_run_id",
    "monotonic_ms",
    "format_duration_ms",
    "utc_now_iso",
]
