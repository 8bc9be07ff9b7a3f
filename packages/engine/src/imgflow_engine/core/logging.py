from __future__ import annotations

import logging
import sys
from typing import (
    TYPE_CHECKING,
    Any,
    ContextManager,
    Mapping,
    MutableMapping,
    Protocol,
    runtime_checkable,
)

import structlog
from rich.logging import RichHandler
from structlog.contextvars import bound_contextvars, merge_contextvars

if TYPE_CHECKING:
    from .config import Settings

_CONFIGURED = False

# Libraries whose per-request INFO lines drown out step logs.
_NOISY_LOGGERS = ("httpx", "httpcore")


@runtime_checkable
class ILogger(Protocol):
    def debug(self, event: str, **kw: Any) -> Any: ...
    def info(self, event: str, **kw: Any) -> Any: ...
    def warning(self, event: str, **kw: Any) -> Any: ...
    def error(self, event: str, **kw: Any) -> Any: ...
    def exception(self, event: str, **kw: Any) -> Any: ...
    def bind(self, **kw: Any) -> "ILogger": ...


def summarize_bytes(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    """
    Replace raw byte payloads (image bodies) with their length.
    """
    for key, value in event_dict.items():
        if isinstance(value, (bytes, bytearray, memoryview)):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def _processors(fmt: str) -> list[Any]:
    renderer: Any = (
        structlog.processors.KeyValueRenderer(sort_keys=True)
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    return [
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        summarize_bytes,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def _handler(fmt: str) -> logging.Handler:
    if fmt == "console":
        handler: logging.Handler = RichHandler(
            rich_tracebacks=True,
            markup=False,
            show_time=False,
            show_path=False,
        )
    else:
        handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(
    settings: "Settings | None" = None,
    *,
    level: str | None = None,
    fmt: str | None = None,
    force: bool = False,
) -> None:
    """
    Route structlog through stdlib logging once per process.

    Explicit `level`/`fmt` win over `settings`; `force` re-applies the setup.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    lvl = (level or (settings.log_level if settings else "INFO")).upper()
    out = fmt or (settings.log_format if settings else "console")

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(lvl)

    handler = _handler(out)
    handler.setLevel(lvl)
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    structlog.configure(
        processors=_processors(out),
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not name:
        return structlog.get_logger("imgflow")
    if name == "imgflow" or name.startswith("imgflow."):
        return structlog.get_logger(name)
    return structlog.get_logger(f"imgflow.{name}")


def bound(**values: Any) -> ContextManager[None]:
    """
    Bind `values` into the structlog context for the duration of a `with`
    block, restoring whatever the caller had bound afterwards.
    """
    return bound_contextvars(**values)
