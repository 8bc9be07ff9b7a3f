from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
from imgflow_engine.core import UploadError, atomic_write_bytes, load_settings, sha256_bytes
from imgflow_engine.pipeline.types import ImageArtifact, SaveResult

log = structlog.get_logger(__name__)


class FsSaveProvider:
    """
    Writes image bytes to the local filesystem.

    Relative paths resolve under `base_dir` (settings.output_dir by default);
    absolute paths are used as-is. A path without a suffix gets one from the
    image format.
    """

    name = "fs"
    aliases = ("file", "local")

    def __init__(self, base_dir: Path | str | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else load_settings().output_dir

    def resolve(self, path: str, image: ImageArtifact) -> Path:
        target = Path(path)
        if not target.is_absolute():
            target = self.base_dir / target
        if not target.suffix:
            target = target.with_suffix(f".{image.extension}")
        return target

    def save(self, image: ImageArtifact, path: str, **options: Any) -> SaveResult:
        target = self.resolve(path, image)
        mode = int(options.get("mode", 0o644))
        try:
            atomic_write_bytes(target, image.bytes, mode=mode)
        except OSError as e:
            raise UploadError(
                f"Failed to write {target}: {e}", provider=self.name, operation="save"
            ) from e

        digest = sha256_bytes(image.bytes)
        log.debug("fs.saved", path=str(target), size=image.size, sha256=digest)
        return SaveResult(
            provider=self.name,
            location=str(target),
            size=image.size,
            format=image.format,
            metadata={"sha256": digest},
        )
