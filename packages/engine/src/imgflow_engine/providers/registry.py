from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

import structlog
from imgflow_engine.core.errors import ConfigurationError, ProviderNotFoundError

from .base import ImageGenerator, SaveProvider, TextProvider, TransformProvider, VisionProvider

log = structlog.get_logger(__name__)

_LOCAL_PREFIXES = ("./", "../", "/")


@dataclass(frozen=True, slots=True)
class Destination:
    provider: str
    path: str
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Capabilities:
    generators: tuple[str, ...]
    transforms: tuple[str, ...]
    save: tuple[str, ...]
    vision: tuple[str, ...]
    text: tuple[str, ...]

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "generators": list(self.generators),
            "transforms": list(self.transforms),
            "save": list(self.save),
            "vision": list(self.vision),
            "text": list(self.text),
        }


class ProviderRegistry:
    """
    Providers keyed by name, one registry per engine instance.

    Lookups of unregistered names raise ProviderNotFoundError, which is a
    configuration error.
    """

    def __init__(
        self,
        *,
        default_generator: str | None = None,
        default_transform: str | None = None,
        default_save: str = "fs",
        default_ai: str | None = None,
    ) -> None:
        self.generators: dict[str, ImageGenerator] = {}
        self.transforms: dict[str, TransformProvider] = {}
        self.save_providers: dict[str, SaveProvider] = {}
        self.vision: dict[str, VisionProvider] = {}
        self.text: dict[str, TextProvider] = {}

        self.default_generator = default_generator
        self.default_transform = default_transform
        self.default_save = default_save
        self.default_ai = default_ai

    # Registration

    def register_generator(self, generator: ImageGenerator) -> None:
        self.generators[generator.name] = generator
        log.debug("provider.registered", category="generator", name=generator.name)

    def register_transform(self, provider: TransformProvider) -> None:
        self.transforms[provider.name] = provider
        log.debug("provider.registered", category="transform", name=provider.name)

    def register_save(
        self, provider: SaveProvider, *, aliases: Iterable[str] = ()
    ) -> None:
        self.save_providers[provider.name] = provider
        all_aliases = list(aliases) + list(getattr(provider, "aliases", ()) or ())
        for alias in all_aliases:
            self.save_providers[alias] = provider
        log.debug(
            "provider.registered",
            category="save",
            name=provider.name,
            aliases=all_aliases,
        )

    def register_vision(self, provider: VisionProvider) -> None:
        self.vision[provider.name] = provider
        log.debug("provider.registered", category="vision", name=provider.name)

    def register_text(self, provider: TextProvider) -> None:
        self.text[provider.name] = provider
        log.debug("provider.registered", category="text", name=provider.name)

    # Lookup

    def generator(self, name: Optional[str]) -> ImageGenerator:
        resolved = name or self.default_generator
        if not resolved:
            raise ConfigurationError("No generator specified and no default configured")
        try:
            return self.generators[resolved]
        except KeyError:
            raise ProviderNotFoundError("generator", resolved) from None

    def transform(self, name: Optional[str]) -> TransformProvider:
        resolved = name or self.default_transform
        if not resolved:
            if len(self.transforms) == 1:
                return next(iter(self.transforms.values()))
            raise ConfigurationError(
                "No transform provider specified and no default configured"
            )
        try:
            return self.transforms[resolved]
        except KeyError:
            raise ProviderNotFoundError("transform", resolved) from None

    def vision_provider(self, name: Optional[str]) -> VisionProvider:
        resolved = name or self.default_ai
        if not resolved:
            raise ConfigurationError(
                "No vision provider specified and no default configured"
            )
        try:
            return self.vision[resolved]
        except KeyError:
            raise ProviderNotFoundError("vision", resolved) from None

    def text_provider(self, name: Optional[str]) -> TextProvider:
        resolved = name or self.default_ai
        if not resolved:
            raise ConfigurationError("No text provider specified and no default configured")
        try:
            return self.text[resolved]
        except KeyError:
            raise ProviderNotFoundError("text", resolved) from None

    def save_provider(self, name: str) -> SaveProvider:
        try:
            return self.save_providers[name]
        except KeyError:
            raise ProviderNotFoundError("save", name) from None

    def parse_destination(
        self, destination: str, *, provider: str | None = None
    ) -> Destination:
        """
        Resolve where a save goes.

          - explicit provider wins
          - "proto://rest" routes to provider "proto"
          - "./x", "../x", "/x" route to the filesystem provider
          - anything else goes to the default save provider
        """
        if provider:
            return Destination(provider=provider, path=destination)

        if "://" in destination:
            proto, rest = destination.split("://", 1)
            return Destination(provider=proto, path=rest)

        if destination.startswith(_LOCAL_PREFIXES):
            return Destination(provider="fs", path=destination)

        return Destination(provider=self.default_save or "fs", path=destination)

    def capabilities(self) -> Capabilities:
        return Capabilities(
            generators=tuple(sorted(self.generators)),
            transforms=tuple(sorted(self.transforms)),
            save=tuple(sorted({p.name for p in self.save_providers.values()})),
            vision=tuple(sorted(self.vision)),
            text=tuple(sorted(self.text)),
        )
