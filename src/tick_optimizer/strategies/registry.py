"""
StrategyRegistry — strategies available to the optimizer, by slug.

The registry is an explicit object handed to the service; nothing is looked
up from module-level state.
"""

from typing import Iterable

from tick_optimizer.exceptions import ConfigValidationError, UnknownStrategyError
from tick_optimizer.logging import get_logger
from tick_optimizer.strategies.base import StrategySpec

logger = get_logger(__name__)


class StrategyRegistry:
    """Slug -> StrategySpec mapping."""

    def __init__(self, strategies: Iterable[StrategySpec] = ()) -> None:
        self._strategies: dict[str, StrategySpec] = {}
        for spec in strategies:
            self.register(spec)

    def register(self, spec: StrategySpec, replace: bool = False) -> None:
        if spec.slug in self._strategies and not replace:
            raise ConfigValidationError(f"Strategy already registered: {spec.slug}")
        self._strategies[spec.slug] = spec
        logger.debug("Strategy registered", slug=spec.slug, phases=len(spec.phase_presets))

    def unregister(self, slug: str) -> bool:
        return self._strategies.pop(slug, None) is not None

    def get(self, slug: str) -> StrategySpec:
        spec = self._strategies.get(slug)
        if spec is None:
            raise UnknownStrategyError(slug)
        return spec

    def slugs(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, slug: object) -> bool:
        return slug in self._strategies

    def __len__(self) -> int:
        return len(self._strategies)


def build_default_registry() -> StrategyRegistry:
    """A fresh registry holding the bundled strategies."""
    from tick_optimizer.strategies import price_band

    return StrategyRegistry([price_band.STRATEGY])
