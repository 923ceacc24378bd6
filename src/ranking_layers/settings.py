"""Layer-combination settings: every non-empty subset of the configured layers."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ranking_layers.errors import ConfigurationError


@dataclass(frozen=True)
class Setting:
    """
    A subset of layers. ``index`` is its bitmask (bit j set = j-th configured
    layer included); ``layers`` follow the configured order.
    """

    index: int
    layers: tuple[str, ...]

    @property
    def label(self) -> str:
        return ",".join(self.layers)

    @property
    def layer_set(self) -> frozenset[str]:
        return frozenset(self.layers)

    def __str__(self) -> str:
        return self.label


def enumerate_settings(layers: Sequence[str]) -> list[Setting]:
    """
    Return the 2^L - 1 non-empty layer subsets ordered by bitmask.

    Raises:
        ConfigurationError: If ``layers`` is empty or has duplicates.
    """
    layers = tuple(layers)
    if not layers:
        raise ConfigurationError("No layers configured")
    if len(set(layers)) != len(layers):
        raise ConfigurationError(f"Duplicate layers in {list(layers)}")

    settings = []
    for index in range(1, 1 << len(layers)):
        subset = tuple(layer for j, layer in enumerate(layers) if index & (1 << j))
        settings.append(Setting(index, subset))
    return settings


def find_baseline(settings: Sequence[Setting], baseline_layers: Iterable[str]) -> int:
    """
    Position in ``settings`` of the setting whose layers equal ``baseline_layers``.

    Raises:
        ConfigurationError: If no setting matches.
    """
    wanted = frozenset(baseline_layers)
    for position, setting in enumerate(settings):
        if setting.layer_set == wanted:
            return position
    raise ConfigurationError(
        f"Baseline layers {sorted(wanted)} do not match any setting"
    )


__all__ = ["Setting", "enumerate_settings", "find_baseline"]
