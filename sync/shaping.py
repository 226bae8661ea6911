"""
Network-proportional data shaping.

On degraded networks a batch is thinned and its coordinates truncated
before transmission. Shaping always works on copies: queued items are
never modified. With compression level ``c``:

- every k-th low/normal priority item is kept, ``k = round(1 / (1 - c))``;
  high and critical items are always kept
- coordinate keys are rounded to ``base_precision - round(c * 4)`` decimals

Items thinned out are reported back so the pipeline can count them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from errors.exceptions import require
from signals.models import NetworkQuality
from sync.models import SyncItem, SyncPriority

COORDINATE_KEYS = frozenset({"latitude", "longitude", "lat", "lon", "lng"})

_NEVER_THINNED = frozenset({SyncPriority.HIGH, SyncPriority.CRITICAL})


@dataclass
class ShapingConfig:
    poor_level: float = 0.8
    fair_level: float = 0.5
    base_precision: int = 6

    def __post_init__(self) -> None:
        for name in ("poor_level", "fair_level"):
            value = getattr(self, name)
            require(0 <= value < 1, f"shaping.{name}", "must be in [0, 1)", value)
        require(self.base_precision >= 4, "shaping.base_precision", "must be at least 4",
                self.base_precision)


@dataclass
class ShapedBatch:
    items: List[SyncItem]
    compacted: List[SyncItem] = field(default_factory=list)
    level: float = 0.0

    @property
    def size_bytes(self) -> int:
        return sum(item.size_bytes for item in self.items)


def compression_level(quality: NetworkQuality, config: ShapingConfig) -> float:
    if quality == NetworkQuality.POOR:
        return config.poor_level
    if quality == NetworkQuality.FAIR:
        return config.fair_level
    return 0.0


def skip_factor(level: float) -> int:
    if level <= 0:
        return 1
    return max(1, round(1.0 / (1.0 - level)))


def precision_digits(level: float, base_precision: int = 6) -> int:
    return base_precision - round(level * 4)


def truncate_coordinates(payload: Mapping[str, Any], digits: int) -> Dict[str, Any]:
    shaped = dict(payload)
    for key, value in payload.items():
        if key in COORDINATE_KEYS and isinstance(value, (int, float)) and not isinstance(value, bool):
            shaped[key] = round(float(value), digits)
        elif isinstance(value, Mapping):
            shaped[key] = truncate_coordinates(value, digits)
    return shaped


def shape_batch(
    items: Sequence[SyncItem],
    quality: NetworkQuality,
    config: ShapingConfig,
) -> ShapedBatch:
    """
    Return a shaped copy of ``items`` for the given network quality.

    Good, excellent and unknown qualities pass the batch through unchanged.
    """
    level = compression_level(quality, config)
    if level <= 0:
        return ShapedBatch(items=list(items))

    k = skip_factor(level)
    digits = precision_digits(level, config.base_precision)

    kept: List[SyncItem] = []
    compacted: List[SyncItem] = []
    thinnable_index = 0
    for item in items:
        if item.priority not in _NEVER_THINNED:
            keep = thinnable_index % k == 0
            thinnable_index += 1
            if not keep:
                compacted.append(item)
                continue
        kept.append(item.with_payload(truncate_coordinates(item.payload, digits)))

    return ShapedBatch(items=kept, compacted=compacted, level=level)
