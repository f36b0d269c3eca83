"""
Module: capital_engines.asset_context
Responsibility:
    Build the allocation engine's ``AssetWithContext`` rows from a
    portfolio snapshot, the configured class/subclass target ranges and
    the latest asset scores.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Callers load the
    snapshot; this module only computes.

Rules:
    - Ignored holdings are skipped and excluded from the portfolio total.
    - current % = value / total x 100 (0 when the total is 0).
    - Target range: the subclass range when configured, else the class
      range, else 0..100.  The target is the midpoint of that range and
      the minimum allocation value comes from the same range.
    - gap = target - current.
    - Over-allocated iff current % > range max.
    - A holding without a score gets the default score (50).
    - Percentages are quantized to 4 places so the values captured for
      replay are exactly the values the engine used.

Failure modes:
    - ValidationError for a range whose min exceeds its max, or whose
      bounds fall outside 0..100.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal

from capital_kernel.domain.assets import AssetWithContext
from capital_kernel.domain.decimal_math import (
    ONE_HUNDRED,
    ZERO,
    add,
    divide,
    multiply,
    round_to,
    subtract,
)
from capital_kernel.exceptions import ValidationError
from capital_kernel.logging_config import get_logger

logger = get_logger("engines.asset_context")

DEFAULT_SCORE = Decimal("50")


@dataclass(frozen=True)
class HoldingSnapshot:
    """One holding of the portfolio, valued in the base currency."""

    asset_id: str
    symbol: str
    value: Decimal
    class_id: str | None = None
    subclass_id: str | None = None
    is_ignored: bool = False
    name: str | None = None


@dataclass(frozen=True)
class TargetRange:
    """Configured target allocation band for a class or subclass."""

    target_min: Decimal
    target_max: Decimal
    min_allocation_value: Decimal | None = None

    def __post_init__(self) -> None:
        if self.target_min < ZERO or self.target_max > ONE_HUNDRED:
            raise ValidationError(
                "target_range", f"{self.target_min}..{self.target_max} is outside 0..100"
            )
        if self.target_min > self.target_max:
            raise ValidationError(
                "target_range", f"min {self.target_min} exceeds max {self.target_max}"
            )

    @property
    def midpoint(self) -> Decimal:
        return divide(add(self.target_min, self.target_max), Decimal(2))


FULL_RANGE = TargetRange(target_min=ZERO, target_max=ONE_HUNDRED)


def resolve_target_range(
    holding: HoldingSnapshot,
    class_ranges: Mapping[str, TargetRange],
    subclass_ranges: Mapping[str, TargetRange],
) -> TargetRange:
    """Subclass range, else class range, else the full 0..100 band."""
    if holding.subclass_id is not None and holding.subclass_id in subclass_ranges:
        return subclass_ranges[holding.subclass_id]
    if holding.class_id is not None and holding.class_id in class_ranges:
        return class_ranges[holding.class_id]
    return FULL_RANGE


def build_assets_with_context(
    holdings: Sequence[HoldingSnapshot],
    class_ranges: Mapping[str, TargetRange],
    subclass_ranges: Mapping[str, TargetRange],
    scores: Mapping[str, Decimal],
    default_score: Decimal = DEFAULT_SCORE,
) -> list[AssetWithContext]:
    """
    Build engine inputs for every non-ignored holding, in holding order.

    ``scores`` is keyed by asset id.
    """
    active = [h for h in holdings if not h.is_ignored]
    total_value = add(*(h.value for h in active))

    assets: list[AssetWithContext] = []
    for holding in active:
        if total_value.is_zero():
            current_pct = ZERO
        else:
            current_pct = multiply(divide(holding.value, total_value), ONE_HUNDRED)

        target_range = resolve_target_range(holding, class_ranges, subclass_ranges)
        target_pct = target_range.midpoint

        assets.append(
            AssetWithContext(
                id=holding.asset_id,
                symbol=holding.symbol,
                class_id=holding.class_id,
                subclass_id=holding.subclass_id,
                current_allocation_pct=round_to(current_pct),
                target_allocation_pct=round_to(target_pct),
                allocation_gap_pct=round_to(subtract(target_pct, current_pct)),
                score=round_to(scores.get(holding.asset_id, default_score)),
                current_value=round_to(holding.value),
                min_allocation_value=target_range.min_allocation_value,
                is_over_allocated=current_pct > target_range.target_max,
            )
        )

    logger.debug(
        "asset_context_built",
        extra={
            "holding_count": len(holdings),
            "asset_count": len(assets),
            "ignored_count": len(holdings) - len(active),
        },
    )
    return assets
