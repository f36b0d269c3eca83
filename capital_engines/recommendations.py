"""
Module: capital_engines.recommendations
Responsibility:
    Turn scored assets with target-allocation context into per-asset
    recommended amounts of new capital.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import capital_kernel.domain, capital_kernel.exceptions,
    capital_kernel.logging_config and capital_engines.

Algorithm:
    1. priority = allocation_gap_pct x (score / 100), quantized to 4 places.
    2. Sort by priority descending; equal priorities by symbol ascending.
    3. Over-allocated assets are excluded and always receive 0.
    4. The remaining assets with positive priority form the pool; the total
       is split across the pool proportionally to priority.  When no asset
       has positive priority, everything receives 0 and the capital stays
       unallocated.
    5. Any pool asset whose share falls below its minimum allocation value
       is dropped to 0 and the total is re-split over the smaller pool,
       repeatedly, until nothing more drops or the pool is empty.  An empty
       pool leaves the capital unallocated.
    6. Amounts are quantized to 4 places (ROUND_HALF_UP) and the rounding
       residue goes to the highest-priority funded asset.

Invariants enforced:
    - FULL_ALLOCATION: sum of amounts == total investable (within 0.0001)
      whenever the final pool is non-empty.
    - OVER_ALLOCATED_ZERO: over-allocated assets always receive 0.
    - Determinism: output order and amounts depend only on input values,
      never on input order.

Failure modes:
    - InvalidDecimalError for a malformed total investable.
    - ValidationError for a total needing more significant digits than the
      arithmetic context carries, which would break FULL_ALLOCATION.
    - Never raises for an empty asset list or zero/negative capital.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from capital_engines.tracer import traced_engine
from capital_kernel.domain.assets import (
    AssetWithContext,
    AssetWithPriority,
    RecommendationBreakdown,
    RecommendationItem,
)
from capital_kernel.domain.decimal_math import (
    DECIMAL_PRECISION,
    DEFAULT_TOLERANCE,
    MONETARY_PLACES,
    ONE_HUNDRED,
    ZERO,
    add,
    divide,
    fits_precision,
    is_positive,
    multiply,
    parse_decimal,
    round_to,
    subtract,
    to_decimal_string,
    within_tolerance,
)
from capital_kernel.exceptions import ValidationError
from capital_kernel.logging_config import get_logger

logger = get_logger("engines.recommendations")

ENGINE_NAME = "capital_allocation"
ENGINE_VERSION = "1.0"


# =============================================================================
# Priority
# =============================================================================


def calculate_priority(allocation_gap: Decimal, score: Decimal) -> Decimal:
    """``priority = allocation_gap x (score / 100)``; negative gaps stay negative."""
    return multiply(allocation_gap, divide(score, ONE_HUNDRED))


def calculate_priority_from_strings(allocation_gap: str, score: str) -> str:
    """String-in, string-out priority with 4 decimal places."""
    priority = calculate_priority(
        parse_decimal(allocation_gap, "allocation_gap"),
        parse_decimal(score, "score"),
    )
    return to_decimal_string(priority)


def sort_assets_by_priority(assets: Sequence[AssetWithContext]) -> list[AssetWithPriority]:
    """Attach priorities and sort: priority descending, then symbol ascending."""
    with_priority = [
        AssetWithPriority(
            asset=asset,
            priority=round_to(calculate_priority(asset.allocation_gap_pct, asset.score)),
        )
        for asset in assets
    ]
    return sorted(with_priority, key=lambda a: (-a.priority, a.symbol, a.asset.id))


# =============================================================================
# Distribution
# =============================================================================


@dataclass(frozen=True)
class Distribution:
    """Amount given to one asset, aligned with the sorted asset list."""

    asset_id: str
    amount: Decimal
    redistributed_from: Decimal | None = None


def _split(total: Decimal, pool: list[int], priorities: list[Decimal]) -> dict[int, Decimal]:
    weight = add(*(priorities[i] for i in pool))
    return {i: divide(multiply(total, priorities[i]), weight) for i in pool}


def distribute_capital(
    sorted_assets: Sequence[AssetWithPriority],
    total_investable: Decimal,
) -> list[Distribution]:
    """
    Split ``total_investable`` over assets already sorted by priority.

    Postconditions:
        - One Distribution per input asset, in input order.
        - Amounts have 4 decimal places and are never negative.
        - Sum == total_investable (4 places) when any asset is funded.
    """
    if not sorted_assets:
        return []

    total = round_to(total_investable)
    if not is_positive(total):
        return [Distribution(a.asset.id, round_to(ZERO)) for a in sorted_assets]

    priorities = [a.priority for a in sorted_assets]
    pool = [
        i for i, a in enumerate(sorted_assets)
        if not a.is_over_allocated and is_positive(a.priority)
    ]
    if not pool:
        logger.info(
            "allocation_no_positive_priority",
            extra={"asset_count": len(sorted_assets), "total_investable": str(total)},
        )
        return [Distribution(a.asset.id, round_to(ZERO)) for a in sorted_assets]

    first_pass = _split(total, pool, priorities)
    shares = first_pass
    dropped_any = False
    while pool:
        below_minimum = [
            i for i in pool
            if sorted_assets[i].asset.min_allocation_value is not None
            and shares[i] < sorted_assets[i].asset.min_allocation_value
        ]
        if not below_minimum:
            break
        dropped_any = True
        logger.debug(
            "allocation_minimum_dropped",
            extra={"symbols": [sorted_assets[i].symbol for i in below_minimum]},
        )
        pool = [i for i in pool if i not in below_minimum]
        if pool:
            shares = _split(total, pool, priorities)

    if not pool:
        logger.warning(
            "allocation_all_below_minimum",
            extra={"asset_count": len(sorted_assets), "total_investable": str(total)},
        )
        return [Distribution(a.asset.id, round_to(ZERO)) for a in sorted_assets]

    amounts = {i: round_to(shares[i]) for i in pool}
    residue = subtract(total, add(*amounts.values()))
    if residue:
        # pool keeps sorted order, so pool[0] is the top-priority funded asset
        amounts[pool[0]] = add(amounts[pool[0]], residue)
        if amounts[pool[0]] < ZERO:
            # sub-cent totals: take the overshoot from the lowest priorities
            deficit = -amounts[pool[0]]
            amounts[pool[0]] = round_to(ZERO)
            for i in reversed(pool[1:]):
                taken = min(deficit, amounts[i])
                amounts[i] = subtract(amounts[i], taken)
                deficit = subtract(deficit, taken)
                if not is_positive(deficit):
                    break

    result: list[Distribution] = []
    for i, asset in enumerate(sorted_assets):
        if i not in amounts:
            result.append(Distribution(asset.asset.id, round_to(ZERO)))
            continue
        redistributed = None
        if dropped_any:
            gained = round_to(subtract(shares[i], first_pass[i]))
            redistributed = gained if is_positive(gained) else None
        result.append(Distribution(asset.asset.id, amounts[i], redistributed))
    return result


# =============================================================================
# Recommendation generation
# =============================================================================


def _item(
    asset: AssetWithPriority,
    amount: Decimal,
    sort_order: int,
    redistributed_from: Decimal | None,
) -> RecommendationItem:
    return RecommendationItem(
        asset_id=asset.asset.id,
        symbol=asset.symbol,
        recommended_amount=amount,
        sort_order=sort_order,
        breakdown=RecommendationBreakdown(
            class_id=asset.asset.class_id,
            subclass_id=asset.asset.subclass_id,
            current_value=asset.asset.current_value,
            target_midpoint=asset.asset.target_allocation_pct,
            priority=asset.priority,
            score=asset.asset.score,
            is_over_allocated=asset.is_over_allocated,
            redistributed_from=redistributed_from,
        ),
    )


@traced_engine(ENGINE_NAME, ENGINE_VERSION, fingerprint_fields=("assets", "total_investable"))
def generate_recommendation_items(
    assets: Sequence[AssetWithContext],
    total_investable: str | Decimal,
) -> list[RecommendationItem]:
    """
    Main entry point: one RecommendationItem per asset, in priority order.

    Raises:
        InvalidDecimalError: ``total_investable`` is not a decimal.
        ValidationError: ``total_investable`` is too large to split exactly.
    """
    total = parse_decimal(total_investable, "total_investable")
    if not fits_precision(total):
        raise ValidationError(
            "total_investable",
            f"{total} needs more than {DECIMAL_PRECISION} significant digits "
            f"at {MONETARY_PLACES} decimal places",
        )
    if not assets:
        return []

    sorted_assets = sort_assets_by_priority(assets)
    distributions = distribute_capital(sorted_assets, total)

    items = [
        _item(asset, dist.amount, index, dist.redistributed_from)
        for index, (asset, dist) in enumerate(zip(sorted_assets, distributions))
    ]

    allocated = add(*(item.recommended_amount for item in items))
    logger.info(
        "allocation_completed",
        extra={
            "asset_count": len(items),
            "funded_count": sum(1 for item in items if is_positive(item.recommended_amount)),
            "total_investable": to_decimal_string(total),
            "total_allocated": to_decimal_string(allocated),
        },
    )
    return items


class CapitalAllocationEngine:
    """
    Object facade over the allocation functions.

    Contract:
        Stateless; one instance may serve concurrent runs.
    Guarantees:
        - ``generate`` returns exactly what
          ``generate_recommendation_items`` returns.
    Non-goals:
        - Does not fetch portfolios or scores; callers build the inputs.
    """

    name = ENGINE_NAME
    version = ENGINE_VERSION

    def generate(
        self,
        assets: Sequence[AssetWithContext],
        total_investable: str | Decimal,
    ) -> list[RecommendationItem]:
        return generate_recommendation_items(assets, total_investable)

    def verify_determinism(
        self,
        assets: Sequence[AssetWithContext],
        total_investable: str | Decimal,
    ) -> bool:
        return verify_determinism(assets, total_investable)


# =============================================================================
# Validation
# =============================================================================


def validate_total_equals(
    items: Sequence[RecommendationItem],
    total_investable: str | Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> bool:
    """True when the items sum to ``total_investable`` within ``tolerance``."""
    expected = parse_decimal(total_investable, "total_investable")
    actual = add(*(item.recommended_amount for item in items))
    return within_tolerance(expected, actual, tolerance)


def validate_over_allocated_get_zero(items: Sequence[RecommendationItem]) -> bool:
    """True when every over-allocated item has a zero amount."""
    return all(
        item.recommended_amount.is_zero()
        for item in items
        if item.is_over_allocated
    )


def verify_determinism(
    assets: Sequence[AssetWithContext],
    total_investable: str | Decimal,
) -> bool:
    """Run the engine twice on identical inputs and compare the serialized output."""
    first = [item.to_dict() for item in generate_recommendation_items(assets, total_investable)]
    second = [item.to_dict() for item in generate_recommendation_items(assets, total_investable)]
    if first != second:
        logger.error(
            "allocation_nondeterministic",
            extra={"asset_count": len(assets)},
        )
        return False
    return True
