"""
Allocation value types -- inputs and outputs of the capital allocation engine.

Responsibility:
    Immutable value objects describing one asset as the engine sees it
    (``AssetWithContext``), the same asset with its computed priority
    (``AssetWithPriority``), and one recommendation line
    (``RecommendationItem``) with its ``RecommendationBreakdown``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Every monetary and percentage field is a ``Decimal``; dict forms carry
      them as fixed-point strings.
    - ``score`` lies within 0..100.
    - ``min_allocation_value`` is never negative.

Failure modes:
    - ValidationError for an out-of-range score or a negative minimum.
    - InvalidDecimalError for malformed decimal strings in ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from capital_kernel.domain.decimal_math import (
    ONE_HUNDRED,
    ZERO,
    parse_decimal,
    to_decimal_string,
)
from capital_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class AssetWithContext:
    """
    One asset with everything the allocation engine reads.

    ``allocation_gap_pct`` is ``target - current`` and may be negative.
    Built fresh for each run; persisted only inside an INPUTS_CAPTURED
    snapshot.
    """

    id: str
    symbol: str
    class_id: str | None
    subclass_id: str | None
    current_allocation_pct: Decimal
    target_allocation_pct: Decimal
    allocation_gap_pct: Decimal
    score: Decimal
    current_value: Decimal
    min_allocation_value: Decimal | None = None
    is_over_allocated: bool = False

    def __post_init__(self) -> None:
        if self.score < ZERO or self.score > ONE_HUNDRED:
            raise ValidationError(
                "score", f"{self.score} is outside 0..100 for {self.symbol}"
            )
        if self.min_allocation_value is not None and self.min_allocation_value < ZERO:
            raise ValidationError(
                "min_allocation_value",
                f"{self.min_allocation_value} is negative for {self.symbol}",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "class_id": self.class_id,
            "subclass_id": self.subclass_id,
            "current_allocation_pct": to_decimal_string(self.current_allocation_pct),
            "target_allocation_pct": to_decimal_string(self.target_allocation_pct),
            "allocation_gap_pct": to_decimal_string(self.allocation_gap_pct),
            "score": to_decimal_string(self.score),
            "current_value": to_decimal_string(self.current_value),
            "min_allocation_value": (
                to_decimal_string(self.min_allocation_value)
                if self.min_allocation_value is not None
                else None
            ),
            "is_over_allocated": self.is_over_allocated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssetWithContext:
        minimum = data.get("min_allocation_value")
        return cls(
            id=str(data["id"]),
            symbol=data["symbol"],
            class_id=data.get("class_id"),
            subclass_id=data.get("subclass_id"),
            current_allocation_pct=parse_decimal(
                data["current_allocation_pct"], "current_allocation_pct"
            ),
            target_allocation_pct=parse_decimal(
                data["target_allocation_pct"], "target_allocation_pct"
            ),
            allocation_gap_pct=parse_decimal(
                data["allocation_gap_pct"], "allocation_gap_pct"
            ),
            score=parse_decimal(data["score"], "score"),
            current_value=parse_decimal(data["current_value"], "current_value"),
            min_allocation_value=(
                parse_decimal(minimum, "min_allocation_value")
                if minimum is not None
                else None
            ),
            is_over_allocated=bool(data.get("is_over_allocated", False)),
        )


@dataclass(frozen=True)
class AssetWithPriority:
    """An asset paired with ``priority = gap x score / 100``."""

    asset: AssetWithContext
    priority: Decimal

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    @property
    def is_over_allocated(self) -> bool:
        return self.asset.is_over_allocated


@dataclass(frozen=True)
class RecommendationBreakdown:
    """How a recommended amount came about."""

    class_id: str | None
    subclass_id: str | None
    current_value: Decimal
    target_midpoint: Decimal
    priority: Decimal
    score: Decimal
    is_over_allocated: bool = False
    redistributed_from: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_id": self.class_id,
            "subclass_id": self.subclass_id,
            "current_value": to_decimal_string(self.current_value),
            "target_midpoint": to_decimal_string(self.target_midpoint),
            "priority": to_decimal_string(self.priority),
            "score": to_decimal_string(self.score),
            "is_over_allocated": self.is_over_allocated,
            "redistributed_from": (
                to_decimal_string(self.redistributed_from)
                if self.redistributed_from is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecommendationBreakdown:
        redistributed = data.get("redistributed_from")
        return cls(
            class_id=data.get("class_id"),
            subclass_id=data.get("subclass_id"),
            current_value=parse_decimal(data["current_value"], "current_value"),
            target_midpoint=parse_decimal(data["target_midpoint"], "target_midpoint"),
            priority=parse_decimal(data["priority"], "priority"),
            score=parse_decimal(data["score"], "score"),
            is_over_allocated=bool(data.get("is_over_allocated", False)),
            redistributed_from=(
                parse_decimal(redistributed, "redistributed_from")
                if redistributed is not None
                else None
            ),
        )


@dataclass(frozen=True)
class RecommendationItem:
    """One output line: how much new capital an asset should receive."""

    asset_id: str
    symbol: str
    recommended_amount: Decimal
    sort_order: int
    breakdown: RecommendationBreakdown

    @property
    def is_over_allocated(self) -> bool:
        return self.breakdown.is_over_allocated

    @property
    def priority(self) -> Decimal:
        return self.breakdown.priority

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "symbol": self.symbol,
            "recommended_amount": to_decimal_string(self.recommended_amount),
            "sort_order": self.sort_order,
            "breakdown": self.breakdown.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecommendationItem:
        return cls(
            asset_id=str(data["asset_id"]),
            symbol=data["symbol"],
            recommended_amount=parse_decimal(
                data["recommended_amount"], "recommended_amount"
            ),
            sort_order=int(data["sort_order"]),
            breakdown=RecommendationBreakdown.from_dict(data["breakdown"]),
        )
