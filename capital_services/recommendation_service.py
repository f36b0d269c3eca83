"""
RecommendationService -- one audited capital allocation run, end to end.

Responsibility:
    Computes total investable capital, builds the engine inputs from a
    portfolio snapshot, and runs the allocation engine through the
    calculation pipeline so the run leaves a complete, replayable event
    trail.

Architecture position:
    Services -- imperative shell wiring capital_engines to the kernel
    pipeline.  All I/O happens in the injected pipeline.

Invariants enforced:
    - The INPUTS_CAPTURED snapshot is self-contained: assets with every
      decimal as a string, contribution, dividends, total investable and
      base currency.  The calculator computes from that snapshot, so
      ``recalculate_from_inputs`` reproduces the run exactly.
    - Runs whose total investable reaches the configured high-value
      threshold are checked for determinism before results are persisted.

Failure modes:
    - InvalidDecimalError for malformed contribution/dividends.
    - ValidationError, before any event is written, for a total the
      allocation engine cannot split exactly.
    - A calculator failure is recorded as a ``failed`` run and then
      re-raised to the caller.
    - PersistenceError from any synchronous pipeline stage.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from capital_config import LedgerSettings, get_settings
from capital_engines.asset_context import (
    HoldingSnapshot,
    TargetRange,
    build_assets_with_context,
)
from capital_engines.recommendations import (
    generate_recommendation_items,
    verify_determinism,
)
from capital_kernel.domain.assets import AssetWithContext, RecommendationItem
from capital_kernel.domain.decimal_math import (
    add,
    fits_precision,
    parse_decimal,
    round_to,
    to_decimal_string,
)
from capital_kernel.exceptions import DeterminismMismatchError, ValidationError
from capital_kernel.logging_config import LogContext, get_logger
from capital_kernel.services.calculation_pipeline import CalculationPipeline

logger = get_logger("services.recommendation")

CALCULATION_NAME = "capital_allocation"


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Everything about a portfolio the engine inputs are built from."""

    portfolio_id: str
    base_currency: str
    holdings: Sequence[HoldingSnapshot]
    class_ranges: Mapping[str, TargetRange] = field(default_factory=dict)
    subclass_ranges: Mapping[str, TargetRange] = field(default_factory=dict)
    scores: Mapping[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class RecommendationResult:
    """What the caller gets back from ``generate``."""

    correlation_id: UUID
    items: list[RecommendationItem]
    contribution: Decimal
    dividends: Decimal
    total_investable: Decimal
    base_currency: str
    duration_ms: int


def build_inputs_snapshot(
    portfolio_id: str,
    base_currency: str,
    contribution: Decimal,
    dividends: Decimal,
    total_investable: Decimal,
    assets: Sequence[AssetWithContext],
) -> dict[str, Any]:
    """The self-contained INPUTS_CAPTURED payload for an allocation run."""
    return {
        "portfolio_id": portfolio_id,
        "base_currency": base_currency,
        "contribution": to_decimal_string(contribution),
        "dividends": to_decimal_string(dividends),
        "total_investable": to_decimal_string(total_investable),
        "assets": [asset.to_dict() for asset in assets],
    }


def recalculate_from_inputs(inputs: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Pure allocation over a captured snapshot.

    This is the function replay feeds INPUTS_CAPTURED back into.
    """
    assets = [AssetWithContext.from_dict(row) for row in inputs["assets"]]
    items = generate_recommendation_items(assets, inputs["total_investable"])
    return [item.to_dict() for item in items]


class RecommendationService:
    """
    Generates audited capital recommendations.

    Contract:
        ``generate`` returns a RecommendationResult whose correlation id
        identifies a run with STARTED, INPUTS_CAPTURED, COMPUTED and
        COMPLETED events.

    Non-goals:
        - Loading portfolios, scores or targets; callers pass a snapshot.
        - Persisting recommendations outside the event trail.
    """

    def __init__(
        self,
        pipeline: CalculationPipeline,
        settings: LedgerSettings | None = None,
    ):
        self._pipeline = pipeline
        self._settings = settings or get_settings()

    def generate(
        self,
        user_id: UUID,
        portfolio: PortfolioSnapshot,
        contribution: str | Decimal,
        dividends: str | Decimal,
    ) -> RecommendationResult:
        """
        Allocate ``contribution + dividends`` across the portfolio.

        Raises:
            InvalidDecimalError: malformed contribution or dividends.
            ValidationError: the total is too large to allocate exactly; no
                run is started.
            DeterminismMismatchError: a high-value run failed its
                self-check (the run is recorded as failed first).
        """
        contribution_d = parse_decimal(contribution, "contribution")
        dividends_d = parse_decimal(dividends, "dividends")
        total = round_to(add(contribution_d, dividends_d))
        if not fits_precision(total):
            raise ValidationError(
                "total_investable", "contribution plus dividends is too large to allocate exactly"
            )

        assets = build_assets_with_context(
            portfolio.holdings,
            portfolio.class_ranges,
            portfolio.subclass_ranges,
            portfolio.scores,
            default_score=self._settings.default_score,
        )
        inputs = build_inputs_snapshot(
            portfolio.portfolio_id,
            portfolio.base_currency,
            contribution_d,
            dividends_d,
            total,
            assets,
        )

        run = self._pipeline.run_complete(
            user_id,
            inputs,
            self._calculate,
            context={
                "portfolio_id": portfolio.portfolio_id,
                "base_currency": portfolio.base_currency,
            },
            calculation=CALCULATION_NAME,
        )
        if run.error is not None:
            raise run.error

        items = [RecommendationItem.from_dict(row) for row in run.results or []]
        logger.info(
            "recommendations_generated",
            extra={
                "correlation_id": str(run.correlation_id),
                "item_count": len(items),
                "total_investable": to_decimal_string(total),
                "duration_ms": run.duration_ms,
            },
        )
        return RecommendationResult(
            correlation_id=run.correlation_id,
            items=items,
            contribution=contribution_d,
            dividends=dividends_d,
            total_investable=total,
            base_currency=portfolio.base_currency,
            duration_ms=run.duration_ms,
        )

    def _calculate(self, inputs: dict[str, Any]) -> list[dict[str, Any]]:
        total = parse_decimal(inputs["total_investable"], "total_investable")
        if total >= self._settings.high_value_threshold:
            assets = [AssetWithContext.from_dict(row) for row in inputs["assets"]]
            if not verify_determinism(assets, total):
                correlation_id = LogContext.get_all().get("correlation_id", "unknown")
                raise DeterminismMismatchError(
                    correlation_id,
                    [{"asset_id": "_self_check", "original_value": None, "replay_value": None}],
                )
            logger.debug(
                "high_value_determinism_verified",
                extra={"total_investable": to_decimal_string(total)},
            )
        return recalculate_from_inputs(inputs)
