"""
capital_services.ledger -- top-level wiring for the capital ledger.

Responsibility:
    Builds every ledger service exactly once from ``LedgerSettings`` and
    wires them together: event store, calculation pipeline, recommendation
    service and replay verification job.  This is the only place where the
    kernel's constructor defaults are replaced by configured values.

Architecture position:
    Services -- top of the service layer.  Reads ``capital_config``; the
    kernel below it never does.

Failure modes:
    - ValueError from ``get_settings()`` when the configuration is invalid.
    - SQLAlchemy errors from ``create_tables`` when the database is
      unreachable.

Usage:
    from capital_services.ledger import build_ledger

    ledger = build_ledger(create_schema=True)
    result = ledger.recommendations.generate(user_id, portfolio, "1500", "37.25")
    ledger.replay(result.correlation_id).raise_for_mismatch()
    ledger.shutdown()
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from capital_config import LedgerSettings, get_settings
from capital_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.logging_config import configure_logging, get_logger
from capital_kernel.services.calculation_pipeline import CalculationPipeline
from capital_kernel.services.event_store import EventStore
from capital_services.recommendation_service import (
    RecommendationService,
    recalculate_from_inputs,
)
from capital_services.replay import ReplayResult, replay
from capital_services.verification_job import ReplayVerificationJob

logger = get_logger("services.ledger")


class CapitalLedger:
    """
    Central factory for ledger services.

    Contract:
        Receives a session factory and settings, constructs each service
        once in dependency order and exposes them as public attributes.

    Guarantees:
        - All services share one EventStore, one CalculationPipeline and
          one Clock.
        - ``shutdown`` drains pending fire-and-forget STARTED appends.

    Non-goals:
        - Does NOT own the database engine; ``build_ledger`` creates it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: LedgerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock or SystemClock()

        self.event_store = EventStore(
            session_factory,
            self._clock,
            default_limit=self.settings.default_query_limit,
        )
        self.pipeline = CalculationPipeline(
            self.event_store,
            self._clock,
            max_workers=self.settings.background_workers,
        )
        self.recommendations = RecommendationService(self.pipeline, self.settings)
        self.verification_job = ReplayVerificationJob(
            self.pipeline,
            self.event_store,
            recalculate_from_inputs,
            self._clock,
        )

    def replay(self, correlation_id: UUID) -> ReplayResult:
        """Replay one allocation run against its recorded results."""
        return replay(correlation_id, recalculate_from_inputs, self.event_store)

    def shutdown(self) -> None:
        self.pipeline.shutdown()


def build_ledger(
    settings: LedgerSettings | None = None,
    clock: Clock | None = None,
    create_schema: bool = False,
) -> CapitalLedger:
    """
    Configure logging and the database from settings, then wire the ledger.

    ``create_schema`` creates ``calculation_events`` (and, on PostgreSQL,
    its append-only triggers) before the services are built.
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level)
    init_engine_from_url(
        settings.database_url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )
    if create_schema:
        create_tables()

    ledger = CapitalLedger(get_session_factory(), settings, clock)
    logger.info(
        "ledger_wired",
        extra={
            "background_workers": settings.background_workers,
            "default_query_limit": settings.default_query_limit,
            "create_schema": create_schema,
        },
    )
    return ledger
