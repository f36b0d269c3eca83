"""
Module: capital_services
Responsibility:
    Imperative shell over the kernel: the audited recommendation run, the
    replay engine and the replay verification job.  ``build_ledger`` wires
    them from settings.

Architecture position:
    Services -- may import capital_kernel, capital_engines and
    capital_config.  Nothing below this layer imports it.
"""

from capital_services.ledger import CapitalLedger, build_ledger
from capital_services.recommendation_service import (
    PortfolioSnapshot,
    RecommendationResult,
    RecommendationService,
    build_inputs_snapshot,
    recalculate_from_inputs,
)
from capital_services.replay import (
    BatchReplayResult,
    Discrepancy,
    ReplayResult,
    compare_results,
    replay,
    replay_batch,
    verify_run_determinism,
)
from capital_services.verification_job import ReplayVerificationJob, VerificationReport

__all__ = [
    "CapitalLedger",
    "build_ledger",
    "PortfolioSnapshot",
    "RecommendationResult",
    "RecommendationService",
    "build_inputs_snapshot",
    "recalculate_from_inputs",
    "BatchReplayResult",
    "Discrepancy",
    "ReplayResult",
    "compare_results",
    "replay",
    "replay_batch",
    "verify_run_determinism",
    "ReplayVerificationJob",
    "VerificationReport",
]
