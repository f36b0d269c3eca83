"""Kernel services: the calculation event store and the pipeline orchestrator."""

from capital_kernel.services.calculation_pipeline import (
    CalculationPipeline,
    PipelineRun,
    PipelineStage,
)
from capital_kernel.services.event_store import EventStore

__all__ = [
    "CalculationPipeline",
    "EventStore",
    "PipelineRun",
    "PipelineStage",
]
