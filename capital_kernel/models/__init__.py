"""ORM models for the capital kernel."""

from capital_kernel.models.calculation_event import CalculationEventRecord

__all__ = ["CalculationEventRecord"]
