"""Domain-specific exceptions for the reaction-network simulator."""

from __future__ import annotations


class SimulationError(RuntimeError):
    """Base class for simulator errors."""


class ModelDefinitionError(SimulationError):
    """Raised at compile time when a model cannot be turned into nodes."""


class ConfigError(SimulationError):
    """Raised when solver or system configuration is invalid."""


class NumericsError(SimulationError):
    """Raised when the numerical solver fails or produces non-finite values."""


class EvaluationContractError(SimulationError, TypeError):
    """Raised when a node is queried for a result kind it does not produce."""


class EventEvaluationError(SimulationError):
    """Raised when a trigger, delay or priority cannot be evaluated."""


class NegativeValueError(SimulationError):
    """Raised when a stoichiometry or propensity turns negative."""


__all__ = [
    "SimulationError",
    "ModelDefinitionError",
    "ConfigError",
    "NumericsError",
    "EvaluationContractError",
    "EventEvaluationError",
    "NegativeValueError",
]
