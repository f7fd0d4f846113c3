"""Public exports for the reaction-network simulator."""

from .entities import EVENT_LOG_FIELDS, ModelDefinition, SimulationResult
from .events import EventInProgress
from .integrator import simulate
from .ode_solver import SolverConfig
from .system import EventDESystem, ReactionNetworkSystem

__all__ = [
    "EVENT_LOG_FIELDS",
    "EventDESystem",
    "EventInProgress",
    "ModelDefinition",
    "ReactionNetworkSystem",
    "SimulationResult",
    "SolverConfig",
    "simulate",
]
