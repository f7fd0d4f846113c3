"""Hybrid driver: adaptive ODE integration interleaved with discrete events."""

from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .entities import SimulationResult
from .errors import ConfigError, NumericsError
from .ode_solver import SolverConfig, solve_with_retry
from .system import EventDESystem

logger = logging.getLogger(__name__)

_TIME_TOL = 1e-9
_MAX_EVENT_CASCADE = 10000


def _overshoot(t: float) -> float:
    return _TIME_TOL * max(1.0, abs(t))


class StateHistory:
    """Accepted solver states, used to answer ``delay()`` look-ups."""

    def __init__(self, identifiers: Sequence[str], fallback: Optional[Callable[[str], float]] = None):
        self.index: Dict[str, int] = {name: pos for pos, name in enumerate(identifiers)}
        self.fallback = fallback
        self.times: List[float] = []
        self.states: List[np.ndarray] = []

    def record(self, t: float, y: np.ndarray) -> None:
        t = float(t)
        while self.times and self.times[-1] >= t:
            self.times.pop()
            self.states.pop()
        self.times.append(t)
        self.states.append(np.array(y, dtype=float))

    def delayed_value(self, time: float, identifier: str) -> float:
        column = self.index.get(identifier)
        if column is None:
            if self.fallback is None:
                raise KeyError(identifier)
            return self.fallback(identifier)
        if not self.times:
            raise NumericsError("delay() evaluated before any state was recorded")
        if time <= self.times[0]:
            return float(self.states[0][column])
        if time >= self.times[-1]:
            return float(self.states[-1][column])
        values = np.fromiter((state[column] for state in self.states), dtype=float, count=len(self.states))
        return float(np.interp(time, self.times, values))


def _event_functions(system: EventDESystem, indices: Sequence[int]):
    cache: Dict[str, object] = {}

    def values(t: float, y: np.ndarray) -> np.ndarray:
        key = (t, y.tobytes())
        if cache.get("key") != key:
            cache["key"] = key
            cache["values"] = system.trigger_values(t, y)
        return cache["values"]

    functions = []
    for index in indices:
        def trigger(t: float, y: np.ndarray, index: int = index) -> float:
            return values(t, y)[index]

        trigger.terminal = True
        trigger.direction = 0
        functions.append(trigger)
    return functions


def _sample_state(system: EventDESystem, t: float, y: np.ndarray) -> np.ndarray:
    state = np.array(y, dtype=float)
    if system.rule_count():
        system.process_assignment_rules(t, state)
    return state


def process_events(
    system: EventDESystem,
    t: float,
    previous_t: float,
    y: np.ndarray,
    event_log: Optional[List[Dict[str, object]]] = None,
) -> bool:
    """Run assignment rules and every event due at ``t`` on ``y`` in place."""

    changed = False
    if system.rule_count():
        changed = system.process_assignment_rules(t, y)
    if not system.event_count():
        return changed
    event = system.get_next_event_assignments(t, previous_t, y)
    cascade = 0
    while event is not None:
        for position, value in event.assignments.items():
            y[position] = value
        if event.last_time_executed == t:
            changed = True
            if event_log is not None:
                event_log.append(
                    {
                        "event_id": getattr(event, "identifier", None),
                        "time_fire": t,
                        "assignments": {system.identifiers[pos]: val for pos, val in event.assignments.items()},
                    }
                )
        if system.rule_count():
            system.process_assignment_rules(t, y)
        cascade += 1
        if cascade > _MAX_EVENT_CASCADE:
            raise NumericsError(f"Event cascade at t={t} did not settle after {_MAX_EVENT_CASCADE} executions")
        event = system.get_next_event_assignments(t, t, y)
    return changed


def _sample_grid(start: float, stop: float, sample_times: Optional[Sequence[float]], num_samples: int) -> np.ndarray:
    if sample_times is None:
        if num_samples < 2:
            raise ConfigError("num_samples must be at least 2")
        return np.linspace(start, stop, num_samples)
    grid = np.asarray(sample_times, dtype=float)
    if grid.ndim != 1 or grid.size == 0:
        raise ConfigError("sample_times must be a non-empty 1-D sequence")
    if np.any(np.diff(grid) < 0.0):
        raise ConfigError("sample_times must be non-decreasing")
    if grid[0] < start - _TIME_TOL or grid[-1] > stop + _TIME_TOL:
        raise ConfigError(f"sample_times must lie within [{start}, {stop}]")
    return grid


def simulate(
    system: EventDESystem,
    stop_time: float,
    *,
    start_time: float = 0.0,
    sample_times: Optional[Sequence[float]] = None,
    num_samples: int = 101,
    solver: Optional[SolverConfig] = None,
    y0: Optional[np.ndarray] = None,
) -> SimulationResult:
    """Integrate ``system`` from ``start_time`` to ``stop_time``.

    Integration runs segment by segment. A segment ends at the stop time, at
    the next scheduled delayed execution, or just past a located trigger
    crossing. Events and assignment rules are processed at every segment
    boundary. Samples come from the solver's dense output.
    """

    solver = solver or SolverConfig()
    start = float(start_time)
    stop = float(stop_time)
    if not stop > start:
        raise ConfigError(f"stop_time ({stop}) must exceed start_time ({start})")
    grid = _sample_grid(start, stop, sample_times, num_samples)
    logger.info("solver_config %s", json.dumps(solver.as_dict(), sort_keys=True))
    if solver.seed is not None and hasattr(system, "reseed"):
        system.reseed(solver.seed)

    dimension = system.dimension
    y = np.array(system.initial_values() if y0 is None else y0, dtype=float)
    if y.shape != (dimension,):
        raise ConfigError(f"Initial state has shape {y.shape}, expected ({dimension},)")
    holder = getattr(system, "value_holder", None)
    history = StateHistory(system.identifiers, None if holder is None else holder.value_of)
    system.register_delay_value_holder(history)

    if system.no_derivatives():
        def rhs(t: float, state: np.ndarray) -> np.ndarray:
            return np.zeros_like(state)
    else:
        rhs = system.compute_derivatives

    samples = np.full((grid.size, dimension), np.nan)
    cursor = 0
    event_log: List[Dict[str, object]] = []

    t = start
    history.record(t, y)
    process_events(system, t, t, y, event_log)
    history.record(t, y)
    while cursor < grid.size and grid[cursor] <= t + _TIME_TOL:
        samples[cursor] = y
        cursor += 1

    while t < stop - _TIME_TOL:
        target = min(stop, system.next_event_time())
        if target <= t + _TIME_TOL:
            process_events(system, t, t, y, event_log)
            if system.next_event_time() <= t + _TIME_TOL:
                raise NumericsError(f"Scheduled events at t={t} are not being executed")
            continue

        if solver.nan_guard and not system.no_derivatives():
            slope = system.compute_derivatives(t, y)
            if not np.all(np.isfinite(slope)):
                bad = [system.identifiers[pos] for pos in np.flatnonzero(~np.isfinite(slope))]
                raise NumericsError(f"Non-finite derivatives at t={t} for {bad}")

        events = None
        if system.event_count():
            armed = np.flatnonzero(system.trigger_values(t, y) != 0.0)
            events = _event_functions(system, armed) or None
        if events is None and system.no_derivatives():
            t_new = target
            y_new = y.copy()
            dense = None
        else:
            sol = solve_with_retry(rhs, (t, target), y, solver, dense_output=True, events=events)
            if not sol.success:
                raise NumericsError(f"Integration failed on [{t}, {target}]: {sol.message}")
            dense = sol.sol
            t_new = float(sol.t[-1])
            y_new = np.array(sol.y[:, -1], dtype=float)
            if sol.status == 1:
                t_new = min(t_new + _overshoot(t_new), target)
                y_new = np.array(dense(t_new), dtype=float)
            for t_step, y_step in zip(sol.t[1:], sol.y.T[1:]):
                if t_step < t_new:
                    history.record(t_step, _sample_state(system, t_step, y_step))
            history.record(t_new, _sample_state(system, t_new, y_new))

        while cursor < grid.size and grid[cursor] < t_new - _TIME_TOL:
            point = grid[cursor]
            state = y if dense is None else dense(point)
            samples[cursor] = _sample_state(system, point, state)
            cursor += 1

        previous = t
        t, y = t_new, y_new
        process_events(system, t, previous, y, event_log)
        history.record(t, y)
        while cursor < grid.size and grid[cursor] <= t + _TIME_TOL:
            samples[cursor] = y
            cursor += 1

    while cursor < grid.size:
        samples[cursor] = y
        cursor += 1

    return SimulationResult(
        time=grid,
        states=samples,
        identifiers=tuple(system.identifiers),
        event_log=tuple(event_log),
        provenance={"solver_config": solver.identity()},
    )


__all__ = ["StateHistory", "process_events", "simulate"]
