"""Bookkeeping for fired, pending and executed events."""

from __future__ import annotations

import bisect
import logging
import math
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .ast_nodes import ExpressionNode, RelationalNode, ResultKind
from .entities import Tag
from .rules import AssignmentRuleValue

logger = logging.getLogger(__name__)

Values = Optional[List[float]]


class EventInProgress:
    """Fire/recover/execute state of one event.

    ``queue`` holds ``(execution_time, values)`` entries, ``values`` being the
    assignment values snapshotted at trigger time (or ``None``). Delayed events
    keep the queue ordered by execution time and remember executed entries so
    the state can be rolled back when the solver revisits an earlier time.
    """

    def __init__(self, fired: bool, delayed: bool = False):
        self.initial_fired = bool(fired)
        self.delayed = delayed
        self.priority = -math.inf
        self.reset()

    def reset(self, fired: Optional[bool] = None) -> None:
        self.fired = self.initial_fired if fired is None else bool(fired)
        self.last_time_fired = -1.0
        self.last_time_recovered = -1.0
        self.last_time_executed = -1.0
        self.queue: Deque[Tuple[float, Values]] = deque()
        self.history: List[Tuple[float, Values]] = []
        self.assignments: Dict[int, float] = {}

    def fired_at(self, t: float) -> None:
        self.fired = True
        self.last_time_fired = t

    def recovered(self, t: float) -> None:
        self.fired = False
        self.last_time_recovered = t

    def add_values(self, values: Values, execution_time: float) -> None:
        if not self.delayed:
            self.queue.append((execution_time, values))
            return
        times = [entry[0] for entry in self.queue]
        self.queue.insert(bisect.bisect_right(times, execution_time), (execution_time, values))

    def executed(self, t: float) -> None:
        if self.queue:
            entry = self.queue.popleft()
            if self.delayed:
                self.history.append(entry)
        self.last_time_executed = t

    def aborted(self, t: float) -> None:
        if self.delayed:
            if self.queue:
                self.queue.popleft()
            return
        self.executed(t)

    def get_fire_status(self, t: float) -> bool:
        """Current fired flag, undoing firings or recoveries recorded after ``t``."""
        if self.last_time_fired <= t and self.last_time_recovered <= t:
            return self.fired
        if self.last_time_fired <= t < self.last_time_recovered:
            self.last_time_recovered = -1.0
            self.fired = True
            return True
        if self.last_time_recovered <= t < self.last_time_fired:
            self.last_time_fired = -1.0
            self.fired = False
            return False
        self.last_time_recovered = -1.0
        self.last_time_fired = -1.0
        return self.fired

    def rollback(self, t: float) -> None:
        """Restore delayed bookkeeping to what it was at time ``t``."""
        if not self.delayed:
            return
        if self.last_time_fired > t:
            if self.queue:
                self.queue.pop()
            self.recovered(t)
            self.last_time_fired = -1.0
            return
        while self.history and self.history[-1][0] > t:
            entry = self.history.pop()
            times = [queued[0] for queued in self.queue]
            self.queue.insert(bisect.bisect_right(times, entry[0]), entry)
        self.last_time_executed = self.history[-1][0] if self.history else -1.0

    def has_execution_time(self) -> bool:
        return bool(self.queue)

    def next_execution_time(self) -> float:
        return self.queue[0][0] if self.queue else math.inf

    def next_values(self) -> Values:
        return self.queue[0][1] if self.queue else None

    def has_more_assignments(self, t: float) -> bool:
        return bool(self.queue) and self.queue[0][0] <= t

    def clear_assignments(self) -> None:
        self.assignments.clear()

    def add_assignment(self, position: int, value: float) -> None:
        self.assignments[position] = value


class CompiledEvent(EventInProgress):
    """An event of the model together with its compiled trigger and assignments."""

    def __init__(
        self,
        identifier: str,
        trigger: ExpressionNode,
        rules: Sequence[AssignmentRuleValue],
        *,
        delay: Optional[ExpressionNode] = None,
        priority: Optional[ExpressionNode] = None,
        persistent: bool = True,
        use_values_from_trigger_time: bool = True,
        initial_value: bool = True,
    ):
        super().__init__(initial_value, delayed=delay is not None)
        self.identifier = identifier
        self.trigger = trigger
        self.rules = tuple(rules)
        self.delay = delay
        self.priority_node = priority
        self.persistent = persistent
        self.use_values_from_trigger_time = use_values_from_trigger_time

    def __repr__(self) -> str:
        return f"<CompiledEvent {self.identifier} fired={self.fired} pending={len(self.queue)}>"


def trigger_root_value(trigger: ExpressionNode, t: float) -> float:
    """Continuous function whose sign follows the trigger.

    Relational triggers on numbers give a signed distance (positive when the
    trigger holds) so the solver can locate crossings; any other trigger
    is a +1/-1 step.
    """

    if isinstance(trigger, RelationalNode) and all(child.kind is ResultKind.DOUBLE for child in trigger.children):
        left, right = (child.evaluate_double(t) for child in trigger.children)
        if trigger.tag in (Tag.GT, Tag.GEQ):
            return float(left - right)
        if trigger.tag in (Tag.LT, Tag.LEQ):
            return float(right - left)
    return 1.0 if trigger.evaluate_boolean(t) else -1.0


__all__ = ["CompiledEvent", "EventInProgress", "trigger_root_value"]
