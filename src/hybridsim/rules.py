"""Assignment and rate rule objects operating on the state vector."""

from __future__ import annotations

import math
from collections import deque
from typing import Dict, List, Optional, Sequence

import numpy as np

from .ast_nodes import ExpressionNode
from .entities import Rule
from .errors import ModelDefinitionError
from .units import Conversion, expression_to_stored
from .value_holder import StateValueHolder


def _same(old: Optional[float], new: float) -> bool:
    if old is None:
        return False
    return old == new or (math.isnan(old) and math.isnan(new))


class RuleValue:
    """A compiled expression bound to the quantity it writes.

    Species targets are written back in storage units: the expression yields
    what math sees (see ``SpeciesValueNode``) and the inverse conversion is
    applied with the current compartment size.
    """

    def __init__(
        self,
        node: ExpressionNode,
        position: int,
        holder: StateValueHolder,
        *,
        variable: Optional[str] = None,
        conversion: Conversion = "identity",
        compartment_position: int = -1,
        reference_id: Optional[str] = None,
    ):
        self.node = node
        self.position = position
        self.holder = holder
        self.variable = variable
        self.conversion = conversion
        self.compartment_position = compartment_position
        self.reference_id = reference_id
        self.value = math.nan

    @property
    def targets_reference(self) -> bool:
        return self.position < 0 and self.reference_id is not None

    def process_assignment_variable(self, t: float) -> float:
        value = self.node.evaluate_double(t)
        if self.compartment_position >= 0 and self.conversion != "identity":
            value = expression_to_stored(value, self.holder.value_at(self.compartment_position), self.conversion)
        self.value = value
        return value

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.variable} = {self.node}>"


class AssignmentRuleValue(RuleValue):
    def process_rule(self, y: np.ndarray, t: float, change_y: bool = True) -> bool:
        """Evaluate and write the target; report whether its value changed."""
        if self.targets_reference:
            old = self.holder.assigned_stoichiometries.get(self.reference_id)
            value = self.process_assignment_variable(t)
            self.holder.assigned_stoichiometries[self.reference_id] = value
            return not _same(old, value)
        old = float(y[self.position])
        value = self.process_assignment_variable(t)
        if change_y:
            y[self.position] = value
        return not _same(old, value)


class RateRuleValue(RuleValue):
    """Rate rule; compartment targets also correct their species' concentrations."""

    def __init__(self, *args, dependent_positions: Sequence[int] = (), **kwargs):
        super().__init__(*args, **kwargs)
        self.dependent_positions = tuple(dependent_positions)

    def process_rule(self, change_rate: np.ndarray, y: np.ndarray, t: float) -> None:
        change_rate[self.position] = self.process_assignment_variable(t)
        for species_position in self.dependent_positions:
            change_rate[species_position] = -change_rate[self.position] * y[species_position] / y[self.position]


def order_assignment_rules(rules: Sequence[Rule]) -> List[Rule]:
    """Order assignment rules so every rule runs after the rules it reads.

    Rules that do not depend on each other keep their declaration order.
    """

    targets: Dict[str, int] = {}
    for position, rule in enumerate(rules):
        if rule.variable in targets:
            raise ModelDefinitionError(f"Quantity {rule.variable!r} is assigned by more than one rule")
        targets[rule.variable] = position
    in_degree: Dict[int, int] = {}
    adjacency: Dict[int, List[int]] = {position: [] for position in range(len(rules))}
    for position, rule in enumerate(rules):
        deps = {targets[name] for name in rule.math.names() if name in targets}
        if position in deps:
            raise ModelDefinitionError(f"Assignment rule for {rule.variable!r} refers to itself")
        in_degree[position] = len(deps)
        for dep in deps:
            adjacency[dep].append(position)
    queue = deque(position for position in range(len(rules)) if in_degree[position] == 0)
    order: List[int] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for neighbour in sorted(adjacency[current]):
            in_degree[neighbour] -= 1
            if in_degree[neighbour] == 0:
                queue.append(neighbour)
    if len(order) != len(rules):
        remaining = [rules[position].variable for position, deg in in_degree.items() if deg > 0]
        raise ModelDefinitionError(f"Cycle detected in assignment rules: {remaining}")
    return [rules[position] for position in order]


__all__ = ["AssignmentRuleValue", "RateRuleValue", "RuleValue", "order_assignment_rules"]
