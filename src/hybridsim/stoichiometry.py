"""Per-participant stoichiometry with cached, lazily refreshed coefficients."""

from __future__ import annotations

import logging
import math
from typing import Literal, Optional

import numpy as np

from .ast_nodes import ExpressionNode
from .errors import NegativeValueError
from .value_holder import StateValueHolder

logger = logging.getLogger(__name__)

NegativeValuePolicy = Literal["error", "abs", "allow"]
NEGATIVE_POLICIES = ("error", "abs", "allow")


def apply_negative_policy(value: float, policy: NegativeValuePolicy, what: str) -> float:
    if value >= 0.0 or math.isnan(value):
        return value
    if policy == "error":
        raise NegativeValueError(f"{what} is negative ({value})")
    if policy == "abs":
        logger.warning("%s is negative (%s); using its magnitude", what, value)
        return -value
    return value


class StoichiometryValue:
    """Contribution of one species reference of one reaction to the derivatives.

    The coefficient is taken, in order of preference, from the state vector
    (the reference is the target of a rate rule), from the map of externally
    assigned stoichiometries, from its stoichiometry math, or from the
    declared value.
    """

    def __init__(
        self,
        holder: StateValueHolder,
        *,
        reaction_index: int,
        species_position: int,
        reactant: bool,
        declared: Optional[float] = None,
        reference_id: Optional[str] = None,
        reference_position: int = -1,
        math: Optional[ExpressionNode] = None,
        constant_stoichiometry: bool = False,
        boundary_condition: bool = False,
        constant_quantity: bool = False,
        in_concentration: bool = False,
        compartment_position: int = -1,
        negative_policy: NegativeValuePolicy = "error",
    ):
        self.holder = holder
        self.reaction_index = reaction_index
        self.species_position = species_position
        self.reactant = reactant
        self.declared = 1.0 if declared is None else float(declared)
        self.reference_id = reference_id
        self.reference_position = reference_position
        self.math = math
        self.constant_stoichiometry = constant_stoichiometry
        self.zero_change = boundary_condition or constant_quantity
        self.in_concentration = in_concentration
        self.compartment_position = compartment_position
        self.negative_policy = negative_policy
        self.stoichiometry = float("nan")
        self.stoichiometry_set = False
        self.last_time: Optional[float] = None
        self.computations = 0

    def _compute(self, t: float) -> None:
        self.computations += 1
        if self.reference_position >= 0:
            value = self.holder.value_at(self.reference_position)
            self.stoichiometry_set = True
        elif self.reference_id is not None and self.reference_id in self.holder.assigned_stoichiometries:
            value = self.holder.assigned_stoichiometries[self.reference_id]
            self.stoichiometry_set = True
        elif self.math is not None:
            value = self.math.evaluate_double(t)
            self.stoichiometry_set = True
        else:
            value = self.declared
            self.stoichiometry_set = self.reference_id is None or self.constant_stoichiometry
        what = f"stoichiometry of {self.reference_id or 'species reference'} in reaction {self.reaction_index}"
        self.stoichiometry = apply_negative_policy(value, self.negative_policy, what)
        if self.reference_id is not None:
            self.holder.computed_stoichiometries[self.reference_id] = self.stoichiometry

    def compile(self, t: float) -> float:
        """Return the coefficient at ``t``, recomputing only when needed."""
        if self.last_time != t:
            self.last_time = t
            if not self.constant_stoichiometry or not self.stoichiometry_set:
                self._compute(t)
        return self.stoichiometry

    def refresh(self, t: Optional[float] = None) -> float:
        """Force a recomputation after an external change of the coefficient."""
        self.last_time = t
        self._compute(t if t is not None else self.holder.current_time)
        return self.stoichiometry

    def compute_change(self, t: float, change_rate: np.ndarray, velocities: np.ndarray) -> None:
        if self.zero_change:
            return
        if not self.constant_stoichiometry or not self.stoichiometry_set:
            self.compile(t)
        term = self.stoichiometry * velocities[self.reaction_index]
        if self.in_concentration:
            term = term / self.holder.value_at(self.compartment_position)
        if self.reactant:
            change_rate[self.species_position] -= term
        else:
            change_rate[self.species_position] += term


__all__ = ["NEGATIVE_POLICIES", "NegativeValuePolicy", "StoichiometryValue", "apply_negative_policy"]
