"""Terminal nodes that read quantities through a ValueHolder."""

from __future__ import annotations

import math
from typing import List, Optional, Sequence

from .ast_nodes import ExpressionNode, ResultKind
from .entities import Tag
from .errors import SimulationError
from .units import Conversion, stored_to_expression
from .value_holder import StateValueHolder


class TimeNode(ExpressionNode):
    def __init__(self, holder: StateValueHolder):
        super().__init__(Tag.TIME, (), "time")
        self.holder = holder

    def _compute_double(self, t: float) -> float:
        return self.holder.current_time


class SpeciesValueNode(ExpressionNode):
    """Species read in the units the surrounding math expects.

    The branch is fixed at construction: zero-dimensional compartments read the
    raw stored value, otherwise the stored value is converted with the current
    compartment size (a size of zero also reads raw).
    """

    def __init__(
        self,
        holder: StateValueHolder,
        species_id: str,
        position: int,
        compartment_position: int,
        conversion: Conversion,
        zero_dimensions: bool = False,
        compartment_id: Optional[str] = None,
    ):
        super().__init__(Tag.NAME, (), species_id)
        self.holder = holder
        self.position = position
        self.compartment_position = compartment_position
        self.compartment_id = compartment_id
        self.conversion: Conversion = "identity" if zero_dimensions else conversion

    def _volume(self) -> float:
        if self.compartment_position >= 0:
            return self.holder.value_at(self.compartment_position)
        return self.holder.value_of(self.compartment_id)

    def _compute_double(self, t: float) -> float:
        raw = self.holder.value_at(self.position)
        if self.conversion == "identity":
            return raw
        return stored_to_expression(raw, self._volume(), self.conversion)


class CompartmentOrParameterValueNode(ExpressionNode):
    """Compartment size or parameter value, bound by index or by id."""

    def __init__(self, holder: StateValueHolder, identifier: str, position: int = -1):
        super().__init__(Tag.NAME, (), identifier)
        self.holder = holder
        self.position = position

    def _compute_double(self, t: float) -> float:
        if self.position >= 0:
            return self.holder.value_at(self.position)
        return self.holder.value_of(self.name)


class LocalParameterValueNode(ExpressionNode):
    constant = True

    def __init__(self, identifier: str, value: float):
        super().__init__(Tag.NAME, (), identifier)
        self.value = float(value)

    def _compute_double(self, t: float) -> float:
        return self.value


class StoichiometryValueNode(ExpressionNode):
    def __init__(self, holder: StateValueHolder, reference_id: str):
        super().__init__(Tag.NAME, (), reference_id)
        self.holder = holder

    def _compute_double(self, t: float) -> float:
        return self.holder.stoichiometry(self.name)


class ReactionValueNode(ExpressionNode):
    """Current velocity of a reaction, i.e. its kinetic law."""

    def __init__(self, reaction_id: str, kinetic_law: Optional[ExpressionNode]):
        children = () if kinetic_law is None else (kinetic_law,)
        super().__init__(Tag.NAME, children, reaction_id)

    def _compute_double(self, t: float) -> float:
        if not self.children:
            return 0.0
        return self.children[0].evaluate_double(t)

    def __str__(self) -> str:
        return str(self.name)


class FunctionCallNode(ExpressionNode):
    """Call site of a user function.

    Arguments are evaluated into ``argument_values`` before the body, which
    was compiled for this call site and reads them through ``ArgumentNode``.
    """

    def __init__(self, function_id: str, arguments: Sequence[ExpressionNode]):
        super().__init__(Tag.FUNCTION, arguments, function_id)
        self.argument_values: List[float] = [math.nan] * len(self.children)
        self.body: Optional[ExpressionNode] = None

    def bind(self, body: ExpressionNode) -> None:
        self.body = body
        self.kind = body.kind

    def _load_arguments(self, t: float) -> None:
        for position, child in enumerate(self.children):
            if child.kind is ResultKind.BOOLEAN:
                self.argument_values[position] = child.evaluate_boolean(t)
            else:
                self.argument_values[position] = child.evaluate_double(t)

    def _compute_double(self, t: float) -> float:
        self._load_arguments(t)
        return self.body.evaluate_double(t)

    def _compute_boolean(self, t: float) -> bool:
        self._load_arguments(t)
        return self.body.evaluate_boolean(t)


class ArgumentNode(ExpressionNode):
    def __init__(self, call: FunctionCallNode, position: int, name: str, kind: ResultKind):
        super().__init__(Tag.NAME, (), name)
        self.call = call
        self.position = position
        self.kind = kind

    def _compute_double(self, t: float) -> float:
        return self.call.argument_values[self.position]

    def _compute_boolean(self, t: float) -> bool:
        return bool(self.call.argument_values[self.position])


class DelayNode(ExpressionNode):
    """``delay(x, d)``: value of ``x`` at ``time - d`` from the solver history."""

    def __init__(self, holder: StateValueHolder, quantity: ExpressionNode, delay: ExpressionNode):
        super().__init__(Tag.DELAY, (quantity, delay))
        self.holder = holder

    def _compute_double(self, t: float) -> float:
        quantity, delay = self.children
        lag = delay.evaluate_double(t)
        if lag == 0.0:
            return quantity.evaluate_double(t)
        if self.holder.delay_holder is None:
            raise SimulationError(f"{self} needs a registered delay value holder")
        history = self.holder.delay_holder
        target = self.holder.current_time - lag
        raw = history.delayed_value(target, quantity.name)
        if isinstance(quantity, SpeciesValueNode) and quantity.conversion != "identity":
            return stored_to_expression(raw, history.delayed_value(target, quantity.compartment_id), quantity.conversion)
        return raw


__all__ = [
    "ArgumentNode",
    "CompartmentOrParameterValueNode",
    "DelayNode",
    "FunctionCallNode",
    "LocalParameterValueNode",
    "ReactionValueNode",
    "SpeciesValueNode",
    "StoichiometryValueNode",
    "TimeNode",
]
