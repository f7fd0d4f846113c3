"""Live simulation state shared by every compiled expression node."""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol, Sequence

import numpy as np


class ValueHolder(Protocol):
    """Read access to the current time and quantity values."""

    @property
    def current_time(self) -> float: ...

    def value_at(self, position: int) -> float: ...

    def value_of(self, identifier: str) -> float: ...

    def species_value(self, identifier: str) -> float: ...

    def compartment_size(self, identifier: str) -> float: ...

    def parameter_value(self, identifier: str) -> float: ...

    def compartment_size_of(self, species_id: str) -> float: ...

    def stoichiometry(self, reference_id: str) -> float: ...


class DelayValueHolder(Protocol):
    def delayed_value(self, time: float, identifier: str) -> float: ...


class StateValueHolder:
    """Concrete holder backed by a numpy state vector.

    Quantities in the state vector are bound by index. Quantities that never
    change (constant parameters) live in a by-id table and are never copied
    into the vector.
    """

    def __init__(
        self,
        identifiers: Sequence[str],
        *,
        fixed_values: Optional[Mapping[str, float]] = None,
        species_compartments: Optional[Mapping[str, str]] = None,
        stoichiometry_positions: Optional[Mapping[str, int]] = None,
    ):
        self.identifiers = tuple(identifiers)
        self.index: Dict[str, int] = {name: pos for pos, name in enumerate(self.identifiers)}
        if len(self.index) != len(self.identifiers):
            raise ValueError("State identifiers must be unique")
        self.fixed_values: Dict[str, float] = dict(fixed_values or {})
        self.species_compartments: Dict[str, str] = dict(species_compartments or {})
        self.stoichiometry_positions: Dict[str, int] = dict(stoichiometry_positions or {})
        self.assigned_stoichiometries: Dict[str, float] = {}
        self.computed_stoichiometries: Dict[str, float] = {}
        self.y = np.zeros(len(self.identifiers), dtype=float)
        self.time = 0.0
        self.delay_holder: Optional[DelayValueHolder] = None

    @property
    def current_time(self) -> float:
        return self.time

    def load(self, time: float, y: np.ndarray) -> None:
        self.time = float(time)
        self.y[:] = y

    def position(self, identifier: str) -> int:
        return self.index.get(identifier, -1)

    def value_at(self, position: int) -> float:
        return float(self.y[position])

    def value_of(self, identifier: str) -> float:
        position = self.index.get(identifier)
        if position is not None:
            return float(self.y[position])
        if identifier in self.fixed_values:
            return self.fixed_values[identifier]
        raise KeyError(identifier)

    def species_value(self, identifier: str) -> float:
        return self.value_of(identifier)

    def compartment_size(self, identifier: str) -> float:
        return self.value_of(identifier)

    def parameter_value(self, identifier: str) -> float:
        return self.value_of(identifier)

    def compartment_size_of(self, species_id: str) -> float:
        return self.value_of(self.species_compartments[species_id])

    def stoichiometry(self, reference_id: str) -> float:
        position = self.stoichiometry_positions.get(reference_id)
        if position is not None:
            return float(self.y[position])
        if reference_id in self.assigned_stoichiometries:
            return self.assigned_stoichiometries[reference_id]
        if reference_id in self.computed_stoichiometries:
            return self.computed_stoichiometries[reference_id]
        raise KeyError(reference_id)


__all__ = ["DelayValueHolder", "StateValueHolder", "ValueHolder"]
