"""Core dataclasses describing a loaded reaction-network model."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple, Union

import numpy as np
import pandas as pd


EVENT_LOG_FIELDS = ("event_id", "time_fire", "assignments")


class Tag(str, Enum):
    """Closed set of operators and terminals an expression tree may carry."""

    REAL = "real"
    INTEGER = "integer"
    RATIONAL = "rational"
    REAL_E = "real_e"
    CONSTANT_PI = "pi"
    CONSTANT_E = "exponentiale"
    AVOGADRO = "avogadro"
    TRUE = "true"
    FALSE = "false"
    NAME = "name"
    TIME = "time"
    DELAY = "delay"
    FUNCTION = "function"
    PLUS = "plus"
    MINUS = "minus"
    TIMES = "times"
    DIVIDE = "divide"
    POWER = "power"
    ROOT = "root"
    LOG = "log"
    LN = "ln"
    EXP = "exp"
    ABS = "abs"
    FLOOR = "floor"
    CEILING = "ceiling"
    FACTORIAL = "factorial"
    SIN = "sin"
    COS = "cos"
    TAN = "tan"
    SEC = "sec"
    CSC = "csc"
    COT = "cot"
    SINH = "sinh"
    COSH = "cosh"
    TANH = "tanh"
    SECH = "sech"
    CSCH = "csch"
    COTH = "coth"
    ARCSIN = "arcsin"
    ARCCOS = "arccos"
    ARCTAN = "arctan"
    ARCSEC = "arcsec"
    ARCCSC = "arccsc"
    ARCCOT = "arccot"
    ARCSINH = "arcsinh"
    ARCCOSH = "arccosh"
    ARCTANH = "arctanh"
    ARCSECH = "arcsech"
    ARCCSCH = "arccsch"
    ARCCOTH = "arccoth"
    PIECEWISE = "piecewise"
    AND = "and"
    OR = "or"
    XOR = "xor"
    NOT = "not"
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GEQ = "geq"
    LT = "lt"
    LEQ = "leq"

    def __str__(self) -> str:
        return self.value


NUMBER_TAGS = frozenset({Tag.REAL, Tag.INTEGER, Tag.RATIONAL, Tag.REAL_E})
RELATIONAL_TAGS = frozenset({Tag.EQ, Tag.NEQ, Tag.GT, Tag.GEQ, Tag.LT, Tag.LEQ})
LOGICAL_TAGS = frozenset({Tag.AND, Tag.OR, Tag.XOR, Tag.NOT})


@dataclass(frozen=True)
class MathNode:
    """Typed expression tree handed over by the model loader."""

    tag: Tag
    children: Tuple["MathNode", ...] = ()
    name: Optional[str] = None
    value: Optional[float] = None

    def names(self) -> Iterable[str]:
        if self.tag == Tag.NAME and self.name is not None:
            yield self.name
        for child in self.children:
            yield from child.names()

    def __str__(self) -> str:
        if self.tag in NUMBER_TAGS:
            return repr(self.value)
        if self.tag == Tag.NAME:
            return str(self.name)
        label = self.name if self.tag == Tag.FUNCTION else self.tag.value
        return f"{label}({', '.join(str(child) for child in self.children)})"


def number(value: float, tag: Tag = Tag.REAL) -> MathNode:
    return MathNode(Tag(tag), value=float(value))


def symbol(identifier: str) -> MathNode:
    return MathNode(Tag.NAME, name=identifier)


def apply(tag: Union[Tag, str], *children: MathNode) -> MathNode:
    return MathNode(Tag(tag), tuple(children))


def call(function_id: str, *children: MathNode) -> MathNode:
    return MathNode(Tag.FUNCTION, tuple(children), name=function_id)


@dataclass(frozen=True)
class Compartment:
    identifier: str
    size: Optional[float] = None
    spatial_dimensions: float = 3.0
    constant: bool = True


@dataclass(frozen=True)
class Species:
    identifier: str
    compartment: str
    initial_amount: Optional[float] = None
    initial_concentration: Optional[float] = None
    has_only_substance_units: bool = False
    boundary_condition: bool = False
    constant: bool = False
    conversion_factor: Optional[str] = None

    @property
    def stored_as_amount(self) -> bool:
        """Amount-stored unless an initial concentration is the only declaration."""
        return self.initial_amount is not None or self.initial_concentration is None


@dataclass(frozen=True)
class Parameter:
    identifier: str
    value: Optional[float] = None
    constant: bool = True


@dataclass(frozen=True)
class SpeciesReference:
    species: str
    stoichiometry: Optional[float] = None
    identifier: Optional[str] = None
    constant: Optional[bool] = None
    stoichiometry_math: Optional[MathNode] = None


@dataclass(frozen=True)
class Reaction:
    identifier: str
    reactants: Tuple[SpeciesReference, ...] = ()
    products: Tuple[SpeciesReference, ...] = ()
    kinetic_law: Optional[MathNode] = None
    local_parameters: Dict[str, float] = field(default_factory=dict)
    fast: bool = False


@dataclass(frozen=True)
class FunctionDefinition:
    identifier: str
    arguments: Tuple[str, ...]
    body: MathNode


@dataclass(frozen=True)
class Rule:
    """Assignment, rate or algebraic rule; algebraic rules carry no variable."""

    kind: str
    math: MathNode
    variable: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in {"assignment", "rate", "algebraic"}:
            raise ValueError(f"Unknown rule kind {self.kind!r}")


@dataclass(frozen=True)
class InitialAssignment:
    variable: str
    math: MathNode


@dataclass(frozen=True)
class EventAssignment:
    variable: str
    math: MathNode


@dataclass(frozen=True)
class Event:
    identifier: str
    trigger: MathNode
    assignments: Tuple[EventAssignment, ...] = ()
    delay: Optional[MathNode] = None
    priority: Optional[MathNode] = None
    use_values_from_trigger_time: bool = True
    persistent: bool = True
    initial_value: bool = True


@dataclass(frozen=True)
class Constraint:
    math: MathNode
    message: str = ""


@dataclass(frozen=True)
class ModelDefinition:
    """Everything the simulator needs from a loaded model."""

    identifier: str = "model"
    compartments: Tuple[Compartment, ...] = ()
    species: Tuple[Species, ...] = ()
    parameters: Tuple[Parameter, ...] = ()
    reactions: Tuple[Reaction, ...] = ()
    function_definitions: Tuple[FunctionDefinition, ...] = ()
    rules: Tuple[Rule, ...] = ()
    initial_assignments: Tuple[InitialAssignment, ...] = ()
    events: Tuple[Event, ...] = ()
    constraints: Tuple[Constraint, ...] = ()
    conversion_factor: Optional[str] = None

    def compartment(self, identifier: str) -> Optional[Compartment]:
        for entry in self.compartments:
            if entry.identifier == identifier:
                return entry
        return None


@dataclass(frozen=True)
class SimulationResult:
    """Sampled trajectory plus the event log of one simulation run."""

    time: np.ndarray
    states: np.ndarray
    identifiers: Tuple[str, ...]
    event_log: Tuple[Dict[str, object], ...] = ()
    provenance: Dict[str, str] = field(default_factory=dict)

    def column(self, identifier: str) -> np.ndarray:
        try:
            position = self.identifiers.index(identifier)
        except ValueError as exc:
            raise KeyError(identifier) from exc
        return self.states[:, position]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.states, columns=list(self.identifiers))
        frame.insert(0, "time", self.time)
        frame.attrs.update(self.provenance)
        return frame

    def event_frame(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.event_log), columns=list(EVENT_LOG_FIELDS))


__all__ = [
    "EVENT_LOG_FIELDS",
    "LOGICAL_TAGS",
    "NUMBER_TAGS",
    "RELATIONAL_TAGS",
    "Compartment",
    "Constraint",
    "Event",
    "EventAssignment",
    "FunctionDefinition",
    "InitialAssignment",
    "MathNode",
    "ModelDefinition",
    "Parameter",
    "Reaction",
    "Rule",
    "SimulationResult",
    "Species",
    "SpeciesReference",
    "Tag",
    "apply",
    "call",
    "number",
    "symbol",
]
