"""Compiled expression nodes with a per-node, time-keyed result cache.

Every node produces either doubles or booleans; the kind is fixed when the
node is built. ``evaluate_double(t)`` / ``evaluate_boolean(t)`` return the
cached result when the node was last evaluated at the same ``t``. The
simulator passes a fresh evaluation stamp whenever the state may have
changed, so a cached value is never read against a different state.

Arithmetic follows numpy scalar semantics: division by zero yields ``inf``
and invalid domains yield ``nan`` instead of raising.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Callable, Dict, Optional, Sequence

import numpy as np
from scipy.special import gamma

from .entities import Tag
from .errors import EvaluationContractError

logger = logging.getLogger(__name__)

AVOGADRO = 6.02214179e23


class ResultKind(str, Enum):
    DOUBLE = "double"
    BOOLEAN = "boolean"


class ExpressionNode:
    """Base node: cache bookkeeping plus the double/boolean contract."""

    kind = ResultKind.DOUBLE
    constant = False

    def __init__(self, tag: Tag, children: Sequence["ExpressionNode"] = (), name: Optional[str] = None):
        self.tag = tag
        self.children = tuple(children)
        self.name = name
        self.last_time: Optional[float] = None
        self.cached_double = math.nan
        self.cached_bool = False
        self.result_kind: Optional[ResultKind] = None
        self.processed = False
        self.recomputations = 0

    def _is_cached(self, t: float) -> bool:
        if self.constant and self.processed:
            return True
        return self.processed and self.last_time == t

    def evaluate_double(self, t: float) -> float:
        if self.kind is not ResultKind.DOUBLE:
            raise EvaluationContractError(f"{self} yields a boolean, not a number")
        if self._is_cached(t):
            return self.cached_double
        with np.errstate(all="ignore"):
            value = float(self._compute_double(t))
        self.cached_double = value
        self.result_kind = ResultKind.DOUBLE
        self.last_time = t
        self.processed = True
        self.recomputations += 1
        return value

    def evaluate_boolean(self, t: float) -> bool:
        if self.kind is not ResultKind.BOOLEAN:
            raise EvaluationContractError(f"{self} yields a number, not a boolean")
        if self._is_cached(t):
            return self.cached_bool
        with np.errstate(all="ignore"):
            value = bool(self._compute_boolean(t))
        self.cached_bool = value
        self.result_kind = ResultKind.BOOLEAN
        self.last_time = t
        self.processed = True
        self.recomputations += 1
        return value

    def evaluate(self, t: float) -> float:
        """Numeric view of any node; booleans map to 1.0/0.0."""
        if self.kind is ResultKind.BOOLEAN:
            return 1.0 if self.evaluate_boolean(t) else 0.0
        return self.evaluate_double(t)

    def invalidate(self) -> None:
        self.last_time = None
        self.processed = False

    def _compute_double(self, t: float) -> float:
        raise NotImplementedError

    def _compute_boolean(self, t: float) -> bool:
        raise NotImplementedError

    def __str__(self) -> str:
        label = self.name if self.name is not None else self.tag.value
        if not self.children:
            return label
        return f"{label}({', '.join(str(child) for child in self.children)})"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self}>"


class ConstantNode(ExpressionNode):
    constant = True

    def __init__(self, tag: Tag, value: float, name: Optional[str] = None):
        super().__init__(tag, (), name)
        self.value = float(value)

    def _compute_double(self, t: float) -> float:
        return self.value

    def __str__(self) -> str:
        return self.name if self.name is not None else repr(self.value)


class BooleanConstantNode(ExpressionNode):
    kind = ResultKind.BOOLEAN
    constant = True

    def __init__(self, value: bool):
        super().__init__(Tag.TRUE if value else Tag.FALSE)
        self.value = bool(value)

    def _compute_boolean(self, t: float) -> bool:
        return self.value


class PlusNode(ExpressionNode):
    def _compute_double(self, t: float) -> float:
        total = np.float64(0.0)
        for child in self.children:
            total = total + child.evaluate_double(t)
        return total


class MinusNode(ExpressionNode):
    def _compute_double(self, t: float) -> float:
        first = np.float64(self.children[0].evaluate_double(t))
        if len(self.children) == 1:
            return -first
        for child in self.children[1:]:
            first = first - child.evaluate_double(t)
        return first


class TimesNode(ExpressionNode):
    def _compute_double(self, t: float) -> float:
        product = np.float64(1.0)
        for child in self.children:
            product = product * child.evaluate_double(t)
        return product


class DivideNode(ExpressionNode):
    def _compute_double(self, t: float) -> float:
        left, right = self.children
        return np.float64(left.evaluate_double(t)) / np.float64(right.evaluate_double(t))


def _literal_integer(node: ExpressionNode) -> bool:
    return isinstance(node, ConstantNode) and node.tag == Tag.INTEGER


class PowerNode(ExpressionNode):
    """``base ** exponent`` with a real-valued fallback for negative bases."""

    def __init__(self, tag: Tag, children: Sequence[ExpressionNode], name: Optional[str] = None):
        super().__init__(tag, children, name)
        self._warned = False

    def _compute_double(self, t: float) -> float:
        base_node, exponent_node = self.children
        base = np.float64(base_node.evaluate_double(t))
        exponent = np.float64(exponent_node.evaluate_double(t))
        if exponent == 2.0:
            return base * base
        if exponent == 3.0:
            return base * base * base
        if base < 0.0 and not _literal_integer(exponent_node):
            sign = np.power(np.float64(-1.0), exponent)
            if np.isnan(sign):
                sign = -1.0
                if not self._warned:
                    logger.warning(
                        "power of negative base %s with exponent %s; using -|base|**exponent", base, exponent
                    )
                    self._warned = True
            return np.power(np.abs(base), exponent) * sign
        return np.power(base, exponent)


def _odd_integer(value: float) -> bool:
    return math.isfinite(value) and float(value).is_integer() and int(value) % 2 == 1


class RootNode(ExpressionNode):
    """``root(degree, radicand)``; a single child is a square root."""

    def _compute_double(self, t: float) -> float:
        if len(self.children) == 1:
            return np.sqrt(np.float64(self.children[0].evaluate_double(t)))
        degree_node, radicand_node = self.children
        radicand = np.float64(radicand_node.evaluate_double(t))
        if isinstance(degree_node, ConstantNode) and degree_node.value == 2.0:
            return np.sqrt(radicand)
        degree = float(degree_node.evaluate_double(t))
        if radicand < 0.0 and _odd_integer(degree):
            return -np.power(-radicand, 1.0 / degree)
        return np.power(radicand, 1.0 / degree)


class LogNode(ExpressionNode):
    """``log(x)`` in base 10, or ``log(base, x)``."""

    def _compute_double(self, t: float) -> float:
        if len(self.children) == 1:
            return np.log10(np.float64(self.children[0].evaluate_double(t)))
        base_node, value_node = self.children
        return np.log(np.float64(value_node.evaluate_double(t))) / np.log(np.float64(base_node.evaluate_double(t)))


def _reciprocal(function: Callable[[np.float64], np.float64]) -> Callable[[np.float64], np.float64]:
    return lambda x: 1.0 / function(x)


def _of_reciprocal(function: Callable[[np.float64], np.float64]) -> Callable[[np.float64], np.float64]:
    return lambda x: function(1.0 / x)


def _factorial(x: np.float64) -> np.float64:
    return gamma(np.round(x) + 1.0)


UNARY_FUNCTIONS: Dict[Tag, Callable[[np.float64], np.float64]] = {
    Tag.LN: np.log,
    Tag.EXP: np.exp,
    Tag.ABS: np.abs,
    Tag.FLOOR: np.floor,
    Tag.CEILING: np.ceil,
    Tag.FACTORIAL: _factorial,
    Tag.SIN: np.sin,
    Tag.COS: np.cos,
    Tag.TAN: np.tan,
    Tag.SEC: _reciprocal(np.cos),
    Tag.CSC: _reciprocal(np.sin),
    Tag.COT: _reciprocal(np.tan),
    Tag.SINH: np.sinh,
    Tag.COSH: np.cosh,
    Tag.TANH: np.tanh,
    Tag.SECH: _reciprocal(np.cosh),
    Tag.CSCH: _reciprocal(np.sinh),
    Tag.COTH: _reciprocal(np.tanh),
    Tag.ARCSIN: np.arcsin,
    Tag.ARCCOS: np.arccos,
    Tag.ARCTAN: np.arctan,
    Tag.ARCSEC: _of_reciprocal(np.arccos),
    Tag.ARCCSC: _of_reciprocal(np.arcsin),
    Tag.ARCCOT: _of_reciprocal(np.arctan),
    Tag.ARCSINH: np.arcsinh,
    Tag.ARCCOSH: np.arccosh,
    Tag.ARCTANH: np.arctanh,
    Tag.ARCSECH: _of_reciprocal(np.arccosh),
    Tag.ARCCSCH: _of_reciprocal(np.arcsinh),
    Tag.ARCCOTH: _of_reciprocal(np.arctanh),
}


class UnaryFunctionNode(ExpressionNode):
    def __init__(self, tag: Tag, children: Sequence[ExpressionNode], name: Optional[str] = None):
        super().__init__(tag, children, name)
        self.function = UNARY_FUNCTIONS[tag]

    def _compute_double(self, t: float) -> float:
        return self.function(np.float64(self.children[0].evaluate_double(t)))


class PiecewiseNode(ExpressionNode):
    """``piecewise(value1, cond1, value2, cond2, ..., [otherwise])``."""

    def __init__(self, tag: Tag, children: Sequence[ExpressionNode], kind: ResultKind):
        super().__init__(tag, children)
        self.kind = kind

    def _select(self, t: float) -> Optional[ExpressionNode]:
        pairs = len(self.children) // 2
        for position in range(pairs):
            if self.children[2 * position + 1].evaluate_boolean(t):
                return self.children[2 * position]
        if len(self.children) % 2:
            return self.children[-1]
        return None

    def _compute_double(self, t: float) -> float:
        chosen = self._select(t)
        return math.nan if chosen is None else chosen.evaluate_double(t)

    def _compute_boolean(self, t: float) -> bool:
        chosen = self._select(t)
        return False if chosen is None else chosen.evaluate_boolean(t)


class LogicalNode(ExpressionNode):
    kind = ResultKind.BOOLEAN

    def _compute_boolean(self, t: float) -> bool:
        if self.tag == Tag.NOT:
            return not self.children[0].evaluate_boolean(t)
        if self.tag == Tag.AND:
            return all(child.evaluate_boolean(t) for child in self.children)
        if self.tag == Tag.OR:
            return any(child.evaluate_boolean(t) for child in self.children)
        # xor holds when exactly one operand is true
        return sum(1 for child in self.children if child.evaluate_boolean(t)) == 1


_RELATIONS: Dict[Tag, Callable[[float, float], bool]] = {
    Tag.EQ: lambda a, b: a == b,
    Tag.NEQ: lambda a, b: a != b,
    Tag.GT: lambda a, b: a > b,
    Tag.GEQ: lambda a, b: a >= b,
    Tag.LT: lambda a, b: a < b,
    Tag.LEQ: lambda a, b: a <= b,
}


class RelationalNode(ExpressionNode):
    kind = ResultKind.BOOLEAN

    def operands(self, t: float):
        left, right = self.children
        return left.evaluate(t), right.evaluate(t)

    def _compute_boolean(self, t: float) -> bool:
        left, right = self.operands(t)
        return _RELATIONS[self.tag](left, right)


__all__ = [
    "AVOGADRO",
    "UNARY_FUNCTIONS",
    "BooleanConstantNode",
    "ConstantNode",
    "DivideNode",
    "ExpressionNode",
    "LogNode",
    "LogicalNode",
    "MinusNode",
    "PiecewiseNode",
    "PlusNode",
    "PowerNode",
    "RelationalNode",
    "ResultKind",
    "RootNode",
    "TimesNode",
    "UnaryFunctionNode",
]
