"""Conversion between expression trees and sympy, used for algebraic rules."""

from __future__ import annotations

import logging
from typing import Sequence

import sympy as sp

from .entities import NUMBER_TAGS, MathNode, Rule, Tag, apply, number, symbol
from .errors import ModelDefinitionError

logger = logging.getLogger(__name__)

_TIME_SYMBOL = sp.Symbol("__time__")

_TO_SYMPY_UNARY = {
    Tag.EXP: sp.exp,
    Tag.LN: sp.log,
    Tag.ABS: sp.Abs,
    Tag.FLOOR: sp.floor,
    Tag.CEILING: sp.ceiling,
    Tag.SIN: sp.sin,
    Tag.COS: sp.cos,
    Tag.TAN: sp.tan,
    Tag.SINH: sp.sinh,
    Tag.COSH: sp.cosh,
    Tag.TANH: sp.tanh,
    Tag.ARCSIN: sp.asin,
    Tag.ARCCOS: sp.acos,
    Tag.ARCTAN: sp.atan,
}

_FROM_SYMPY_UNARY = {
    sp.exp: Tag.EXP,
    sp.log: Tag.LN,
    sp.Abs: Tag.ABS,
    sp.floor: Tag.FLOOR,
    sp.ceiling: Tag.CEILING,
    sp.sin: Tag.SIN,
    sp.cos: Tag.COS,
    sp.tan: Tag.TAN,
    sp.sinh: Tag.SINH,
    sp.cosh: Tag.COSH,
    sp.tanh: Tag.TANH,
    sp.asin: Tag.ARCSIN,
    sp.acos: Tag.ARCCOS,
    sp.atan: Tag.ARCTAN,
}


def to_sympy(node: MathNode) -> sp.Expr:
    tag = node.tag
    if tag in NUMBER_TAGS:
        if tag == Tag.INTEGER:
            return sp.Integer(int(node.value))
        return sp.Float(node.value)
    if tag == Tag.NAME:
        return sp.Symbol(node.name)
    if tag == Tag.TIME:
        return _TIME_SYMBOL
    if tag == Tag.CONSTANT_PI:
        return sp.pi
    if tag == Tag.CONSTANT_E:
        return sp.E
    args = [to_sympy(child) for child in node.children]
    if tag == Tag.PLUS:
        return sp.Add(*args)
    if tag == Tag.TIMES:
        return sp.Mul(*args)
    if tag == Tag.MINUS:
        if len(args) == 1:
            return -args[0]
        return args[0] - sp.Add(*args[1:])
    if tag == Tag.DIVIDE and len(args) == 2:
        return args[0] / args[1]
    if tag == Tag.POWER and len(args) == 2:
        return sp.Pow(args[0], args[1])
    if tag == Tag.ROOT:
        if len(args) == 1:
            return sp.sqrt(args[0])
        return sp.Pow(args[1], 1 / args[0])
    if tag == Tag.LOG:
        if len(args) == 1:
            return sp.log(args[0], 10)
        return sp.log(args[1], args[0])
    if tag in _TO_SYMPY_UNARY and len(args) == 1:
        return _TO_SYMPY_UNARY[tag](args[0])
    raise ModelDefinitionError(f"Cannot express {tag.value!r} symbolically: {node}")


def from_sympy(expr: sp.Basic) -> MathNode:
    if expr == _TIME_SYMBOL:
        return MathNode(Tag.TIME)
    if isinstance(expr, sp.Symbol):
        return symbol(expr.name)
    if expr == sp.pi:
        return MathNode(Tag.CONSTANT_PI)
    if expr == sp.E:
        return MathNode(Tag.CONSTANT_E)
    if isinstance(expr, sp.Integer):
        return number(int(expr), Tag.INTEGER)
    if isinstance(expr, sp.Rational):
        return number(float(expr), Tag.RATIONAL)
    if expr.is_Number:
        return number(float(expr))
    if isinstance(expr, sp.Add):
        return apply(Tag.PLUS, *(from_sympy(arg) for arg in expr.args))
    if isinstance(expr, sp.Mul):
        return apply(Tag.TIMES, *(from_sympy(arg) for arg in expr.args))
    if isinstance(expr, sp.Pow):
        base, exponent = expr.args
        return apply(Tag.POWER, from_sympy(base), from_sympy(exponent))
    if expr.func in _FROM_SYMPY_UNARY and len(expr.args) == 1:
        return apply(_FROM_SYMPY_UNARY[expr.func], from_sympy(expr.args[0]))
    raise ModelDefinitionError(f"Cannot convert sympy expression {expr} back")


def solve_algebraic_rule(rule: Rule, candidates: Sequence[str]) -> Rule:
    """Turn ``0 = math`` into an assignment rule for one of ``candidates``.

    The first candidate occurring in the expression for which sympy finds an
    explicit solution becomes the rule's variable.
    """

    residual = to_sympy(rule.math)
    free = {sym.name for sym in residual.free_symbols}
    for name in candidates:
        if name not in free:
            continue
        target = sp.Symbol(name)
        try:
            solutions = sp.solve(sp.Eq(residual, 0), target, dict=True)
        except NotImplementedError:
            logger.debug("sympy cannot isolate %s in %s", name, residual)
            continue
        if solutions:
            solution = solutions[0][target]
            logger.debug("algebraic rule 0 = %s solved for %s = %s", residual, name, solution)
            return Rule("assignment", from_sympy(solution), variable=name)
    raise ModelDefinitionError(f"Algebraic rule 0 = {rule.math} determines none of {list(candidates)}")


__all__ = ["from_sympy", "solve_algebraic_rule", "to_sympy"]
