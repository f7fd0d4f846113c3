from __future__ import annotations

import pytest
import sympy as sp

from src.hybridsim.entities import MathNode, Rule, Tag, apply, number, symbol
from src.hybridsim.errors import ModelDefinitionError
from src.hybridsim.sympy_bridge import from_sympy, solve_algebraic_rule, to_sympy


def test_to_sympy_builds_equivalent_expression() -> None:
    node = apply(
        Tag.MINUS,
        apply(Tag.TIMES, number(2, Tag.INTEGER), symbol("x")),
        apply(Tag.LOG, number(10, Tag.INTEGER), symbol("y")),
    )
    x, y = sp.symbols("x y")
    assert sp.simplify(to_sympy(node) - (2 * x - sp.log(y, 10))) == 0


def test_time_round_trips_through_private_symbol() -> None:
    expr = to_sympy(apply(Tag.PLUS, MathNode(Tag.TIME), symbol("k")))
    back = from_sympy(expr)
    assert back.tag == Tag.PLUS
    assert {child.tag for child in back.children} == {Tag.TIME, Tag.NAME}


def test_from_sympy_keeps_integer_literals() -> None:
    node = from_sympy(sp.Integer(3) * sp.Symbol("k"))
    assert node.tag == Tag.TIMES
    tags = sorted(child.tag.value for child in node.children)
    assert tags == sorted([Tag.INTEGER.value, Tag.NAME.value])


def test_solve_algebraic_rule_picks_first_solvable_candidate() -> None:
    rule = Rule("algebraic", apply(Tag.MINUS, symbol("p"), apply(Tag.TIMES, number(2.0), symbol("k"))))
    solved = solve_algebraic_rule(rule, ["q", "p", "k"])

    assert solved.kind == "assignment"
    assert solved.variable == "p"
    assert sp.simplify(to_sympy(solved.math) - 2.0 * sp.Symbol("k")) == 0


def test_solve_algebraic_rule_without_candidate_fails() -> None:
    rule = Rule("algebraic", apply(Tag.MINUS, symbol("p"), number(1.0)))
    with pytest.raises(ModelDefinitionError):
        solve_algebraic_rule(rule, ["q"])


def test_unsupported_operator_is_rejected() -> None:
    with pytest.raises(ModelDefinitionError):
        to_sympy(apply(Tag.AND, MathNode(Tag.TRUE), MathNode(Tag.FALSE)))
