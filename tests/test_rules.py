from __future__ import annotations

import numpy as np
import pytest

from src.hybridsim.compiler import ExpressionCompiler
from src.hybridsim.entities import (
    Compartment,
    ModelDefinition,
    Parameter,
    Rule,
    Species,
    Tag,
    apply,
    number,
    symbol,
)
from src.hybridsim.errors import ModelDefinitionError
from src.hybridsim.rules import AssignmentRuleValue, RateRuleValue, order_assignment_rules
from src.hybridsim.system import ReactionNetworkSystem
from src.hybridsim.value_holder import StateValueHolder


def test_assignment_rule_reports_change_only_once() -> None:
    holder = StateValueHolder(["x", "y"])
    holder.y[:] = [2.0, 0.0]
    compiler = ExpressionCompiler(ModelDefinition(), holder)
    rule = AssignmentRuleValue(compiler.compile(apply(Tag.TIMES, number(3.0), symbol("x"))), 1, holder, variable="y")

    assert rule.process_rule(holder.y, 1.0) is True
    assert holder.y[1] == pytest.approx(6.0)
    assert rule.process_rule(holder.y, 2.0) is False


def test_assignment_rule_without_writing_keeps_state() -> None:
    holder = StateValueHolder(["y"])
    compiler = ExpressionCompiler(ModelDefinition(), holder)
    rule = AssignmentRuleValue(compiler.compile(number(5.0)), 0, holder, variable="y")

    assert rule.process_rule(holder.y, 1.0, change_y=False) is True
    assert holder.y[0] == 0.0
    assert rule.value == pytest.approx(5.0)


def test_species_rule_target_written_in_storage_units() -> None:
    model = ModelDefinition(
        compartments=(Compartment("c", size=2.0),),
        species=(Species("A", "c", initial_amount=1.0),),
        rules=(Rule("assignment", number(3.0), variable="A"),),
    )
    system = ReactionNetworkSystem(model)
    # math sees the concentration 3, the amount stored is 3 * 2
    assert system.initial_values()[system.position("A")] == pytest.approx(6.0)


def test_rate_rule_on_compartment_corrects_species_concentration() -> None:
    model = ModelDefinition(
        compartments=(Compartment("c", size=2.0, constant=False),),
        species=(Species("S", "c", initial_concentration=4.0),),
        rules=(Rule("rate", number(1.0), variable="c"),),
    )
    system = ReactionNetworkSystem(model)
    change = system.compute_derivatives(0.0, system.initial_values())

    assert change[system.position("c")] == pytest.approx(1.0)
    assert change[system.position("S")] == pytest.approx(-2.0)


def test_rate_rule_value_writes_change_rate() -> None:
    holder = StateValueHolder(["v", "s"])
    holder.y[:] = [4.0, 8.0]
    compiler = ExpressionCompiler(ModelDefinition(), holder)
    rule = RateRuleValue(compiler.compile(number(-2.0)), 0, holder, variable="v", dependent_positions=(1,))
    change = np.zeros(2)

    rule.process_rule(change, holder.y, 1.0)

    assert change[0] == pytest.approx(-2.0)
    assert change[1] == pytest.approx(4.0)


def test_assignment_rules_are_ordered_by_dependency() -> None:
    rules = [
        Rule("assignment", apply(Tag.PLUS, symbol("a"), number(1.0)), variable="b"),
        Rule("assignment", number(2.0), variable="a"),
        Rule("assignment", number(7.0), variable="z"),
    ]
    ordered = [rule.variable for rule in order_assignment_rules(rules)]
    assert ordered.index("a") < ordered.index("b")
    assert set(ordered) == {"a", "b", "z"}


def test_cyclic_assignment_rules_are_rejected() -> None:
    rules = [
        Rule("assignment", symbol("b"), variable="a"),
        Rule("assignment", symbol("a"), variable="b"),
    ]
    with pytest.raises(ModelDefinitionError):
        order_assignment_rules(rules)


def test_assignment_rule_changing_compartment_rescales_concentrations() -> None:
    model = ModelDefinition(
        compartments=(Compartment("c", size=1.0, constant=False),),
        species=(Species("S", "c", initial_concentration=4.0),),
        parameters=(Parameter("size", 1.0, constant=False),),
        rules=(Rule("assignment", symbol("size"), variable="c"),),
    )
    system = ReactionNetworkSystem(model)
    y = system.initial_values()
    y[system.position("size")] = 2.0

    assert system.process_assignment_rules(1.0, y) is True
    assert y[system.position("c")] == pytest.approx(2.0)
    assert y[system.position("S")] == pytest.approx(2.0)
    assert system.process_assignment_rules(1.0, y) is False
