from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from src.hybridsim.entities import (
    EVENT_LOG_FIELDS,
    Compartment,
    Event,
    EventAssignment,
    MathNode,
    ModelDefinition,
    Parameter,
    Reaction,
    Rule,
    Species,
    SpeciesReference,
    Tag,
    apply,
    number,
    symbol,
)
from src.hybridsim.errors import ConfigError
from src.hybridsim.integrator import StateHistory, simulate
from src.hybridsim.ode_solver import SolverConfig
from src.hybridsim.system import ReactionNetworkSystem

_TIGHT = SolverConfig(method="LSODA", rtol=1e-9, atol=1e-11)


def _decay(events=(), rate: float = 1.0) -> ModelDefinition:
    return ModelDefinition(
        compartments=(Compartment("c", size=1.0),),
        species=(Species("A", "c", initial_amount=10.0),),
        parameters=(Parameter("k", rate),),
        reactions=(Reaction("R1", (SpeciesReference("A"),), kinetic_law=apply(Tag.TIMES, symbol("k"), symbol("A"))),),
        events=tuple(events),
    )


def test_exponential_decay_matches_closed_form() -> None:
    system = ReactionNetworkSystem(_decay(rate=0.5))
    result = simulate(system, 2.0, num_samples=5, solver=_TIGHT)

    expected = 10.0 * np.exp(-0.5 * result.time)
    assert result.column("A") == pytest.approx(expected, rel=1e-6)
    assert result.event_log == ()


def test_threshold_event_resets_species() -> None:
    reset = Event("reset", apply(Tag.LT, symbol("A"), number(5.0)), (EventAssignment("A", number(10.0)),))
    system = ReactionNetworkSystem(_decay(events=[reset]))
    result = simulate(system, 1.0, sample_times=[0.0, 0.5, 1.0], solver=_TIGHT)

    assert len(result.event_log) == 1
    entry = result.event_log[0]
    assert entry["event_id"] == "reset"
    assert entry["time_fire"] == pytest.approx(math.log(2.0), abs=1e-6)
    assert result.column("A")[1] == pytest.approx(10.0 * math.exp(-0.5), rel=1e-6)
    assert result.column("A")[2] == pytest.approx(10.0 * math.exp(-(1.0 - math.log(2.0))), rel=1e-5)


def test_delayed_time_event_in_model_without_derivatives() -> None:
    model = ModelDefinition(
        parameters=(Parameter("p", 0.0, constant=False),),
        events=(
            Event(
                "later",
                apply(Tag.GEQ, MathNode(Tag.TIME), number(1.0)),
                (EventAssignment("p", number(7.0)),),
                delay=number(0.5),
            ),
        ),
    )
    system = ReactionNetworkSystem(model)
    result = simulate(system, 2.0, num_samples=5)

    assert result.column("p").tolist() == [0.0, 0.0, 0.0, 7.0, 7.0]
    assert [entry["time_fire"] for entry in result.event_log] == [pytest.approx(1.5)]


def test_samples_honour_assignment_rules() -> None:
    model = ModelDefinition(
        compartments=(Compartment("c", size=1.0),),
        species=(Species("A", "c", initial_amount=4.0),),
        parameters=(Parameter("k", 1.0), Parameter("double_a", 0.0, constant=False)),
        rules=(Rule("assignment", apply(Tag.TIMES, number(2.0), symbol("A")), variable="double_a"),),
        reactions=(Reaction("R1", (SpeciesReference("A"),), kinetic_law=apply(Tag.TIMES, symbol("k"), symbol("A"))),),
    )
    result = simulate(ReactionNetworkSystem(model), 1.0, num_samples=3, solver=_TIGHT)
    assert result.column("double_a") == pytest.approx(2.0 * result.column("A"), rel=1e-9)


def test_result_frames_follow_contract() -> None:
    result = simulate(ReactionNetworkSystem(_decay()), 1.0, num_samples=3)
    frame = result.to_frame()
    assert list(frame.columns) == ["time", "c", "A"]
    assert frame.attrs["solver_config"] == SolverConfig().identity()

    events = result.event_frame()
    assert isinstance(events, pd.DataFrame)
    assert list(events.columns) == list(EVENT_LOG_FIELDS)


def test_invalid_sampling_is_a_config_error() -> None:
    system = ReactionNetworkSystem(_decay())
    with pytest.raises(ConfigError):
        simulate(system, 1.0, sample_times=[0.5, 0.2])
    with pytest.raises(ConfigError):
        simulate(system, 0.0)


def test_state_history_interpolates_and_falls_back() -> None:
    history = StateHistory(["x"], fallback=lambda name: 42.0)
    history.record(0.0, np.array([0.0]))
    history.record(2.0, np.array([4.0]))

    assert history.delayed_value(1.0, "x") == pytest.approx(2.0)
    assert history.delayed_value(-1.0, "x") == pytest.approx(0.0)
    assert history.delayed_value(1.0, "k") == pytest.approx(42.0)

    history.record(1.0, np.array([1.0]))
    assert history.times == [0.0, 1.0]


def test_delay_function_reads_past_state() -> None:
    model = ModelDefinition(
        parameters=(Parameter("x", 0.0, constant=False), Parameter("lagged", 0.0, constant=False)),
        rules=(
            Rule("rate", number(1.0), variable="x"),
            Rule("assignment", apply(Tag.DELAY, symbol("x"), number(0.5)), variable="lagged"),
        ),
    )
    result = simulate(ReactionNetworkSystem(model), 2.0, sample_times=[2.0], solver=_TIGHT)
    assert result.column("x")[0] == pytest.approx(2.0, rel=1e-6)
    assert result.column("lagged")[0] == pytest.approx(1.5, rel=1e-3)


def test_delay_of_assignment_rule_target_uses_rule_consistent_history() -> None:
    model = ModelDefinition(
        parameters=(
            Parameter("x", 0.0, constant=False),
            Parameter("p", 0.0, constant=False),
            Parameter("q", 0.0, constant=False),
        ),
        rules=(
            Rule("rate", number(1.0), variable="x"),
            Rule("assignment", MathNode(Tag.TIME), variable="p"),
            Rule("assignment", apply(Tag.DELAY, symbol("p"), number(0.5)), variable="q"),
        ),
    )
    result = simulate(ReactionNetworkSystem(model), 2.0, sample_times=[1.0, 2.0], solver=_TIGHT)

    assert result.column("p") == pytest.approx([1.0, 2.0])
    assert result.column("q") == pytest.approx([0.5, 1.5], rel=1e-6)
