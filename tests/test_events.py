from __future__ import annotations

import pytest

from src.hybridsim.entities import (
    Compartment,
    Event,
    EventAssignment,
    ModelDefinition,
    Parameter,
    Species,
    Tag,
    apply,
    number,
    symbol,
)
from src.hybridsim.errors import EventEvaluationError
from src.hybridsim.events import EventInProgress
from src.hybridsim.system import ReactionNetworkSystem


def _threshold_model(**event_options) -> ModelDefinition:
    event = Event(
        "E",
        trigger=apply(Tag.GT, symbol("X"), number(10.0)),
        assignments=(EventAssignment("Y", event_options.pop("value", number(1.0))),),
        **event_options,
    )
    return ModelDefinition(
        parameters=(Parameter("X", 5.0, constant=False), Parameter("Y", 0.0, constant=False)),
        events=(event,),
    )


def test_fire_status_rolls_back_future_firing() -> None:
    progress = EventInProgress(False)
    progress.fired_at(2.0)

    assert progress.get_fire_status(3.0) is True
    assert progress.get_fire_status(1.0) is False
    assert progress.last_time_fired == -1.0


def test_fire_status_rolls_back_future_recovery() -> None:
    progress = EventInProgress(True)
    progress.recovered(5.0)
    assert progress.get_fire_status(4.0) is True
    assert progress.last_time_recovered == -1.0


def test_delayed_queue_is_sorted_and_restorable() -> None:
    progress = EventInProgress(False, delayed=True)
    progress.add_values([1.0], 5.0)
    progress.add_values([2.0], 4.0)

    assert [entry[0] for entry in progress.queue] == [4.0, 5.0]
    assert progress.has_more_assignments(4.0)
    assert not progress.has_more_assignments(3.9)

    progress.executed(4.0)
    assert progress.next_execution_time() == 5.0
    progress.rollback(3.5)
    assert [entry[0] for entry in progress.queue] == [4.0, 5.0]
    assert progress.next_values() == [2.0]


def test_immediate_abort_consumes_the_entry() -> None:
    progress = EventInProgress(False)
    progress.add_values(None, 1.0)
    progress.aborted(1.0)
    assert not progress.has_execution_time()
    assert progress.last_time_executed == 1.0


def test_trigger_fires_once_per_false_to_true_transition() -> None:
    system = ReactionNetworkSystem(_threshold_model())
    x, y_pos = system.position("X"), system.position("Y")
    y = system.initial_values()

    assert system.get_next_event_assignments(0.0, 0.0, y) is None

    y[x] = 15.0
    event = system.get_next_event_assignments(1.0, 0.0, y)
    assert event is not None
    assert event.assignments == {y_pos: 1.0}
    assert system.get_next_event_assignments(1.0, 1.0, y) is None
    assert system.get_next_event_assignments(2.0, 1.0, y) is None

    y[x] = 5.0
    assert system.get_next_event_assignments(3.0, 2.0, y) is None
    assert system.events[0].fired is False

    y[x] = 15.0
    assert system.get_next_event_assignments(4.0, 3.0, y) is not None


def test_trigger_true_at_start_fires_only_without_initial_value() -> None:
    held = ReactionNetworkSystem(_threshold_model())
    armed = ReactionNetworkSystem(_threshold_model(initial_value=False))
    y = held.initial_values()
    y[held.position("X")] = 20.0

    assert held.get_next_event_assignments(0.0, 0.0, y.copy()) is None
    assert armed.get_next_event_assignments(0.0, 0.0, y.copy()) is not None


def test_delayed_firings_queue_in_execution_order() -> None:
    system = ReactionNetworkSystem(_threshold_model(delay=number(3.0)))
    x = system.position("X")
    y = system.initial_values()
    system.get_next_event_assignments(0.0, 0.0, y)

    y[x] = 15.0
    marker = system.get_next_event_assignments(1.0, 0.0, y)
    assert marker is not None and marker.assignments == {}
    assert system.get_next_event_assignments(1.0, 1.0, y) is None
    y[x] = 5.0
    system.get_next_event_assignments(1.5, 1.0, y)
    y[x] = 15.0
    system.get_next_event_assignments(2.0, 1.5, y)

    event = system.events[0]
    assert [entry[0] for entry in event.queue] == [4.0, 5.0]
    assert system.next_event_time() == 4.0

    executed = system.get_next_event_assignments(4.0, 2.0, y)
    assert executed.assignments == {system.position("Y"): 1.0}
    assert system.next_event_time() == 5.0


def test_values_from_trigger_time_versus_execution_time() -> None:
    for use_trigger_time, expected in ((True, 15.0), (False, 20.0)):
        system = ReactionNetworkSystem(
            _threshold_model(
                delay=number(1.0),
                value=symbol("X"),
                use_values_from_trigger_time=use_trigger_time,
            )
        )
        x = system.position("X")
        y = system.initial_values()
        system.get_next_event_assignments(0.0, 0.0, y)
        y[x] = 15.0
        system.get_next_event_assignments(1.0, 0.0, y)
        y[x] = 20.0
        executed = system.get_next_event_assignments(2.0, 1.0, y)
        assert executed.assignments[system.position("Y")] == pytest.approx(expected)


def test_non_persistent_event_is_cancelled_when_trigger_drops() -> None:
    system = ReactionNetworkSystem(_threshold_model(delay=number(1.0), persistent=False))
    x = system.position("X")
    y = system.initial_values()
    system.get_next_event_assignments(0.0, 0.0, y)
    y[x] = 15.0
    system.get_next_event_assignments(0.5, 0.0, y)
    assert system.next_event_time() == pytest.approx(1.5)

    y[x] = 5.0
    assert system.get_next_event_assignments(1.0, 0.5, y) is None
    assert system.next_event_time() == float("inf")


def test_higher_priority_executes_first() -> None:
    trigger = apply(Tag.GT, symbol("X"), number(10.0))
    model = ModelDefinition(
        parameters=(Parameter("X", 5.0, constant=False), Parameter("Y", 0.0, constant=False)),
        events=(
            Event("low", trigger, (EventAssignment("Y", number(1.0)),), priority=number(1.0)),
            Event("high", trigger, (EventAssignment("Y", number(2.0)),), priority=number(5.0)),
        ),
    )
    system = ReactionNetworkSystem(model, seed=3)
    y = system.initial_values()
    system.get_next_event_assignments(0.0, 0.0, y)
    y[system.position("X")] = 15.0

    first = system.get_next_event_assignments(1.0, 0.0, y)
    second = system.get_next_event_assignments(1.0, 1.0, y)
    assert (first.identifier, second.identifier) == ("high", "low")
    assert system.get_next_event_assignments(1.0, 1.0, y) is None


def test_compartment_assignment_rescales_concentration_species() -> None:
    model = ModelDefinition(
        compartments=(Compartment("c", size=2.0, constant=False),),
        species=(Species("S", "c", initial_concentration=4.0),),
        parameters=(Parameter("X", 5.0, constant=False),),
        events=(Event("grow", apply(Tag.GT, symbol("X"), number(10.0)), (EventAssignment("c", number(4.0)),)),),
    )
    system = ReactionNetworkSystem(model)
    y = system.initial_values()
    system.get_next_event_assignments(0.0, 0.0, y)
    y[system.position("X")] = 11.0

    event = system.get_next_event_assignments(1.0, 0.0, y)
    assert event.assignments[system.position("c")] == pytest.approx(4.0)
    assert event.assignments[system.position("S")] == pytest.approx(2.0)


def test_negative_delay_is_an_evaluation_error() -> None:
    system = ReactionNetworkSystem(_threshold_model(delay=number(-1.0)))
    y = system.initial_values()
    system.get_next_event_assignments(0.0, 0.0, y)
    y[system.position("X")] = 15.0
    with pytest.raises(EventEvaluationError):
        system.get_next_event_assignments(1.0, 0.0, y)
