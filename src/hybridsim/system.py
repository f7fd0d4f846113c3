"""Event-driven differential equation system built from a reaction network."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

import numpy as np

from .ast_nodes import ExpressionNode
from .compiler import ExpressionCompiler
from .entities import ModelDefinition, Rule, Species, symbol
from .errors import ConfigError, EventEvaluationError, ModelDefinitionError, SimulationError
from .events import CompiledEvent, EventInProgress, trigger_root_value
from .rules import AssignmentRuleValue, RateRuleValue, RuleValue, order_assignment_rules
from .stoichiometry import NEGATIVE_POLICIES, NegativeValuePolicy, StoichiometryValue, apply_negative_policy
from .sympy_bridge import solve_algebraic_rule
from .units import rescale_concentration, species_conversion
from .value_holder import DelayValueHolder, StateValueHolder

logger = logging.getLogger(__name__)


class EventDESystem(Protocol):
    """What the solver driver needs from a system with events and rules."""

    @property
    def dimension(self) -> int: ...

    @property
    def identifiers(self) -> Tuple[str, ...]: ...

    def initial_values(self) -> np.ndarray: ...

    def compute_derivatives(self, t: float, y: np.ndarray) -> np.ndarray: ...

    def event_count(self) -> int: ...

    def rule_count(self) -> int: ...

    def process_assignment_rules(self, t: float, y: np.ndarray) -> bool: ...

    def get_next_event_assignments(self, t: float, previous_t: float, y: np.ndarray) -> Optional[EventInProgress]: ...

    def no_derivatives(self) -> bool: ...

    def next_event_time(self) -> float: ...

    def trigger_values(self, t: float, y: np.ndarray) -> np.ndarray: ...

    def register_delay_value_holder(self, holder: DelayValueHolder) -> None: ...


class _CurrentValueHistory:
    """Delay look-ups before any run: the past equals the present state."""

    def __init__(self, holder: StateValueHolder):
        self.holder = holder

    def delayed_value(self, time: float, identifier: str) -> float:
        return self.holder.value_of(identifier)


class ReactionNetworkSystem:
    """Compiled reaction network exposing the event-driven DES contract.

    State vector layout: compartments, species, species references that are
    rate-rule targets, then every parameter that can change (constant
    parameters nobody assigns are read by id).
    """

    def __init__(
        self,
        model: ModelDefinition,
        *,
        default_species_value: float = 0.0,
        default_parameter_value: float = 0.0,
        default_compartment_size: float = 1.0,
        negative_policy: NegativeValuePolicy = "error",
        seed: Optional[int] = None,
    ):
        if negative_policy not in NEGATIVE_POLICIES:
            raise ConfigError(f"negative_policy must be one of {NEGATIVE_POLICIES}, got {negative_policy!r}")
        self.model = model
        self.negative_policy = negative_policy
        self.default_species_value = float(default_species_value)
        self.default_parameter_value = float(default_parameter_value)
        self.default_compartment_size = float(default_compartment_size)
        self._rng = np.random.default_rng(seed)
        self._stamp = 0.0
        self._species: Dict[str, Species] = {entry.identifier: entry for entry in model.species}
        for species in model.species:
            if model.compartment(species.compartment) is None:
                raise ModelDefinitionError(
                    f"Species {species.identifier!r} lives in unknown compartment {species.compartment!r}"
                )

        assignment_rules, rate_rules = self._split_rules()
        self._build_state(assignment_rules, rate_rules)
        self.compiler = ExpressionCompiler(model, self.holder)
        self._compartment_species = self._concentration_species_by_compartment()

        self._assignment_rules: List[AssignmentRuleValue] = [
            self._rule_value(AssignmentRuleValue, rule.variable, self.compiler.compile_double(rule.math))
            for rule in order_assignment_rules(assignment_rules)
        ]
        self._rate_rules: List[RateRuleValue] = [self._rate_rule_value(rule) for rule in rate_rules]
        initial_rules = order_assignment_rules(
            [Rule("assignment", entry.math, entry.variable) for entry in model.initial_assignments]
        )
        self._initial_assignments: List[AssignmentRuleValue] = [
            self._rule_value(AssignmentRuleValue, rule.variable, self.compiler.compile_double(rule.math))
            for rule in initial_rules
        ]
        self._compile_reactions()
        self._events: List[CompiledEvent] = [self._compile_event(event) for event in model.events]
        self._running: List[int] = []
        self._delayed: List[int] = []
        self._constraints: List[Tuple[ExpressionNode, str]] = [
            (self.compiler.compile_boolean(entry.math), entry.message) for entry in model.constraints
        ]
        self._violated: Set[int] = set()
        self.constraint_violations: List[Tuple[float, str]] = []
        self._no_derivatives = not model.reactions and not self._rate_rules and not self._constraints
        self.holder.delay_holder = _CurrentValueHistory(self.holder)

        self._initial = self._initialize()
        logger.info(
            "compiled model %s: %d states, %d reactions, %d rules, %d events, %d nodes",
            model.identifier,
            self.dimension,
            len(model.reactions),
            self.rule_count(),
            self.event_count(),
            self.compiler.node_count,
        )

    # -- construction -------------------------------------------------

    def _split_rules(self) -> Tuple[List[Rule], List[Rule]]:
        assignment = [rule for rule in self.model.rules if rule.kind == "assignment"]
        rate = [rule for rule in self.model.rules if rule.kind == "rate"]
        algebraic = [rule for rule in self.model.rules if rule.kind == "algebraic"]
        if algebraic:
            determined = {rule.variable for rule in assignment + rate}
            participants = {
                reference.species
                for reaction in self.model.reactions
                for reference in reaction.reactants + reaction.products
                if not self._species[reference.species].boundary_condition
            }
            candidates = [entry.identifier for entry in self.model.compartments if not entry.constant]
            candidates += [
                entry.identifier
                for entry in self.model.species
                if not entry.constant and entry.identifier not in participants
            ]
            candidates += [entry.identifier for entry in self.model.parameters if not entry.constant]
            for rule in algebraic:
                free = [name for name in candidates if name not in determined]
                solved = solve_algebraic_rule(rule, free)
                determined.add(solved.variable)
                assignment.append(solved)
        for rule in assignment + rate:
            if rule.variable is None:
                raise ModelDefinitionError(f"{rule.kind} rule without a variable: {rule.math}")
        return assignment, rate

    def _build_state(self, assignment_rules: Sequence[Rule], rate_rules: Sequence[Rule]) -> None:
        model = self.model
        assigned = {rule.variable for rule in list(assignment_rules) + list(rate_rules)}
        assigned |= {entry.variable for entry in model.initial_assignments}
        assigned |= {item.variable for event in model.events for item in event.assignments}
        rate_targets = {rule.variable for rule in rate_rules}

        identifiers: List[str] = []
        values: List[float] = []
        for compartment in model.compartments:
            identifiers.append(compartment.identifier)
            values.append(self.default_compartment_size if compartment.size is None else float(compartment.size))
        for species in model.species:
            identifiers.append(species.identifier)
            if species.initial_amount is not None:
                values.append(float(species.initial_amount))
            elif species.initial_concentration is not None:
                values.append(float(species.initial_concentration))
            else:
                values.append(self.default_species_value)
        stoichiometry_positions: Dict[str, int] = {}
        for reaction in model.reactions:
            for reference in reaction.reactants + reaction.products:
                if reference.identifier and reference.identifier in rate_targets:
                    stoichiometry_positions[reference.identifier] = len(identifiers)
                    identifiers.append(reference.identifier)
                    values.append(1.0 if reference.stoichiometry is None else float(reference.stoichiometry))
        fixed: Dict[str, float] = {}
        for parameter in model.parameters:
            value = self.default_parameter_value if parameter.value is None else float(parameter.value)
            if parameter.constant and parameter.identifier not in assigned:
                fixed[parameter.identifier] = value
                continue
            identifiers.append(parameter.identifier)
            values.append(value)

        self.holder = StateValueHolder(
            identifiers,
            fixed_values=fixed,
            species_compartments={entry.identifier: entry.compartment for entry in model.species},
            stoichiometry_positions=stoichiometry_positions,
        )
        self._declared = np.asarray(values, dtype=float)
        self.holder.y[:] = self._declared

    def _concentration_species_by_compartment(self) -> Dict[int, Tuple[int, ...]]:
        grouped: Dict[int, List[int]] = {}
        for species in self.model.species:
            if species.stored_as_amount or species.constant:
                continue
            grouped.setdefault(self.holder.position(species.compartment), []).append(
                self.holder.position(species.identifier)
            )
        return {position: tuple(members) for position, members in grouped.items()}

    def _rule_value(self, cls, variable: str, node: ExpressionNode, **kwargs) -> RuleValue:
        species = self._species.get(variable)
        if species is not None:
            compartment = self.model.compartment(species.compartment)
            conversion = species_conversion(
                stored_as_amount=species.stored_as_amount,
                has_only_substance_units=species.has_only_substance_units,
            )
            compartment_position = -1
            if compartment.spatial_dimensions != 0:
                compartment_position = self.holder.position(compartment.identifier)
            return cls(
                node,
                self.holder.position(variable),
                self.holder,
                variable=variable,
                conversion=conversion,
                compartment_position=compartment_position,
                **kwargs,
            )
        position = self.holder.position(variable)
        if position >= 0:
            return cls(node, position, self.holder, variable=variable, **kwargs)
        if variable in self.compiler.reference_ids:
            return cls(node, -1, self.holder, variable=variable, reference_id=variable, **kwargs)
        raise ModelDefinitionError(f"{variable!r} cannot be the target of a rule or assignment")

    def _rate_rule_value(self, rule: Rule) -> RateRuleValue:
        node = self.compiler.compile_double(rule.math)
        position = self.holder.position(rule.variable)
        if position < 0:
            raise ModelDefinitionError(f"Rate rule target {rule.variable!r} is not part of the state")
        return self._rule_value(
            RateRuleValue,
            rule.variable,
            node,
            dependent_positions=self._compartment_species.get(position, ()),
        )

    def _compile_reactions(self) -> None:
        self._kinetic_laws: List[Optional[ExpressionNode]] = []
        self._stoichiometries: List[StoichiometryValue] = []
        self._references: Dict[str, List[StoichiometryValue]] = {}
        converted: Set[int] = set()
        for reaction_index, reaction in enumerate(self.model.reactions):
            if reaction.fast:
                logger.debug("reaction %s is fast; integrated as an ordinary reaction", reaction.identifier)
            self._kinetic_laws.append(self.compiler.compile_kinetic_law(reaction))
            participants = [(ref, True) for ref in reaction.reactants] + [(ref, False) for ref in reaction.products]
            for reference, reactant in participants:
                species = self._species.get(reference.species)
                if species is None:
                    raise ModelDefinitionError(
                        f"Reaction {reaction.identifier!r} refers to unknown species {reference.species!r}"
                    )
                constant = reference.constant
                if constant is None:
                    constant = reference.identifier is None and reference.stoichiometry_math is None
                math = None
                if reference.stoichiometry_math is not None:
                    math = self.compiler.compile_double(reference.stoichiometry_math)
                value = StoichiometryValue(
                    self.holder,
                    reaction_index=reaction_index,
                    species_position=self.holder.position(species.identifier),
                    reactant=reactant,
                    declared=reference.stoichiometry,
                    reference_id=reference.identifier,
                    reference_position=self.holder.stoichiometry_positions.get(reference.identifier, -1),
                    math=math,
                    constant_stoichiometry=bool(constant),
                    boundary_condition=species.boundary_condition,
                    constant_quantity=species.constant,
                    in_concentration=not species.stored_as_amount,
                    compartment_position=self.holder.position(species.compartment),
                    negative_policy=self.negative_policy,
                )
                self._stoichiometries.append(value)
                if reference.identifier:
                    self._references.setdefault(reference.identifier, []).append(value)
                converted.add(value.species_position)
        self._velocities = np.zeros(len(self.model.reactions), dtype=float)
        self._conversion_factors: List[Tuple[int, ExpressionNode]] = []
        for species in self.model.species:
            factor = species.conversion_factor or self.model.conversion_factor
            position = self.holder.position(species.identifier)
            if factor and position in converted:
                self._conversion_factors.append((position, self.compiler.compile_double(symbol(factor))))

    def _compile_event(self, event) -> CompiledEvent:
        rules = [
            self._rule_value(AssignmentRuleValue, item.variable, self.compiler.compile_double(item.math))
            for item in event.assignments
        ]
        return CompiledEvent(
            event.identifier,
            self.compiler.compile_boolean(event.trigger),
            rules,
            delay=None if event.delay is None else self.compiler.compile_double(event.delay),
            priority=None if event.priority is None else self.compiler.compile_double(event.priority),
            persistent=event.persistent,
            use_values_from_trigger_time=event.use_values_from_trigger_time,
            initial_value=event.initial_value,
        )

    def _initialize(self) -> np.ndarray:
        self.holder.load(0.0, self._declared)
        self._apply_initial_assignments()
        self._process_rules(None, initial=True)
        self._apply_initial_assignments()
        self._process_rules(None, initial=True)
        for value in self._stoichiometries:
            value.refresh(self._next_stamp())
        return self.holder.y.copy()

    # -- state access -------------------------------------------------

    @property
    def dimension(self) -> int:
        return len(self.holder.identifiers)

    @property
    def identifiers(self) -> Tuple[str, ...]:
        return self.holder.identifiers

    @property
    def value_holder(self) -> StateValueHolder:
        return self.holder

    @property
    def events(self) -> Tuple[CompiledEvent, ...]:
        return tuple(self._events)

    def initial_values(self) -> np.ndarray:
        return self._initial.copy()

    def position(self, identifier: str) -> int:
        return self.holder.position(identifier)

    def event_count(self) -> int:
        return len(self._events)

    def rule_count(self) -> int:
        return len(self._assignment_rules) + len(self._rate_rules)

    def no_derivatives(self) -> bool:
        return self._no_derivatives

    def reseed(self, seed: Optional[int]) -> None:
        self._rng = np.random.default_rng(seed)

    def register_delay_value_holder(self, holder: Optional[DelayValueHolder]) -> None:
        self.holder.delay_holder = holder

    def current_stoichiometry(self, reference_id: str) -> float:
        return self.holder.stoichiometry(reference_id)

    def reset(self) -> None:
        """Forget all event bookkeeping, e.g. before a second run."""
        for event in self._events:
            event.reset()
        self._running.clear()
        self._delayed.clear()
        self._violated.clear()
        self.constraint_violations.clear()

    def _next_stamp(self) -> float:
        self._stamp += 1.0
        return self._stamp

    def _load(self, t: float, y: np.ndarray) -> None:
        self.holder.load(t, y)
        self._next_stamp()

    # -- rules --------------------------------------------------------

    def _apply_initial_assignments(self) -> None:
        stamp = self._next_stamp()
        for rule in self._initial_assignments:
            if rule.process_rule(self.holder.y, stamp):
                stamp = self._next_stamp()

    def _process_rules(self, change_rate: Optional[np.ndarray], initial: bool = False) -> bool:
        y = self.holder.y
        changed = False
        for rule in self._assignment_rules:
            old = y[rule.position] if rule.position >= 0 else None
            if not rule.process_rule(y, self._stamp):
                continue
            changed = True
            if not initial and rule.position in self._compartment_species:
                for species_position in self._compartment_species[rule.position]:
                    y[species_position] = rescale_concentration(y[species_position], old, y[rule.position])
            if rule.targets_reference:
                for value in self._references.get(rule.reference_id, ()):
                    value.refresh(self._stamp)
            self._next_stamp()
        if change_rate is not None:
            for rule in self._rate_rules:
                rule.process_rule(change_rate, y, self._stamp)
        return changed

    def process_assignment_rules(self, t: float, y: np.ndarray) -> bool:
        """Apply every assignment rule to ``y`` in place; report whether anything changed."""
        if not self._assignment_rules:
            return False
        self._load(t, y)
        changed = self._process_rules(None)
        y[:] = self.holder.y
        return changed

    def process_initial_assignments(self, t: float, y: np.ndarray) -> None:
        self._load(t, y)
        self._apply_initial_assignments()
        y[:] = self.holder.y

    # -- derivatives --------------------------------------------------

    def _process_velocities(self, change_rate: np.ndarray) -> None:
        stamp = self._stamp
        for reaction_index, law in enumerate(self._kinetic_laws):
            self._velocities[reaction_index] = 0.0 if law is None else law.evaluate_double(stamp)
        for value in self._stoichiometries:
            value.compute_change(stamp, change_rate, self._velocities)
        for position, factor in self._conversion_factors:
            change_rate[position] *= factor.evaluate_double(stamp)

    def _check_constraints(self, t: float) -> None:
        for index, (node, message) in enumerate(self._constraints):
            if node.evaluate_boolean(self._stamp):
                self._violated.discard(index)
                continue
            if index not in self._violated:
                self._violated.add(index)
                self.constraint_violations.append((t, message or str(node)))
                logger.warning("constraint %s violated at t=%s: %s", node, t, message)

    def compute_derivatives(self, t: float, y: np.ndarray) -> np.ndarray:
        change_rate = np.zeros(self.dimension, dtype=float)
        if self._no_derivatives:
            return change_rate
        self._load(t, y)
        self._process_rules(change_rate)
        self._process_velocities(change_rate)
        self._check_constraints(t)
        return change_rate

    __call__ = compute_derivatives

    def reaction_velocities(self, t: float, y: np.ndarray) -> np.ndarray:
        self._load(t, y)
        self._process_rules(None)
        velocities = np.array(
            [0.0 if law is None else law.evaluate_double(self._stamp) for law in self._kinetic_laws],
            dtype=float,
        )
        return velocities

    def propensity(self, reaction_index: int, t: float, y: np.ndarray) -> float:
        """Kinetic law value for stochastic consumers, subject to the negative-value policy."""
        velocity = float(self.reaction_velocities(t, y)[reaction_index])
        what = f"propensity of reaction {self.model.reactions[reaction_index].identifier}"
        return apply_negative_policy(velocity, self.negative_policy, what)

    # -- events -------------------------------------------------------

    def _trigger_holds(self, event: CompiledEvent) -> bool:
        try:
            return event.trigger.evaluate_boolean(self._stamp)
        except (SimulationError, KeyError, ValueError) as exc:
            raise EventEvaluationError(f"Trigger of event {event.identifier!r} failed: {exc}") from exc

    def _evaluate(self, event: CompiledEvent, node: ExpressionNode, what: str) -> float:
        try:
            return node.evaluate_double(self._stamp)
        except (SimulationError, KeyError, ValueError) as exc:
            raise EventEvaluationError(f"{what} of event {event.identifier!r} failed: {exc}") from exc

    def _update_priority(self, event: CompiledEvent) -> None:
        if event.priority_node is not None:
            event.priority = self._evaluate(event, event.priority_node, "Priority")

    def trigger_values(self, t: float, y: np.ndarray) -> np.ndarray:
        """Signed trigger functions at ``(t, y)``, positive where a trigger holds."""
        self._load(t, y)
        self._process_rules(None)
        values = np.empty(len(self._events), dtype=float)
        for index, event in enumerate(self._events):
            try:
                values[index] = trigger_root_value(event.trigger, self._stamp)
            except (SimulationError, KeyError, ValueError) as exc:
                raise EventEvaluationError(f"Trigger of event {event.identifier!r} failed: {exc}") from exc
        return values

    def next_event_time(self) -> float:
        pending = [event.next_execution_time() for event in self._events if event.has_execution_time()]
        return min(pending) if pending else float("inf")

    def get_next_event_assignments(self, t: float, previous_t: float, y: np.ndarray) -> Optional[EventInProgress]:
        """Advance event bookkeeping to ``t`` and return the next event to execute.

        The returned event carries ``assignments`` (state index to new value)
        for the caller to apply before asking again. An event without
        assignments signals that delayed executions were scheduled. ``None``
        means nothing is left to do at ``t``.
        """

        if not self._events:
            return None
        self._load(t, y)

        running: List[int] = []
        for index in self._running:
            event = self._events[index]
            if not event.has_more_assignments(t):
                continue
            if not event.persistent and not self._trigger_holds(event):
                event.aborted(t)
                continue
            self._update_priority(event)
            running.append(index)
        self._running = running

        delayed: List[int] = []
        for index in self._delayed:
            event = self._events[index]
            if event.last_time_fired > t:
                event.rollback(t)
                if event.has_execution_time():
                    delayed.append(index)
                continue
            if event.last_time_executed > previous_t and event.last_time_executed != t:
                event.rollback(previous_t)
            aborted = False
            if not event.persistent and not self._trigger_holds(event):
                event.aborted(t)
                aborted = True
            if not aborted and event.has_more_assignments(t) and index not in self._running:
                self._update_priority(event)
                self._running.append(index)
            if event.has_execution_time():
                delayed.append(index)
        self._delayed = delayed

        new_delayed: Optional[CompiledEvent] = None
        for index, event in enumerate(self._events):
            if self._trigger_holds(event):
                if event.get_fire_status(t):
                    continue
                execution_time = t
                if event.delay is not None:
                    lag = self._evaluate(event, event.delay, "Delay")
                    if lag < 0.0:
                        raise EventEvaluationError(f"Delay of event {event.identifier!r} is negative ({lag})")
                    execution_time = t + lag
                    if index not in self._delayed:
                        self._delayed.append(index)
                    new_delayed = event
                elif index not in self._running:
                    self._update_priority(event)
                    self._running.append(index)
                values = None
                if event.use_values_from_trigger_time:
                    values = [rule.process_assignment_variable(self._stamp) for rule in event.rules]
                event.add_values(values, execution_time)
                event.fired_at(t)
                logger.debug("event %s fired at t=%s, executes at t=%s", event.identifier, t, execution_time)
            elif event.get_fire_status(t):
                event.recovered(t)
                logger.debug("event %s recovered at t=%s", event.identifier, t)

        if self._running:
            return self._process_next_event(t)
        if new_delayed is not None:
            new_delayed.clear_assignments()
            return new_delayed
        return None

    def _process_next_event(self, t: float) -> CompiledEvent:
        highest = max(self._events[index].priority for index in self._running)
        candidates = [index for index in self._running if self._events[index].priority == highest]
        chosen = candidates[0]
        if len(candidates) > 1:
            chosen = candidates[int(self._rng.integers(len(candidates)))]
        self._running.remove(chosen)
        event = self._events[chosen]
        event.clear_assignments()

        values = event.next_values() if event.use_values_from_trigger_time else None
        y = self.holder.y
        for position, rule in enumerate(event.rules):
            if values is not None:
                value = values[position]
            else:
                value = rule.process_assignment_variable(self._stamp)
            if rule.targets_reference:
                self.holder.assigned_stoichiometries[rule.reference_id] = value
                for stoichiometry in self._references.get(rule.reference_id, ()):
                    stoichiometry.refresh(self._stamp)
                continue
            for species_position in self._compartment_species.get(rule.position, ()):
                if species_position not in event.assignments:
                    event.add_assignment(
                        species_position, rescale_concentration(y[species_position], y[rule.position], value)
                    )
            event.add_assignment(rule.position, value)
        event.executed(t)
        logger.debug("event %s executed at t=%s: %s", event.identifier, t, event.assignments)
        return event


__all__ = ["EventDESystem", "ReactionNetworkSystem"]
