"""Compile loader expression trees into cached evaluation nodes."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Hashable, Optional, Set, Tuple

from .ast_nodes import (
    AVOGADRO,
    UNARY_FUNCTIONS,
    BooleanConstantNode,
    ConstantNode,
    DivideNode,
    ExpressionNode,
    LogicalNode,
    LogNode,
    MinusNode,
    PiecewiseNode,
    PlusNode,
    PowerNode,
    RelationalNode,
    ResultKind,
    RootNode,
    TimesNode,
    UnaryFunctionNode,
)
from .entities import (
    LOGICAL_TAGS,
    NUMBER_TAGS,
    RELATIONAL_TAGS,
    MathNode,
    ModelDefinition,
    Reaction,
    Tag,
)
from .errors import ModelDefinitionError
from .terminals import (
    ArgumentNode,
    CompartmentOrParameterValueNode,
    DelayNode,
    FunctionCallNode,
    LocalParameterValueNode,
    ReactionValueNode,
    SpeciesValueNode,
    StoichiometryValueNode,
    TimeNode,
)
from .units import species_conversion
from .value_holder import StateValueHolder

logger = logging.getLogger(__name__)

_NAMED_CONSTANTS = {
    Tag.CONSTANT_PI: math.pi,
    Tag.CONSTANT_E: math.e,
    Tag.AVOGADRO: AVOGADRO,
}

_NARY = {Tag.PLUS: PlusNode, Tag.TIMES: TimesNode}


@dataclass(frozen=True)
class CompileScope:
    """Names visible to an expression besides the model's own symbols."""

    local_parameters: Dict[str, float] = field(default_factory=dict)
    arguments: Dict[str, ArgumentNode] = field(default_factory=dict)
    function_stack: Tuple[str, ...] = ()


_GLOBAL_SCOPE = CompileScope()


def _expect_arity(math_node: MathNode, *allowed: int) -> None:
    if len(math_node.children) not in allowed:
        expected = " or ".join(str(count) for count in allowed)
        raise ModelDefinitionError(
            f"{math_node.tag.value} expects {expected} operand(s), got {len(math_node.children)}: {math_node}"
        )


def _expect_kind(node: ExpressionNode, kind: ResultKind, context: MathNode) -> ExpressionNode:
    if node.kind is not kind:
        raise ModelDefinitionError(f"Operand {node} of {context} must be a {kind.value}")
    return node


class ExpressionCompiler:
    """Turns ``MathNode`` trees into interned ``ExpressionNode`` trees.

    Structurally identical subtrees compile to one shared node, so a common
    sub-expression is computed at most once per evaluation stamp.
    """

    def __init__(self, model: ModelDefinition, holder: StateValueHolder):
        self.model = model
        self.holder = holder
        self._species = {entry.identifier: entry for entry in model.species}
        self._compartments = {entry.identifier: entry for entry in model.compartments}
        self._reactions = {entry.identifier: entry for entry in model.reactions}
        self._functions = {entry.identifier: entry for entry in model.function_definitions}
        self.reference_ids = {
            reference.identifier
            for reaction in model.reactions
            for reference in reaction.reactants + reaction.products
            if reference.identifier
        }
        self._interned: Dict[Hashable, ExpressionNode] = {}
        self._kinetic_laws: Dict[str, Optional[ExpressionNode]] = {}
        self._compiling: Set[str] = set()

    @property
    def node_count(self) -> int:
        return len(self._interned)

    def _intern(self, key: Hashable, factory) -> ExpressionNode:
        node = self._interned.get(key)
        if node is None:
            node = factory()
            self._interned[key] = node
        return node

    def compile(self, math_node: MathNode, scope: CompileScope = _GLOBAL_SCOPE) -> ExpressionNode:
        tag = math_node.tag
        if tag in NUMBER_TAGS:
            if math_node.value is None:
                raise ModelDefinitionError(f"Numeric literal without a value: {math_node}")
            return self._intern((tag, float(math_node.value)), lambda: ConstantNode(tag, math_node.value))
        if tag in _NAMED_CONSTANTS:
            return self._intern((tag,), lambda: ConstantNode(tag, _NAMED_CONSTANTS[tag], name=tag.value))
        if tag in (Tag.TRUE, Tag.FALSE):
            return self._intern((tag,), lambda: BooleanConstantNode(tag == Tag.TRUE))
        if tag == Tag.NAME:
            return self._resolve(math_node.name, scope)
        if tag == Tag.TIME:
            return self._intern((tag,), lambda: TimeNode(self.holder))
        if tag == Tag.FUNCTION:
            return self._compile_call(math_node, scope)

        children = tuple(self.compile(child, scope) for child in math_node.children)
        key = (tag, tuple(id(child) for child in children))

        if tag == Tag.DELAY:
            _expect_arity(math_node, 2)
            if math_node.children[0].tag != Tag.NAME:
                raise ModelDefinitionError(f"delay() needs a model quantity as first operand: {math_node}")
            if isinstance(children[0], (ArgumentNode, LocalParameterValueNode)):
                raise ModelDefinitionError(f"delay() of {children[0].name!r} has no recorded history: {math_node}")
            for child in children:
                _expect_kind(child, ResultKind.DOUBLE, math_node)
            return self._intern(key, lambda: DelayNode(self.holder, children[0], children[1]))
        if tag == Tag.PIECEWISE:
            return self._intern(key, lambda: self._piecewise(math_node, children))
        if tag in LOGICAL_TAGS:
            if tag == Tag.NOT:
                _expect_arity(math_node, 1)
            for child in children:
                _expect_kind(child, ResultKind.BOOLEAN, math_node)
            return self._intern(key, lambda: LogicalNode(tag, children))
        if tag in RELATIONAL_TAGS:
            _expect_arity(math_node, 2)
            return self._intern(key, lambda: RelationalNode(tag, children))

        for child in children:
            _expect_kind(child, ResultKind.DOUBLE, math_node)
        if tag in _NARY:
            return self._intern(key, lambda: _NARY[tag](tag, children))
        if tag == Tag.MINUS:
            if not children:
                raise ModelDefinitionError("minus needs at least one operand")
            return self._intern(key, lambda: MinusNode(tag, children))
        if tag == Tag.DIVIDE:
            _expect_arity(math_node, 2)
            return self._intern(key, lambda: DivideNode(tag, children))
        if tag == Tag.POWER:
            _expect_arity(math_node, 2)
            return self._intern(key, lambda: PowerNode(tag, children))
        if tag == Tag.ROOT:
            _expect_arity(math_node, 1, 2)
            return self._intern(key, lambda: RootNode(tag, children))
        if tag == Tag.LOG:
            _expect_arity(math_node, 1, 2)
            return self._intern(key, lambda: LogNode(tag, children))
        if tag in UNARY_FUNCTIONS:
            _expect_arity(math_node, 1)
            return self._intern(key, lambda: UnaryFunctionNode(tag, children))
        raise ModelDefinitionError(f"Unsupported operator {tag.value!r}")

    def compile_double(self, math_node: MathNode, scope: CompileScope = _GLOBAL_SCOPE) -> ExpressionNode:
        return _expect_kind(self.compile(math_node, scope), ResultKind.DOUBLE, math_node)

    def compile_boolean(self, math_node: MathNode, scope: CompileScope = _GLOBAL_SCOPE) -> ExpressionNode:
        return _expect_kind(self.compile(math_node, scope), ResultKind.BOOLEAN, math_node)

    def compile_kinetic_law(self, reaction: Reaction) -> Optional[ExpressionNode]:
        if reaction.identifier in self._kinetic_laws:
            return self._kinetic_laws[reaction.identifier]
        if reaction.identifier in self._compiling:
            raise ModelDefinitionError(f"Kinetic law of {reaction.identifier} refers to itself")
        if reaction.kinetic_law is None:
            node = None
        else:
            self._compiling.add(reaction.identifier)
            try:
                scope = CompileScope(local_parameters=dict(reaction.local_parameters))
                node = self.compile_double(reaction.kinetic_law, scope)
            finally:
                self._compiling.discard(reaction.identifier)
        self._kinetic_laws[reaction.identifier] = node
        return node

    def _piecewise(self, math_node: MathNode, children: Tuple[ExpressionNode, ...]) -> PiecewiseNode:
        if not children:
            raise ModelDefinitionError("piecewise needs at least one operand")
        pairs = len(children) // 2
        values = [children[2 * position] for position in range(pairs)]
        conditions = [children[2 * position + 1] for position in range(pairs)]
        if len(children) % 2:
            values.append(children[-1])
        kinds = {value.kind for value in values}
        if len(kinds) != 1:
            raise ModelDefinitionError(f"piecewise mixes boolean and numeric branches: {math_node}")
        for condition in conditions:
            _expect_kind(condition, ResultKind.BOOLEAN, math_node)
        return PiecewiseNode(Tag.PIECEWISE, children, kinds.pop())

    def _compile_call(self, math_node: MathNode, scope: CompileScope) -> ExpressionNode:
        function_id = math_node.name
        definition = self._functions.get(function_id)
        if definition is None:
            raise ModelDefinitionError(f"Unknown function {function_id!r}")
        if function_id in scope.function_stack:
            raise ModelDefinitionError(f"Function {function_id!r} is defined recursively")
        if len(definition.arguments) != len(math_node.children):
            raise ModelDefinitionError(
                f"Function {function_id!r} takes {len(definition.arguments)} argument(s), "
                f"got {len(math_node.children)}"
            )
        arguments = tuple(self.compile(child, scope) for child in math_node.children)
        key = (Tag.FUNCTION, function_id, tuple(id(arg) for arg in arguments))
        existing = self._interned.get(key)
        if existing is not None:
            return existing
        call_node = FunctionCallNode(function_id, arguments)
        bound = {
            name: ArgumentNode(call_node, position, name, arguments[position].kind)
            for position, name in enumerate(definition.arguments)
        }
        body_scope = CompileScope(arguments=bound, function_stack=scope.function_stack + (function_id,))
        call_node.bind(self.compile(definition.body, body_scope))
        self._interned[key] = call_node
        return call_node

    def _resolve(self, name: Optional[str], scope: CompileScope) -> ExpressionNode:
        if not name:
            raise ModelDefinitionError("Name node without an identifier")
        if name in scope.arguments:
            return scope.arguments[name]
        if name in scope.local_parameters:
            value = float(scope.local_parameters[name])
            return self._intern(("local", name, value), lambda: LocalParameterValueNode(name, value))
        if name in self._species:
            return self._intern(("species", name), lambda: self._species_node(name))
        if name in self.reference_ids:
            return self._intern(("reference", name), lambda: StoichiometryValueNode(self.holder, name))
        position = self.holder.position(name)
        if position >= 0 or name in self.holder.fixed_values:
            return self._intern(("quantity", name), lambda: CompartmentOrParameterValueNode(self.holder, name, position))
        if name in self._reactions:
            kinetic_law = self.compile_kinetic_law(self._reactions[name])
            return self._intern(("reaction", name), lambda: ReactionValueNode(name, kinetic_law))
        raise ModelDefinitionError(f"Unresolvable symbol {name!r}")

    def _species_node(self, name: str) -> SpeciesValueNode:
        species = self._species[name]
        compartment = self._compartments.get(species.compartment)
        if compartment is None:
            raise ModelDefinitionError(f"Species {name!r} lives in unknown compartment {species.compartment!r}")
        position = self.holder.position(name)
        if position < 0:
            raise ModelDefinitionError(f"Species {name!r} has no state-vector position")
        conversion = species_conversion(
            stored_as_amount=species.stored_as_amount,
            has_only_substance_units=species.has_only_substance_units,
        )
        return SpeciesValueNode(
            self.holder,
            name,
            position,
            self.holder.position(compartment.identifier),
            conversion,
            zero_dimensions=compartment.spatial_dimensions == 0,
            compartment_id=compartment.identifier,
        )


__all__ = ["CompileScope", "ExpressionCompiler"]
