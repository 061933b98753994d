"""Execution planning for templates.

Builds the dependency graph, orders it topologically, and evaluates every
resource's static inputs. The result is an ExecutionPlan: a totally ordered
list of operations, each carrying its resolved inputs with DeferredValue
placeholders left in the slots that must be filled from earlier results.

Planning either yields a complete plan or raises; no partial plan exists.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from expressions import Expression
from template import Output, Template
from template_opr.evaluator import (
    DeferredValue,
    Evaluator,
    check_functions,
    deferred_slots,
    redact,
)
from template_opr.graph import DependencyGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeferredSlot:
    """An input slot filled at execution time.

    Attributes:
        path: Dotted path inside the operation inputs (e.g. 'properties.value')
        expression: Source expression text
        sources: Resources whose runtime attributes the slot reads
    """
    path: str
    expression: str
    sources: tuple

    def to_dict(self) -> dict:
        return {'path': self.path, 'expression': self.expression, 'sources': list(self.sources)}


@dataclass
class PlannedOperation:
    """One create/update operation in an execution plan.

    Attributes:
        step: 1-based position in the plan
        symbol: Symbolic name of the target resource
        name: Fully-qualified resource name
        type: Resource type
        api_version: Provider API version
        inputs: Payload for the provider (name, location, property bag),
            DeferredValue placeholders included
        depends_on: Resources that precede this one (direct edges only)
    """
    step: int
    symbol: str
    name: str
    type: str
    api_version: str
    inputs: dict
    depends_on: list[str] = field(default_factory=list)
    action: str = 'create_or_update'

    @property
    def deferred_slots(self) -> list[DeferredSlot]:
        return [
            DeferredSlot(path, value.expression.source, value.sources)
            for path, value in deferred_slots(self.inputs)
        ]

    @property
    def is_static(self) -> bool:
        return not self.deferred_slots

    def to_dict(self, secrets: Optional[list] = None) -> dict:
        return {
            'step': self.step,
            'action': self.action,
            'symbol': self.symbol,
            'name': self.name,
            'type': self.type,
            'apiVersion': self.api_version,
            'dependsOn': list(self.depends_on),
            'inputs': redact(_render(self.inputs), secrets or []),
            'deferred': [s.to_dict() for s in self.deferred_slots],
        }


@dataclass
class ExecutionPlan:
    """A totally ordered, fully validated deployment plan."""
    template: Template
    evaluator: Evaluator
    graph: DependencyGraph
    operations: list[PlannedOperation]

    @property
    def order(self) -> list[str]:
        """Resource symbols in execution order."""
        return [op.symbol for op in self.operations]

    @property
    def parameters(self) -> dict[str, Any]:
        return dict(self.evaluator.parameters)

    @property
    def outputs(self) -> dict[str, Output]:
        return dict(self.template.outputs)

    def get_operation(self, symbol: str) -> PlannedOperation:
        for op in self.operations:
            if op.symbol == symbol:
                return op
        raise KeyError(symbol)

    def to_dict(self) -> dict:
        """Render the plan with secure parameter values redacted."""
        secrets = self.evaluator.secure_values
        params = {}
        for name, value in self.evaluator.parameters.items():
            secure = self.template.parameters[name].secure
            params[name] = '***' if secure else value
        return {
            'template': self.template.name,
            'parameters': params,
            'operations': [op.to_dict(secrets) for op in self.operations],
            'outputs': {
                o.name: {'type': o.type, 'value': _render(o.value)}
                for o in self.template.outputs.values()
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def preview(self) -> str:
        """Human-readable plan listing."""
        lines = [
            '',
            '=' * 60,
            f'PLAN: {self.template.name} ({len(self.operations)} operation'
            f'{"s" if len(self.operations) != 1 else ""})',
            '=' * 60,
        ]
        for op in self.operations:
            lines.append(f'  {op.step:>3}. {op.action} {op.type}@{op.api_version} {op.name!r} [{op.symbol}]')
            if op.depends_on:
                lines.append(f'       after: {", ".join(op.depends_on)}')
            for slot in op.deferred_slots:
                lines.append(f'       deferred {slot.path} <- {slot.expression}')
        if self.template.outputs:
            lines.append('  outputs:')
            for out in self.template.outputs.values():
                lines.append(f'    {out.name} ({out.type}) = {_render(out.value)}')
        lines.append('')
        return '\n'.join(lines)


def _render(value: Any) -> Any:
    """Convert placeholders and compiled expressions to display strings."""
    if isinstance(value, DeferredValue):
        return str(value)
    if isinstance(value, dict):
        return {k: _render(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_render(v) for v in value]
    if isinstance(value, Expression):
        return value.source
    return value


def build_plan(template: Template, overrides: Optional[Mapping[str, Any]] = None) -> ExecutionPlan:
    """Validate a template and produce its execution plan.

    Detection order: unknown references and variable cycles (graph build),
    unknown functions, resource cycles, output references, parameters, then
    static evaluation of each resource's inputs.

    Raises:
        UnresolvedReferenceError: Reference to a nonexistent name
        CycleError: Dependency cycle (resources, variables or parameter defaults)
        EvaluationError: Unknown function or bad static expression
        MissingParameterError / InvalidParameterError: Parameter problems
    """
    graph = DependencyGraph(template)
    check_functions(template)
    order = graph.topological_order()

    for out in template.outputs.values():
        graph.scan(out.value, f'outputs.{out.name}')

    evaluator = Evaluator(template, overrides)

    operations: list[PlannedOperation] = []
    for step, symbol in enumerate(order, start=1):
        res = template.resources[symbol]
        owner = f'resources.{symbol}'
        inputs: dict[str, Any] = {'name': evaluator.resource_name(symbol)}
        location = evaluator.resource_location(symbol)
        if location is not None:
            inputs['location'] = location
        inputs.update(evaluator.evaluate(res.body, owner))

        operations.append(PlannedOperation(
            step=step,
            symbol=symbol,
            name=inputs['name'],
            type=res.type,
            api_version=res.api_version,
            inputs=inputs,
            depends_on=graph.dependencies(symbol),
        ))

    logger.info(f"Planned {len(operations)} operation(s) for template '{template.name}': "
                f"{' -> '.join(op.symbol for op in operations)}")
    return ExecutionPlan(template=template, evaluator=evaluator, graph=graph, operations=operations)
