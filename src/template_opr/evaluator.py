"""Expression evaluation for templates.

Values fall into two classes:

- static: known before any resource exists (literals, parameters, variables
  built from them, resource names/types/locations)
- deferred: known only after a resource is materialized (runtime attributes
  such as `storage.id` or `listKeys(storage)`)

During planning, deferred expressions are kept as DeferredValue placeholders.
During execution they are substituted from the runtime attribute table, and
only once every source resource has been recorded there.
"""

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from common import (
    CycleError,
    EvaluationError,
    InvalidParameterError,
    MissingParameterError,
    UnresolvedReferenceError,
)
from expressions import (
    Call,
    Expression,
    Identifier,
    Index,
    Interpolation,
    Literal,
    Member,
    Node,
    iter_expressions,
    references,
    walk,
)
from template import Parameter, Template

logger = logging.getLogger(__name__)

# Resource attributes known before the resource is created
STATIC_RESOURCE_ATTRIBUTES = {'name', 'type', 'apiVersion', 'location', 'symbolicName'}

# Functions returning {attribute: value} from a resource's runtime attributes
DEFERRED_FUNCTIONS = {'listKeys': 'keys'}

REDACTED = '***'


@dataclass(frozen=True)
class DeferredValue:
    """Placeholder for a value known only after its sources are materialized.

    Attributes:
        expression: The expression to evaluate at execution time
        sources: Symbolic names of the resources it reads runtime attributes from
    """
    expression: Expression
    sources: tuple

    def __str__(self) -> str:
        return f'<deferred: {self.expression.source}>'


def to_string(value: Any) -> str:
    """Render a value for string interpolation."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'), sort_keys=True)
    return str(value)


def _arity(name: str, args: tuple, minimum: int, maximum: Optional[int] = None) -> None:
    if len(args) < minimum or (maximum is not None and len(args) > maximum):
        expected = str(minimum) if maximum == minimum else (
            f'{minimum}+' if maximum is None else f'{minimum}-{maximum}')
        raise EvaluationError(f"{name}() takes {expected} argument(s), got {len(args)}")


def _require(name: str, value: Any, kind: type, position: int) -> Any:
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise EvaluationError(
            f"{name}() argument {position} must be {kind.__name__}, got {type(value).__name__}")
    return value


def _fn_concat(*args):
    _arity('concat', args, 1)
    if all(isinstance(a, list) for a in args):
        return [item for a in args for item in a]
    return ''.join(to_string(a) for a in args)


def _fn_format(*args):
    _arity('format', args, 1)
    fmt = _require('format', args[0], str, 1)
    try:
        return fmt.format(*(to_string(a) for a in args[1:]))
    except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
        raise EvaluationError(f"format() failed for '{fmt}': {e}")


def _fn_to_lower(*args):
    _arity('toLower', args, 1, 1)
    return _require('toLower', args[0], str, 1).lower()


def _fn_to_upper(*args):
    _arity('toUpper', args, 1, 1)
    return _require('toUpper', args[0], str, 1).upper()


def _fn_unique_string(*args):
    """Deterministic 13-character lowercase hash of the arguments."""
    _arity('uniqueString', args, 1)
    seed = '|'.join(to_string(a) for a in args)
    digest = hashlib.sha256(seed.encode('utf-8')).digest()
    return base64.b32encode(digest).decode('ascii').lower()[:13]


def _fn_substring(*args):
    _arity('substring', args, 2, 3)
    text = _require('substring', args[0], str, 1)
    start = _require('substring', args[1], int, 2)
    if start < 0 or start > len(text):
        raise EvaluationError(f"substring() start {start} out of range for '{text}'")
    if len(args) == 2:
        return text[start:]
    length = _require('substring', args[2], int, 3)
    if length < 0 or start + length > len(text):
        raise EvaluationError(f"substring() length {length} out of range for '{text}'")
    return text[start:start + length]


def _fn_length(*args):
    _arity('length', args, 1, 1)
    value = args[0]
    if not isinstance(value, (str, list, dict)):
        raise EvaluationError(f"length() needs a string, array or object, got {type(value).__name__}")
    return len(value)


def _fn_replace(*args):
    _arity('replace', args, 3, 3)
    text = _require('replace', args[0], str, 1)
    return text.replace(_require('replace', args[1], str, 2), _require('replace', args[2], str, 3))


def _fn_take(*args):
    _arity('take', args, 2, 2)
    value = args[0]
    if not isinstance(value, (str, list)):
        raise EvaluationError(f"take() needs a string or array, got {type(value).__name__}")
    count = _require('take', args[1], int, 2)
    return value[:max(count, 0)]


def _fn_string(*args):
    _arity('string', args, 1, 1)
    return to_string(args[0])


def _fn_empty(*args):
    _arity('empty', args, 1, 1)
    value = args[0]
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def _fn_coalesce(*args):
    _arity('coalesce', args, 1)
    for value in args:
        if value is not None:
            return value
    return None


def _fn_equals(*args):
    _arity('equals', args, 2, 2)
    return args[0] == args[1]


def _fn_if(*args):
    _arity('if', args, 3, 3)
    return args[1] if _require('if', args[0], bool, 1) else args[2]


FUNCTIONS: dict[str, Callable[..., Any]] = {
    'concat': _fn_concat,
    'format': _fn_format,
    'toLower': _fn_to_lower,
    'toUpper': _fn_to_upper,
    'uniqueString': _fn_unique_string,
    'substring': _fn_substring,
    'length': _fn_length,
    'replace': _fn_replace,
    'take': _fn_take,
    'string': _fn_string,
    'empty': _fn_empty,
    'coalesce': _fn_coalesce,
    'equals': _fn_equals,
    'if': _fn_if,
}


def check_functions(template: Template) -> None:
    """Reject calls to unknown functions and misuse of deferred functions.

    Raises:
        EvaluationError: On the first offending call
    """
    for owner, value in _template_values(template):
        for expr in iter_expressions(value):
            for node in walk(expr.node):
                if not isinstance(node, Call):
                    continue
                if node.name in DEFERRED_FUNCTIONS:
                    if len(node.args) != 1 or not isinstance(node.args[0], Identifier) \
                            or node.args[0].name not in template.resources:
                        raise EvaluationError(
                            f"{owner}: {node.name}() takes the symbolic name of a resource "
                            f"in '{expr.source}'")
                elif node.name not in FUNCTIONS:
                    raise EvaluationError(f"{owner}: unknown function '{node.name}' in '{expr.source}'")


def _template_values(template: Template):
    """Yield (owner, compiled value) for every value in the template."""
    for param in template.parameters.values():
        if param.has_default:
            yield f'parameters.{param.name}', param.default
    for name, value in template.variables.items():
        yield f'variables.{name}', value
    for res in template.resources.values():
        yield f'resources.{res.symbol}.name', res.name
        if res.location is not None:
            yield f'resources.{res.symbol}.location', res.location
        yield f'resources.{res.symbol}', res.body
    for out in template.outputs.values():
        yield f'outputs.{out.name}', out.value


def _type_matches(ptype: str, value: Any) -> bool:
    if ptype in ('string', 'secureString'):
        return isinstance(value, str)
    if ptype == 'int':
        return isinstance(value, int) and not isinstance(value, bool)
    if ptype == 'bool':
        return isinstance(value, bool)
    if ptype in ('object', 'secureObject'):
        return isinstance(value, dict)
    if ptype == 'array':
        return isinstance(value, list)
    return False


def validate_parameter(param: Parameter, value: Any) -> Any:
    """Check a parameter value against its declared type and constraints.

    Numbers supplied for string parameters are converted to strings, since
    override flags are parsed as YAML scalars.

    Returns:
        The (possibly converted) value

    Raises:
        InvalidParameterError: On type or constraint violations
    """
    if param.type in ('string', 'secureString') and isinstance(value, (int, float)) \
            and not isinstance(value, bool):
        value = str(value)

    if not _type_matches(param.type, value):
        raise InvalidParameterError(
            param.name, f"expected {param.type}, got {type(value).__name__}")

    if param.allowed_values is not None and value not in param.allowed_values:
        shown = REDACTED if param.secure else repr(value)
        raise InvalidParameterError(
            param.name, f"value {shown} not in allowed values {param.allowed_values}")

    if isinstance(value, (str, list)):
        if param.min_length is not None and len(value) < param.min_length:
            raise InvalidParameterError(
                param.name, f"length {len(value)} is below minLength {param.min_length}")
        if param.max_length is not None and len(value) > param.max_length:
            raise InvalidParameterError(
                param.name, f"length {len(value)} exceeds maxLength {param.max_length}")

    if isinstance(value, int) and not isinstance(value, bool):
        if param.min_value is not None and value < param.min_value:
            raise InvalidParameterError(
                param.name, f"value {value} is below minValue {param.min_value}")
        if param.max_value is not None and value > param.max_value:
            raise InvalidParameterError(
                param.name, f"value {value} exceeds maxValue {param.max_value}")

    return value


class Evaluator:
    """Resolves parameters and evaluates compiled template values.

    Parameters are resolved once at construction and are immutable after
    that. Variables and resource names are evaluated lazily and cached.
    """

    def __init__(self, template: Template, overrides: Optional[Mapping[str, Any]] = None):
        self.template = template
        self._variable_cache: dict[str, Any] = {}
        self._name_cache: dict[str, str] = {}
        self._deferred_sources_cache: dict[str, tuple] = {}
        self._active: list[str] = []
        self.parameters = self._resolve_parameters(dict(overrides or {}))

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def _resolve_parameters(self, overrides: dict[str, Any]) -> dict[str, Any]:
        undeclared = [name for name in overrides if name not in self.template.parameters]
        if undeclared:
            raise InvalidParameterError(undeclared[0], "not declared in template")

        resolved: dict[str, Any] = {}
        resolving: list[str] = []

        def resolve(name: str) -> Any:
            if name in resolved:
                return resolved[name]
            if name in resolving:
                raise CycleError(resolving[resolving.index(name):] + [name])
            param = self.template.parameters[name]
            resolving.append(name)
            if name in overrides:
                value = overrides[name]
                source = 'override'
            elif param.has_default:
                value = self._evaluate_default(param, resolve)
                source = 'default'
            else:
                raise MissingParameterError(name)
            resolving.pop()
            resolved[name] = validate_parameter(param, value)
            logger.debug(f"Parameter '{name}' resolved from {source}")
            return resolved[name]

        for name in self.template.parameters:
            resolve(name)
        return resolved

    def _evaluate_default(self, param: Parameter, resolve: Callable[[str], Any]) -> Any:
        """Evaluate a default value; defaults may only reference other parameters."""
        owner = f'parameters.{param.name}'
        for expr in iter_expressions(param.default):
            for ref in references(expr.node):
                if ref.name not in self.template.parameters:
                    raise UnresolvedReferenceError(
                        owner, ref.name, 'parameter defaults may only reference parameters')
                resolve(ref.name)
        return self._evaluate_structure(param.default, None, owner, params_override=resolve)

    @property
    def secure_values(self) -> list:
        """Values of secure parameters, for redaction."""
        return [
            self.parameters[p.name] for p in self.template.parameters.values()
            if p.secure and p.name in self.parameters
        ]

    # ------------------------------------------------------------------
    # Deferred analysis
    # ------------------------------------------------------------------

    def deferred_sources(self, node: Node, owner: str = '') -> tuple:
        """Resources whose runtime attributes the expression reads.

        An empty tuple means the expression is static.
        """
        sources: list[str] = []
        for ref in references(node):
            kind = self.template.symbol_kind(ref.name)
            if kind == 'resource':
                static = ref.via is None and ref.path and ref.path[0] in STATIC_RESOURCE_ATTRIBUTES
                if not static and ref.name not in sources:
                    sources.append(ref.name)
            elif kind == 'variable':
                for src in self._variable_sources(ref.name):
                    if src not in sources:
                        sources.append(src)
            elif kind is None:
                raise UnresolvedReferenceError(owner or 'expression', ref.name)
        return tuple(sources)

    def _variable_sources(self, name: str) -> tuple:
        if name in self._deferred_sources_cache:
            return self._deferred_sources_cache[name]
        key = f'variables.{name}'
        if key in self._active:
            chain = [k.split('.', 1)[1] for k in self._active[self._active.index(key):]]
            raise CycleError(chain + [name])
        self._active.append(key)
        try:
            sources: list[str] = []
            for expr in iter_expressions(self.template.variables[name]):
                for src in self.deferred_sources(expr.node, key):
                    if src not in sources:
                        sources.append(src)
        finally:
            self._active.pop()
        self._deferred_sources_cache[name] = tuple(sources)
        return self._deferred_sources_cache[name]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, value: Any, owner: str = '') -> Any:
        """Evaluate a compiled value at plan time.

        Static expressions become concrete values; deferred ones become
        DeferredValue placeholders.
        """
        if isinstance(value, Expression):
            sources = self.deferred_sources(value.node, owner)
            if sources:
                return DeferredValue(value, sources)
            return self._eval(value.node, None, owner)
        if isinstance(value, dict):
            return {k: self.evaluate(v, owner) for k, v in value.items()}
        if isinstance(value, list):
            return [self.evaluate(v, owner) for v in value]
        return value

    def evaluate_static(self, value: Any, owner: str, what: str) -> Any:
        """Evaluate a value that must be known before deployment.

        Raises:
            EvaluationError: If the value depends on a runtime attribute
        """
        result = self.evaluate(value, owner)
        if _contains_deferred(result):
            raise EvaluationError(f"{owner}: {what} must be known before deployment, "
                                  f"but depends on runtime attributes")
        return result

    def substitute(self, value: Any, runtime: Mapping[str, dict], owner: str = '') -> Any:
        """Replace DeferredValue placeholders using the runtime attribute table.

        Raises:
            EvaluationError: If a placeholder's source has not been materialized
            UnresolvedReferenceError: If a runtime attribute does not exist
        """
        if isinstance(value, DeferredValue):
            missing = [s for s in value.sources if s not in runtime]
            if missing:
                raise EvaluationError(
                    f"{owner}: cannot substitute '{value.expression.source}' before "
                    f"{', '.join(missing)} is materialized")
            return self._eval(value.expression.node, runtime, owner)
        if isinstance(value, dict):
            return {k: self.substitute(v, runtime, owner) for k, v in value.items()}
        if isinstance(value, list):
            return [self.substitute(v, runtime, owner) for v in value]
        return value

    def evaluate_runtime(self, value: Any, runtime: Mapping[str, dict], owner: str = '') -> Any:
        """Evaluate a compiled value with runtime attributes available."""
        return self.substitute(self.evaluate(value, owner), runtime, owner)

    def resource_name(self, symbol: str) -> str:
        """Fully-qualified resource name: parent names joined with '/'."""
        if symbol in self._name_cache:
            return self._name_cache[symbol]
        key = f'resources.{symbol}.name'
        if key in self._active:
            chain = [k.split('.')[1] for k in self._active[self._active.index(key):]]
            raise CycleError(chain + [symbol])
        res = self.template.resources[symbol]
        self._active.append(key)
        try:
            name = self.evaluate_static(res.name, key, 'resource name')
            if not isinstance(name, str) or not name:
                raise EvaluationError(f"{key}: resource name must be a non-empty string, got {name!r}")
            if res.parent is not None:
                name = f'{self.resource_name(res.parent)}/{name}'
        finally:
            self._active.pop()
        self._name_cache[symbol] = name
        return name

    def resource_location(self, symbol: str) -> Optional[str]:
        res = self.template.resources[symbol]
        if res.location is None:
            return None
        owner = f'resources.{symbol}.location'
        location = self.evaluate_static(res.location, owner, 'location')
        if location is not None and not isinstance(location, str):
            raise EvaluationError(f"{owner}: location must be a string, got {location!r}")
        return location

    def evaluate_outputs(self, runtime: Mapping[str, dict]) -> dict[str, Any]:
        """Evaluate all outputs after execution and check their declared types.

        Raises:
            EvaluationError: If an output value does not match its type
        """
        results: dict[str, Any] = {}
        for out in self.template.outputs.values():
            owner = f'outputs.{out.name}'
            value = self.evaluate_runtime(out.value, runtime, owner)
            if not _type_matches(out.type, value):
                raise EvaluationError(
                    f"{owner}: declared {out.type}, evaluated to {type(value).__name__}")
            results[out.name] = value
        return results

    def _evaluate_structure(self, value: Any, runtime: Optional[Mapping[str, dict]], owner: str,
                            params_override: Optional[Callable[[str], Any]] = None) -> Any:
        if isinstance(value, Expression):
            return self._eval(value.node, runtime, owner, params_override)
        if isinstance(value, dict):
            return {k: self._evaluate_structure(v, runtime, owner, params_override)
                    for k, v in value.items()}
        if isinstance(value, list):
            return [self._evaluate_structure(v, runtime, owner, params_override) for v in value]
        return value

    def _variable(self, name: str, runtime: Optional[Mapping[str, dict]]) -> Any:
        if runtime is None and name in self._variable_cache:
            return self._variable_cache[name]
        key = f'variables.{name}'
        if key in self._active:
            chain = [k.split('.', 1)[1] for k in self._active[self._active.index(key):]]
            raise CycleError(chain + [name])
        self._active.append(key)
        try:
            value = self._evaluate_structure(self.template.variables[name], runtime, key)
        finally:
            self._active.pop()
        if runtime is None:
            self._variable_cache[name] = value
        return value

    def _static_attribute(self, symbol: str, attr: str) -> Any:
        res = self.template.resources[symbol]
        if attr == 'name':
            return self.resource_name(symbol)
        if attr == 'type':
            return res.type
        if attr == 'apiVersion':
            return res.api_version
        if attr == 'location':
            return self.resource_location(symbol)
        return symbol

    def _runtime_attributes(self, symbol: str, runtime: Optional[Mapping[str, dict]],
                            owner: str) -> dict:
        if runtime is None or symbol not in runtime:
            raise EvaluationError(f"{owner}: runtime attributes of '{symbol}' are not available yet")
        return runtime[symbol]

    def _eval(self, node: Node, runtime: Optional[Mapping[str, dict]], owner: str,
              params: Optional[Callable[[str], Any]] = None) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Identifier):
            kind = self.template.symbol_kind(node.name)
            if kind == 'parameter':
                return params(node.name) if params else self.parameters[node.name]
            if kind == 'variable':
                return self._variable(node.name, runtime)
            if kind == 'resource':
                return self._runtime_attributes(node.name, runtime, owner)
            raise UnresolvedReferenceError(owner, node.name)

        if isinstance(node, Member):
            target = node.target
            if isinstance(target, Identifier) and node.name in STATIC_RESOURCE_ATTRIBUTES \
                    and self.template.symbol_kind(target.name) == 'resource':
                return self._static_attribute(target.name, node.name)
            base = self._eval(target, runtime, owner, params)
            return _lookup(base, node.name, node, owner)

        if isinstance(node, Index):
            target = node.target
            if isinstance(target, Identifier) and isinstance(node.index, Literal) \
                    and node.index.value in STATIC_RESOURCE_ATTRIBUTES \
                    and self.template.symbol_kind(target.name) == 'resource':
                return self._static_attribute(target.name, node.index.value)
            base = self._eval(target, runtime, owner, params)
            index = self._eval(node.index, runtime, owner, params)
            return _lookup(base, index, node, owner)

        if isinstance(node, Call):
            if node.name in DEFERRED_FUNCTIONS:
                arg = node.args[0] if node.args else None
                if not isinstance(arg, Identifier) or arg.name not in self.template.resources:
                    raise EvaluationError(f"{owner}: {node.name}() takes a resource symbolic name")
                attrs = self._runtime_attributes(arg.name, runtime, owner)
                attr = DEFERRED_FUNCTIONS[node.name]
                if attr not in attrs:
                    raise UnresolvedReferenceError(owner, f'{arg.name}.{attr}',
                                                   f'{node.name}() found no {attr} attribute')
                return {attr: attrs[attr]}
            func = FUNCTIONS.get(node.name)
            if func is None:
                raise EvaluationError(f"{owner}: unknown function '{node.name}'")
            args = tuple(self._eval(a, runtime, owner, params) for a in node.args)
            try:
                return func(*args)
            except EvaluationError as e:
                raise EvaluationError(f"{owner}: {e}")

        if isinstance(node, Interpolation):
            return ''.join(
                part if isinstance(part, str) else to_string(self._eval(part, runtime, owner, params))
                for part in node.parts
            )

        raise EvaluationError(f"{owner}: cannot evaluate {node!r}")


def _describe(node: Node) -> str:
    """Render a Member/Index chain back to dotted text for error messages."""
    if isinstance(node, Identifier):
        return node.name
    if isinstance(node, Member):
        return f'{_describe(node.target)}.{node.name}'
    if isinstance(node, Index):
        index = node.index.value if isinstance(node.index, Literal) else '...'
        return f'{_describe(node.target)}[{index!r}]'
    if isinstance(node, Call):
        return f'{node.name}(...)'
    return '<expression>'


def _lookup(base: Any, key: Any, node: Node, owner: str) -> Any:
    if not isinstance(key, (str, int)):
        raise EvaluationError(
            f"{owner}: index must be a string or integer, got {type(key).__name__} "
            f"in '{_describe(node)}'")
    if isinstance(base, dict):
        if key not in base:
            raise UnresolvedReferenceError(owner, _describe(node))
        return base[key]
    if isinstance(base, list):
        if not isinstance(key, int) or isinstance(key, bool):
            raise EvaluationError(f"{owner}: array index must be an integer in '{_describe(node)}'")
        if not -len(base) <= key < len(base):
            raise UnresolvedReferenceError(owner, _describe(node), f'index {key} out of range')
        return base[key]
    raise EvaluationError(
        f"{owner}: cannot access {key!r} on {type(base).__name__} in '{_describe(node)}'")


def _contains_deferred(value: Any) -> bool:
    if isinstance(value, DeferredValue):
        return True
    if isinstance(value, dict):
        return any(_contains_deferred(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_deferred(v) for v in value)
    return False


def deferred_slots(value: Any, path: str = '') -> list[tuple[str, DeferredValue]]:
    """List (dotted path, placeholder) pairs inside an evaluated value."""
    if isinstance(value, DeferredValue):
        return [(path, value)]
    slots: list[tuple[str, DeferredValue]] = []
    if isinstance(value, dict):
        for k, v in value.items():
            slots.extend(deferred_slots(v, f'{path}.{k}' if path else str(k)))
    elif isinstance(value, list):
        for i, v in enumerate(value):
            slots.extend(deferred_slots(v, f'{path}[{i}]'))
    return slots


def redact(value: Any, secrets: list) -> Any:
    """Replace secure parameter values (and strings containing them) with '***'."""
    if not secrets:
        return value
    if isinstance(value, dict):
        if value in secrets:
            return REDACTED
        return {k: redact(v, secrets) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v, secrets) for v in value]
    if isinstance(value, str):
        for secret in secrets:
            if isinstance(secret, str) and secret and secret in value:
                value = value.replace(secret, REDACTED)
        return value
    return value
