"""Template loading and validation.

A template declares a resource topology for a single deployment:

    parameters:
      appName: {type: string, minLength: 3, maxLength: 18}
      location: {type: string, default: westus2}
    variables:
      storageName: "${toLower(appName)}stg"
    resources:
      storage:
        type: Microsoft.Storage/storageAccounts
        apiVersion: '2023-01-01'
        name: "${storageName}"
        location: "${location}"
        sku: {name: Standard_LRS}
      vault:
        type: Microsoft.KeyVault/vaults@2023-07-01
        name: "${appName}-kv"
        location: "${location}"
        properties: {tenantId: "${tenantId}"}
      secret:
        type: Microsoft.KeyVault/vaults/secrets@2023-07-01
        parent: vault
        name: storage-key
        properties: {value: "${listKeys(storage).keys[0].value}"}
    outputs:
      blobEndpoint:
        type: string
        value: "${storage.properties.primaryEndpoints.blob}"

Resource keys other than the reserved ones (type, apiVersion, name,
location, parent, dependsOn, comment) form the resource's property bag.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import ParseError
from expressions import Expression, compile_value

logger = logging.getLogger(__name__)

PARAMETER_TYPES = {'string', 'int', 'bool', 'object', 'array', 'secureString', 'secureObject'}
OUTPUT_TYPES = {'string', 'int', 'bool', 'object', 'array'}

TOP_LEVEL_KEYS = {'name', 'description', 'parameters', 'variables', 'resources', 'outputs'}
RESERVED_RESOURCE_KEYS = {'type', 'apiVersion', 'name', 'location', 'parent', 'dependsOn', 'comment'}
PARAMETER_KEYS = {
    'type', 'default', 'description', 'minLength', 'maxLength',
    'minValue', 'maxValue', 'allowedValues',
}

_SYMBOL_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class _NoDefault:
    """Sentinel for parameters declared without a default."""

    def __repr__(self) -> str:
        return 'NO_DEFAULT'


NO_DEFAULT: Any = _NoDefault()


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting."""

    def construct_mapping(self, node, deep=False):
        seen: set = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key '{key}'", key_node.start_mark)
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


@dataclass
class Parameter:
    """A template parameter declaration.

    Attributes:
        name: Parameter name (referenced by bare identifier in expressions)
        type: Declared type (see PARAMETER_TYPES)
        default: Compiled default value, NO_DEFAULT when required
        description: Optional human-readable description
        min_length / max_length: Length bounds for strings and arrays
        min_value / max_value: Bounds for ints
        allowed_values: Explicit whitelist of values
    """
    name: str
    type: str
    default: Any = NO_DEFAULT
    description: str = ''
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    allowed_values: Optional[list] = None

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    @property
    def secure(self) -> bool:
        return self.type.startswith('secure')

    @classmethod
    def from_dict(cls, name: str, data: Any, location: str) -> 'Parameter':
        if not isinstance(data, dict):
            raise ParseError("parameter declaration must be a mapping", location)
        unknown = set(data) - PARAMETER_KEYS
        if unknown:
            raise ParseError(f"unknown key(s): {', '.join(sorted(unknown))}", location)
        ptype = data.get('type')
        if ptype not in PARAMETER_TYPES:
            raise ParseError(
                f"type must be one of {', '.join(sorted(PARAMETER_TYPES))}, got {ptype!r}",
                f'{location}.type')

        for key in ('minLength', 'maxLength', 'minValue', 'maxValue'):
            if key in data and (not isinstance(data[key], int) or isinstance(data[key], bool)):
                raise ParseError(f"{key} must be an integer", f'{location}.{key}')
        allowed = data.get('allowedValues')
        if allowed is not None and (not isinstance(allowed, list) or not allowed):
            raise ParseError("allowedValues must be a non-empty list", f'{location}.allowedValues')

        default = NO_DEFAULT
        if 'default' in data:
            default = _compile(data['default'], f'{location}.default')

        return cls(
            name=name,
            type=ptype,
            default=default,
            description=data.get('description', ''),
            min_length=data.get('minLength'),
            max_length=data.get('maxLength'),
            min_value=data.get('minValue'),
            max_value=data.get('maxValue'),
            allowed_values=allowed,
        )


@dataclass
class Resource:
    """A resource declaration.

    Attributes:
        symbol: Symbolic name (key under resources:) used in references
        type: Resource type identifier (e.g. Microsoft.Web/sites)
        api_version: Provider API version
        name: Compiled name value (may be templated)
        location: Compiled location value, None for location-less resources
        body: Compiled property bag (every non-reserved key)
        parent: Symbolic name of the parent resource (child resources)
        depends_on: Explicit ordering hints (symbolic names)
        index: Declaration order within the template
    """
    symbol: str
    type: str
    api_version: str
    name: Any
    location: Any = None
    body: dict = field(default_factory=dict)
    parent: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    index: int = 0

    @property
    def type_id(self) -> str:
        """Combined type@apiVersion identifier."""
        return f'{self.type}@{self.api_version}'

    @classmethod
    def from_dict(cls, symbol: str, data: Any, index: int, location: str) -> 'Resource':
        if not isinstance(data, dict):
            raise ParseError("resource declaration must be a mapping", location)

        rtype = data.get('type')
        if not isinstance(rtype, str) or not rtype:
            raise ParseError("missing required field: type", location)
        api_version = data.get('apiVersion')
        if '@' in rtype:
            rtype, _, embedded = rtype.partition('@')
            if api_version is not None and str(api_version) != embedded:
                raise ParseError(
                    f"apiVersion '{api_version}' conflicts with type suffix '@{embedded}'",
                    f'{location}.apiVersion')
            api_version = embedded
        if not api_version:
            raise ParseError("missing required field: apiVersion", location)
        if '/' not in rtype:
            raise ParseError(f"type must look like 'Namespace/resourceType', got '{rtype}'",
                             f'{location}.type')

        if 'name' not in data or data['name'] in (None, ''):
            raise ParseError("missing required field: name", location)

        parent = data.get('parent')
        if parent is not None and (not isinstance(parent, str) or not _SYMBOL_RE.match(parent)):
            raise ParseError("parent must be the symbolic name of another resource",
                             f'{location}.parent')

        depends_on = data.get('dependsOn', [])
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ParseError("dependsOn must be a list of symbolic names", f'{location}.dependsOn')

        body = {
            key: _compile(value, f'{location}.{key}')
            for key, value in data.items()
            if key not in RESERVED_RESOURCE_KEYS
        }

        loc = None
        if data.get('location') is not None:
            loc = _compile(data['location'], f'{location}.location')

        return cls(
            symbol=symbol,
            type=rtype,
            api_version=str(api_version),
            name=_compile(data['name'], f'{location}.name'),
            location=loc,
            body=body,
            parent=parent,
            depends_on=list(depends_on),
            index=index,
        )


@dataclass
class Output:
    """A template output: name, declared type and value expression."""
    name: str
    type: str
    value: Any

    @classmethod
    def from_dict(cls, name: str, data: Any, location: str) -> 'Output':
        if not isinstance(data, dict):
            raise ParseError("output declaration must be a mapping", location)
        otype = data.get('type')
        if otype not in OUTPUT_TYPES:
            raise ParseError(
                f"type must be one of {', '.join(sorted(OUTPUT_TYPES))}, got {otype!r}",
                f'{location}.type')
        if 'value' not in data:
            raise ParseError("missing required field: value", location)
        return cls(name=name, type=otype, value=_compile(data['value'], f'{location}.value'))


@dataclass
class Template:
    """A parsed deployment template.

    All collections preserve declaration order.
    """
    name: str
    resources: dict[str, Resource]
    parameters: dict[str, Parameter] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Output] = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    @property
    def resource_list(self) -> list[Resource]:
        return list(self.resources.values())

    def symbol_kind(self, name: str) -> Optional[str]:
        """Return 'parameter', 'variable', 'resource' or None for an identifier."""
        if name in self.parameters:
            return 'parameter'
        if name in self.variables:
            return 'variable'
        if name in self.resources:
            return 'resource'
        return None

    @classmethod
    def from_dict(cls, data: Any, name: str = 'template',
                  source_path: Optional[Path] = None) -> 'Template':
        """Create a Template from a parsed document.

        Raises:
            ParseError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise ParseError("template must be a mapping")
        unknown = set(data) - TOP_LEVEL_KEYS
        if unknown:
            raise ParseError(f"unknown top-level key(s): {', '.join(sorted(unknown))}")

        parameters = {
            pname: Parameter.from_dict(pname, pdata, f'parameters.{pname}')
            for pname, pdata in _section(data, 'parameters').items()
        }
        variables = {
            vname: _compile(vdata, f'variables.{vname}')
            for vname, vdata in _section(data, 'variables').items()
        }

        raw_resources = _section(data, 'resources')
        if not raw_resources:
            raise ParseError("template must declare at least one resource", 'resources')
        resources: dict[str, Resource] = {}
        for index, (symbol, rdata) in enumerate(raw_resources.items()):
            resources[symbol] = Resource.from_dict(symbol, rdata, index, f'resources.{symbol}')

        outputs = {
            oname: Output.from_dict(oname, odata, f'outputs.{oname}')
            for oname, odata in _section(data, 'outputs').items()
        }

        _validate_symbols(parameters, variables, resources)

        return cls(
            name=str(data.get('name') or name),
            description=data.get('description', ''),
            parameters=parameters,
            variables=variables,
            resources=resources,
            outputs=outputs,
            source_path=source_path,
        )

    @classmethod
    def from_text(cls, text: str, name: str = 'template',
                  source_path: Optional[Path] = None) -> 'Template':
        """Parse YAML (or JSON) text into a Template.

        Raises:
            ParseError: On malformed YAML or template structure
        """
        try:
            data = yaml.load(text, Loader=_UniqueKeyLoader)
        except yaml.MarkedYAMLError as e:
            mark = e.problem_mark or e.context_mark
            problem = e.problem or str(e)
            if mark is None:
                raise ParseError(f"invalid YAML: {problem}")
            raise ParseError(f"invalid YAML: {problem}", str(source_path or ''),
                             line=mark.line + 1, column=mark.column + 1)
        except yaml.YAMLError as e:
            raise ParseError(f"invalid YAML: {e}")
        return cls.from_dict(data, name=name, source_path=source_path)


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"'{key}' must be a mapping of name to declaration", key)
    for name in value:
        if not isinstance(name, str) or not _SYMBOL_RE.match(name):
            raise ParseError(f"invalid name {name!r} (letters, digits and underscores only)",
                             f'{key}.{name}')
    return value


def _compile(value: Any, location: str) -> Any:
    """Compile a document value, attaching the location to syntax errors."""
    try:
        return compile_value(value)
    except ParseError as e:
        raise ParseError(e.message, location)


def _validate_symbols(parameters: dict, variables: dict, resources: dict) -> None:
    """Check that each identifier names exactly one declaration.

    Unknown parent/dependsOn targets are reported later by the dependency
    resolver as unresolved references.
    """
    seen: dict[str, str] = {}
    for kind, names in (('parameter', parameters), ('variable', variables), ('resource', resources)):
        for name in names:
            if name in seen:
                raise ParseError(f"'{name}' is declared as both a {seen[name]} and a {kind}",
                                 f'{kind}s.{name}')
            seen[name] = kind


class TemplateLoader:
    """Loads templates from a templates directory or explicit paths."""

    SUFFIXES = ('.yaml', '.yml', '.json')

    def __init__(self, templates_dir: Optional[Path] = None):
        self.templates_dir = Path(templates_dir) if templates_dir else Path.cwd() / 'templates'

    def list_templates(self) -> list[str]:
        """List available template names."""
        if not self.templates_dir.exists():
            return []
        return sorted({
            f.stem for f in self.templates_dir.iterdir()
            if f.is_file() and f.suffix in self.SUFFIXES
        })

    def load(self, name: str) -> Template:
        """Load a template by name from the templates directory.

        Raises:
            ParseError: If not found or invalid
        """
        for suffix in self.SUFFIXES:
            path = self.templates_dir / f'{name}{suffix}'
            if path.exists():
                return self.load_file(path)
        available = self.list_templates()
        raise ParseError(
            f"Template '{name}' not found in {self.templates_dir}. "
            f"Available: {', '.join(available) if available else 'none'}"
        )

    def load_file(self, path: Path) -> Template:
        """Load a template from a specific file.

        Raises:
            ParseError: If the file does not exist or is invalid
        """
        path = Path(path)
        if not path.exists():
            raise ParseError(f"Template file not found: {path}")
        text = path.read_text(encoding='utf-8')
        logger.debug(f"Loaded template text from {path}")
        return Template.from_text(text, name=path.stem, source_path=path)


def load_template(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    text: Optional[str] = None,
    templates_dir: Optional[Path] = None,
) -> Template:
    """Load a template from one of several sources.

    Priority:
    1. text - Inline document
    2. file_path - Specific file
    3. name - Named template from the templates directory

    Raises:
        ParseError: If no source is given, or the template is missing or invalid
    """
    if text:
        return Template.from_text(text)
    loader = TemplateLoader(templates_dir)
    if file_path:
        return loader.load_file(Path(file_path))
    if name:
        return loader.load(name)
    raise ParseError("No template source given (name, file or text)")


def load_parameter_file(path: str) -> dict[str, Any]:
    """Load parameter overrides from a YAML or JSON file.

    Accepts a plain mapping (name: value) or the deployment-parameters
    layout ({"parameters": {"name": {"value": ...}}}).

    Raises:
        ParseError: If the file is missing or malformed
    """
    file = Path(path)
    if not file.exists():
        raise ParseError(f"Parameters file not found: {file}")
    try:
        data = yaml.safe_load(file.read_text(encoding='utf-8'))
    except yaml.YAMLError as e:
        raise ParseError(f"invalid YAML in parameters file {file}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(f"Parameters file {file} must be a mapping")

    if isinstance(data.get('parameters'), dict):
        values = {}
        for pname, entry in data['parameters'].items():
            if not isinstance(entry, dict) or 'value' not in entry:
                raise ParseError("expected {value: ...}", f'parameters.{pname}')
            values[pname] = entry['value']
        return values
    return dict(data)


def parse_parameter_args(args: list[str]) -> dict[str, Any]:
    """Parse name=value override flags.

    Values are read as YAML scalars/flow collections so 'count=3' is an int,
    'enabled=true' a bool and 'tags={a: b}' a mapping. A value that does not
    parse as YAML is kept as a plain string.

    Raises:
        ParseError: If an argument has no '='
    """
    overrides: dict[str, Any] = {}
    for arg in args:
        pname, sep, raw = arg.partition('=')
        if not sep or not pname:
            raise ParseError(f"Parameter override must be name=value, got '{arg}'")
        try:
            overrides[pname] = yaml.safe_load(raw) if raw else ''
        except yaml.YAMLError:
            overrides[pname] = raw
    return overrides


def template_to_json(template: Template) -> str:
    """Summarize a template's declarations as JSON (for validate --json-output)."""
    return json.dumps({
        'name': template.name,
        'parameters': {
            p.name: {'type': p.type, 'required': not p.has_default}
            for p in template.parameters.values()
        },
        'variables': list(template.variables),
        'resources': [
            {'symbol': r.symbol, 'type': r.type_id, 'parent': r.parent}
            for r in template.resource_list
        ],
        'outputs': {o.name: o.type for o in template.outputs.values()},
    }, indent=2)
