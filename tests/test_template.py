"""Tests for template module (document loading and validation)."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ParseError
from expressions import Expression
from template import (
    NO_DEFAULT,
    Template,
    TemplateLoader,
    load_parameter_file,
    load_template,
    parse_parameter_args,
    template_to_json,
)


def _minimal(**extra):
    """Template dict with a single resource plus extra top-level sections."""
    data = {
        'resources': {
            'storage': {
                'type': 'Microsoft.Storage/storageAccounts',
                'apiVersion': '2023-01-01',
                'name': 'stg',
            },
        },
    }
    data.update(extra)
    return data


class TestTemplateFromText:
    """Tests for Template.from_text()."""

    def test_small_template(self, small_template):
        assert small_template.name == 'small'
        assert list(small_template.resources) == ['storage', 'vault', 'secret', 'site']
        assert list(small_template.parameters) == ['appName', 'location', 'adminPassword']
        assert list(small_template.variables) == ['storageName']
        assert list(small_template.outputs) == ['siteHost', 'storageId']

    def test_declaration_index(self, small_template):
        assert [r.index for r in small_template.resource_list] == [0, 1, 2, 3]

    def test_type_with_version_suffix(self, small_template):
        storage = small_template.resources['storage']
        assert storage.type == 'Microsoft.Storage/storageAccounts'
        assert storage.api_version == '2023-01-01'
        assert storage.type_id == 'Microsoft.Storage/storageAccounts@2023-01-01'

    def test_property_bag_excludes_reserved_keys(self, small_template):
        secret = small_template.resources['secret']
        assert set(secret.body) == {'properties'}
        assert secret.parent == 'vault'

    def test_expressions_compiled(self, small_template):
        storage = small_template.resources['storage']
        assert isinstance(storage.name, Expression)
        assert storage.body['sku'] == {'name': 'Standard_LRS'}

    def test_json_document(self):
        text = json.dumps(_minimal(name='from-json'))
        template = Template.from_text(text)
        assert template.name == 'from-json'
        assert 'storage' in template.resources

    def test_webapp_template_parses(self, webapp_template_path):
        template = Template.from_text(webapp_template_path.read_text(), name='webapp')
        assert len(template.resources) == 8
        assert template.parameters['sqlAdminPassword'].secure is True
        assert template.parameters['sqlAdminPassword'].default is NO_DEFAULT

    def test_yaml_syntax_error_has_line(self):
        with pytest.raises(ParseError) as exc_info:
            Template.from_text('resources:\n  a: [unclosed\n')
        assert exc_info.value.line is not None
        assert 'line' in str(exc_info.value)

    def test_duplicate_keys_rejected(self):
        text = """
resources:
  a: {type: X/y@1, name: a}
  a: {type: X/y@1, name: b}
"""
        with pytest.raises(ParseError, match="duplicate key 'a'"):
            Template.from_text(text)

    def test_not_a_mapping(self):
        with pytest.raises(ParseError, match='must be a mapping'):
            Template.from_text('- a\n- b\n')


class TestTemplateValidation:
    """Structural errors raised by Template.from_dict()."""

    def test_unknown_top_level_key(self):
        with pytest.raises(ParseError, match='unknown top-level'):
            Template.from_dict(_minimal(extras={}))

    def test_no_resources(self):
        with pytest.raises(ParseError, match='at least one resource'):
            Template.from_dict({'resources': {}})

    def test_missing_type(self):
        with pytest.raises(ParseError) as exc_info:
            Template.from_dict({'resources': {'a': {'apiVersion': '1', 'name': 'a'}}})
        assert exc_info.value.location == 'resources.a'
        assert 'type' in exc_info.value.message

    def test_missing_api_version(self):
        with pytest.raises(ParseError, match='apiVersion'):
            Template.from_dict({'resources': {'a': {'type': 'X/y', 'name': 'a'}}})

    def test_conflicting_api_version(self):
        with pytest.raises(ParseError, match='conflicts'):
            Template.from_dict({'resources': {'a': {'type': 'X/y@1', 'apiVersion': '2', 'name': 'a'}}})

    def test_type_without_namespace(self):
        with pytest.raises(ParseError, match='Namespace/resourceType'):
            Template.from_dict({'resources': {'a': {'type': 'storage@1', 'name': 'a'}}})

    def test_missing_name(self):
        with pytest.raises(ParseError, match='name'):
            Template.from_dict({'resources': {'a': {'type': 'X/y@1'}}})

    def test_bad_depends_on(self):
        with pytest.raises(ParseError, match='dependsOn'):
            Template.from_dict({'resources': {'a': {'type': 'X/y@1', 'name': 'a', 'dependsOn': 'b'}}})

    def test_invalid_symbol_name(self):
        with pytest.raises(ParseError, match='invalid name'):
            Template.from_dict({'resources': {'my-res': {'type': 'X/y@1', 'name': 'a'}}})

    def test_expression_syntax_error_has_location(self):
        data = _minimal()
        data['resources']['storage']['properties'] = {'x': '${concat(a,'}
        with pytest.raises(ParseError) as exc_info:
            Template.from_dict(data)
        assert exc_info.value.location == 'resources.storage.properties'

    def test_parameter_bad_type(self):
        with pytest.raises(ParseError, match='type must be one of'):
            Template.from_dict(_minimal(parameters={'p': {'type': 'float'}}))

    def test_parameter_unknown_key(self):
        with pytest.raises(ParseError, match='unknown key'):
            Template.from_dict(_minimal(parameters={'p': {'type': 'string', 'defaultValue': 'x'}}))

    def test_parameter_empty_allowed_values(self):
        with pytest.raises(ParseError, match='allowedValues'):
            Template.from_dict(_minimal(parameters={'p': {'type': 'string', 'allowedValues': []}}))

    def test_output_requires_value(self):
        with pytest.raises(ParseError, match='value'):
            Template.from_dict(_minimal(outputs={'o': {'type': 'string'}}))

    def test_symbol_declared_twice(self):
        data = _minimal(parameters={'storage': {'type': 'string'}})
        with pytest.raises(ParseError, match="both a parameter and a resource"):
            Template.from_dict(data)

    def test_symbol_kind(self, small_template):
        assert small_template.symbol_kind('appName') == 'parameter'
        assert small_template.symbol_kind('storageName') == 'variable'
        assert small_template.symbol_kind('vault') == 'resource'
        assert small_template.symbol_kind('nope') is None


class TestTemplateLoader:
    """Tests for TemplateLoader and load_template()."""

    def test_load_by_name(self, tmp_path, small_template_text):
        (tmp_path / 'small.yaml').write_text(small_template_text)
        loader = TemplateLoader(tmp_path)
        template = loader.load('small')
        assert template.name == 'small'
        assert template.source_path == tmp_path / 'small.yaml'

    def test_list_templates(self, tmp_path, small_template_text):
        (tmp_path / 'a.yaml').write_text(small_template_text)
        (tmp_path / 'b.json').write_text(json.dumps(_minimal()))
        (tmp_path / 'notes.txt').write_text('x')
        assert TemplateLoader(tmp_path).list_templates() == ['a', 'b']

    def test_load_not_found_lists_available(self, tmp_path, small_template_text):
        (tmp_path / 'small.yaml').write_text(small_template_text)
        with pytest.raises(ParseError, match='Available: small'):
            TemplateLoader(tmp_path).load('other')

    def test_load_file_missing(self, tmp_path):
        with pytest.raises(ParseError, match='not found'):
            load_template(file_path=str(tmp_path / 'missing.yaml'))

    def test_load_text(self, small_template_text):
        assert load_template(text=small_template_text).name == 'small'

    def test_no_source(self):
        with pytest.raises(ParseError, match='No template source'):
            load_template()

    def test_template_to_json(self, small_template):
        data = json.loads(template_to_json(small_template))
        assert data['name'] == 'small'
        assert data['parameters']['appName'] == {'type': 'string', 'required': False}


class TestParameterInputs:
    """Tests for parameter override parsing."""

    def test_parse_args_yaml_scalars(self):
        overrides = parse_parameter_args(['count=3', 'enabled=true', 'name=web', 'tags={a: b}'])
        assert overrides == {'count': 3, 'enabled': True, 'name': 'web', 'tags': {'a': 'b'}}

    def test_parse_args_empty_value(self):
        assert parse_parameter_args(['name=']) == {'name': ''}

    def test_parse_args_value_with_equals(self):
        assert parse_parameter_args(['conn=a=b']) == {'conn': 'a=b'}

    def test_parse_args_missing_equals(self):
        with pytest.raises(ParseError, match='name=value'):
            parse_parameter_args(['oops'])

    def test_parameter_file_plain(self, tmp_path):
        path = tmp_path / 'params.yaml'
        path.write_text('appName: demo\nplanCapacity: 2\n')
        assert load_parameter_file(str(path)) == {'appName': 'demo', 'planCapacity': 2}

    def test_parameter_file_deployment_layout(self, tmp_path):
        path = tmp_path / 'params.json'
        path.write_text(json.dumps({'parameters': {'appName': {'value': 'demo'}}}))
        assert load_parameter_file(str(path)) == {'appName': 'demo'}

    def test_parameter_file_bad_entry(self, tmp_path):
        path = tmp_path / 'params.json'
        path.write_text(json.dumps({'parameters': {'appName': 'demo'}}))
        with pytest.raises(ParseError, match='expected'):
            load_parameter_file(str(path))

    def test_parameter_file_missing(self, tmp_path):
        with pytest.raises(ParseError, match='not found'):
            load_parameter_file(str(tmp_path / 'nope.yaml'))
