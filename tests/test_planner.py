"""Tests for template_opr.planner module."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import (
    CycleError,
    EvaluationError,
    MissingParameterError,
    UnresolvedReferenceError,
)
from template import Template
from template_opr.evaluator import DeferredValue
from template_opr.planner import DeferredSlot, build_plan

TWO_RESOURCES = """
resources:
  A:
    type: Test.Provider/services@2024-01-01
    name: service-a
  B:
    type: Test.Provider/clients@2024-01-01
    name: client-b
    properties:
      target: "${A.properties.endpoint}"
"""


class TestBuildPlan:
    """Tests for build_plan()."""

    def test_dependency_first(self):
        plan = build_plan(Template.from_text(TWO_RESOURCES))
        assert plan.order == ['A', 'B']

    def test_bad_format_field_in_name(self):
        text = """
resources:
  A:
    type: Test.Provider/services@2024-01-01
    name: "${format('{0.foo}', 'x')}"
"""
        with pytest.raises(EvaluationError, match='format'):
            build_plan(Template.from_text(text))

    def test_declaration_order_does_not_matter(self):
        text = """
resources:
  B:
    type: Test.Provider/clients@2024-01-01
    name: client-b
    properties:
      target: "${A.properties.endpoint}"
  A:
    type: Test.Provider/services@2024-01-01
    name: service-a
"""
        assert build_plan(Template.from_text(text)).order == ['A', 'B']

    def test_removing_dependency_is_unresolved(self):
        text = """
resources:
  B:
    type: Test.Provider/clients@2024-01-01
    name: client-b
    properties:
      target: "${A.properties.endpoint}"
"""
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build_plan(Template.from_text(text))
        assert exc_info.value.source == 'B'
        assert exc_info.value.reference == 'A'

    def test_mutual_reference_is_cycle(self):
        text = """
resources:
  A:
    type: Test.Provider/services@2024-01-01
    name: a
    properties: {peer: "${B.id}"}
  B:
    type: Test.Provider/services@2024-01-01
    name: b
    properties: {peer: "${A.id}"}
"""
        with pytest.raises(CycleError) as exc_info:
            build_plan(Template.from_text(text))
        assert set(exc_info.value.members) == {'A', 'B'}

    def test_operation_fields(self, small_template):
        plan = build_plan(small_template)
        op = plan.get_operation('secret')
        assert op.step == 3
        assert op.name == 'demo-kv/storage-key'
        assert op.type == 'Microsoft.KeyVault/vaults/secrets'
        assert op.api_version == '2023-07-01'
        assert op.depends_on == ['storage', 'vault']
        assert op.inputs['name'] == 'demo-kv/storage-key'
        assert 'location' not in op.inputs

    def test_static_inputs_resolved(self, small_template):
        plan = build_plan(small_template, {'appName': 'Shop'})
        op = plan.get_operation('storage')
        assert op.inputs == {
            'name': 'shopstg',
            'location': 'westus2',
            'sku': {'name': 'Standard_LRS'},
        }
        assert op.is_static

    def test_deferred_slots_listed(self, small_template):
        plan = build_plan(small_template)
        op = plan.get_operation('site')
        assert isinstance(op.inputs['properties']['blob'], DeferredValue)
        assert op.deferred_slots == [
            DeferredSlot('properties.blob', '${storage.properties.primaryEndpoints.blob}', ('storage',)),
        ]
        assert not op.is_static

    def test_deferred_sources_precede_operation(self, small_template):
        plan = build_plan(small_template)
        for op in plan.operations:
            for slot in op.deferred_slots:
                for source in slot.sources:
                    assert plan.order.index(source) < plan.order.index(op.symbol)

    def test_same_inputs_same_plan(self, small_template_text):
        first = build_plan(Template.from_text(small_template_text), {'appName': 'x1'})
        second = build_plan(Template.from_text(small_template_text), {'appName': 'x1'})
        assert first.order == second.order
        assert first.to_dict() == second.to_dict()

    def test_missing_parameter(self, webapp_template_path):
        template = Template.from_text(webapp_template_path.read_text())
        with pytest.raises(MissingParameterError, match='sqlAdminPassword'):
            build_plan(template)

    def test_unknown_output_reference(self):
        text = TWO_RESOURCES + """
outputs:
  o:
    type: string
    value: "${C.id}"
"""
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build_plan(Template.from_text(text))
        assert exc_info.value.source == 'outputs.o'

    def test_unknown_function_before_parameters(self):
        text = """
parameters:
  required: {type: string}
resources:
  A:
    type: Test.Provider/services@2024-01-01
    name: "${bogus(required)}"
"""
        with pytest.raises(EvaluationError, match='unknown function'):
            build_plan(Template.from_text(text))

    def test_webapp_plan(self, webapp_template_path):
        template = Template.from_text(webapp_template_path.read_text())
        plan = build_plan(template, {'sqlAdminPassword': 'Sup3r-Secret-Pw'})
        assert plan.order == [
            'storage', 'vault', 'storageSecret', 'plan', 'sql', 'database', 'site', 'frontend',
        ]
        site = plan.get_operation('site')
        assert site.depends_on == ['storage', 'vault', 'storageSecret', 'plan', 'sql', 'database']
        assert plan.get_operation('database').name.endswith('/appdb')
        assert plan.get_operation('plan').inputs['sku'] == {'name': 'B1', 'capacity': 1}


class TestPlanRendering:
    """Tests for plan serialization and preview."""

    def test_to_dict_redacts_secure_parameters(self, small_template):
        plan = build_plan(small_template)
        data = plan.to_dict()
        assert data['parameters']['adminPassword'] == '***'
        vault = data['operations'][1]
        assert vault['inputs']['properties']['adminPassword'] == '***'
        assert 'S3cret-Passw0rd!' not in plan.to_json()

    def test_to_dict_renders_deferred(self, small_template):
        data = build_plan(small_template).to_dict()
        site = data['operations'][3]
        assert site['inputs']['properties']['blob'] == \
            '<deferred: ${storage.properties.primaryEndpoints.blob}>'
        assert site['deferred'][0]['sources'] == ['storage']
        assert data['outputs']['storageId'] == {'type': 'string', 'value': '${storage.id}'}

    def test_to_json_is_valid(self, small_template):
        data = json.loads(build_plan(small_template).to_json())
        assert data['template'] == 'small'
        assert [op['symbol'] for op in data['operations']] == ['storage', 'vault', 'secret', 'site']

    def test_preview(self, small_template):
        text = build_plan(small_template).preview()
        assert 'PLAN: small (4 operations)' in text
        assert "create_or_update Microsoft.KeyVault/vaults/secrets@2023-07-01 'demo-kv/storage-key'" in text
        assert 'deferred properties.blob <- ${storage.properties.primaryEndpoints.blob}' in text
        assert 'after: storage, vault' in text
