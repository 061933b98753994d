"""Tests for template_opr.state module."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from template_opr.state import ExecutionState, ResourceState, RuntimeAttributes


class TestResourceState:
    """Tests for ResourceState dataclass."""

    def test_defaults(self):
        state = ResourceState(symbol='storage')
        assert state.status == 'pending'
        assert state.error is None
        assert state.duration is None

    def test_start_and_complete(self):
        state = ResourceState(symbol='storage')
        state.start()
        assert state.status == 'running'
        state.complete()
        assert state.status == 'completed'
        assert state.duration is not None
        assert state.duration >= 0

    def test_fail(self):
        state = ResourceState(symbol='storage')
        state.start()
        state.fail('quota exceeded')
        assert state.status == 'failed'
        assert state.error == 'quota exceeded'
        assert state.completed_at is not None

    def test_skip_records_reason(self):
        state = ResourceState(symbol='site')
        state.skip('halted after storage failed')
        assert state.status == 'skipped'
        assert state.error == 'halted after storage failed'

    def test_to_dict_minimal(self):
        assert ResourceState(symbol='a').to_dict() == {'symbol': 'a', 'status': 'pending'}

    def test_from_dict(self):
        state = ResourceState.from_dict({
            'symbol': 'vault',
            'name': 'demo-kv',
            'type': 'Microsoft.KeyVault/vaults@2023-07-01',
            'status': 'completed',
            'started_at': 1000.0,
            'completed_at': 1002.5,
        })
        assert state.name == 'demo-kv'
        assert state.duration == 2.5


class TestRuntimeAttributes:
    """Tests for the append-only runtime attribute table."""

    def test_record_and_read(self):
        table = RuntimeAttributes()
        table.record('storage', {'id': 'x'})
        assert table['storage'] == {'id': 'x'}
        assert 'storage' in table
        assert len(table) == 1

    def test_record_twice_rejected(self):
        table = RuntimeAttributes()
        table.record('storage', {'id': 'x'})
        with pytest.raises(ValueError, match='already recorded'):
            table.record('storage', {'id': 'y'})
        assert table['storage'] == {'id': 'x'}

    def test_iteration_order(self):
        table = RuntimeAttributes()
        for symbol in ('b', 'a', 'c'):
            table.record(symbol, {})
        assert list(table) == ['b', 'a', 'c']

    def test_record_copies(self):
        attrs = {'id': 'x'}
        table = RuntimeAttributes()
        table.record('a', attrs)
        attrs['id'] = 'changed'
        assert table['a'] == {'id': 'x'}


class TestExecutionState:
    """Tests for ExecutionState."""

    def _state(self, state_dir):
        state = ExecutionState('webapp', state_dir)
        for symbol in ('storage', 'vault', 'site'):
            state.add_resource(symbol, name=f'{symbol}-1', type='X/y@1')
        return state

    def test_pending(self, state_dir):
        state = self._state(state_dir)
        state.get_resource('storage').start()
        state.get_resource('storage').complete()
        assert state.pending == ['vault', 'site']

    def test_skip_remaining(self, state_dir):
        state = self._state(state_dir)
        state.get_resource('storage').start()
        state.get_resource('storage').fail('boom')
        assert state.skip_remaining('halted') == ['vault', 'site']
        assert state.get_resource('storage').status == 'failed'

    def test_cancel_remaining_includes_running(self, state_dir):
        state = self._state(state_dir)
        state.get_resource('storage').start()
        assert state.cancel_remaining() == ['storage', 'vault', 'site']

    def test_success(self, state_dir):
        state = self._state(state_dir)
        assert state.success is False
        for rs in state.resources.values():
            rs.start()
            rs.complete()
        assert state.success is True
        state.error = 'outputs: bad'
        assert state.success is False

    def test_get_unknown_resource(self, state_dir):
        with pytest.raises(KeyError):
            self._state(state_dir).get_resource('missing')

    def test_save_default_path(self, state_dir):
        state = self._state(state_dir)
        path = state.save()
        assert path == state_dir / 'webapp' / 'execution.json'
        data = json.loads(path.read_text())
        assert data['template'] == 'webapp'
        assert list(data['resources']) == ['storage', 'vault', 'site']

    def test_save_load(self, state_dir):
        state = self._state(state_dir)
        state.start()
        state.get_resource('storage').start()
        state.get_resource('storage').complete()
        state.runtime.record('storage', {'id': '/stg', 'keys': [{'value': 'k'}]})
        state.get_resource('vault').start()
        state.get_resource('vault').fail('denied')
        state.skip_remaining('halted')
        state.error = 'vault: denied'
        state.outputs = {}
        state.finish()
        state.save()

        loaded = ExecutionState.load('webapp', state_dir)
        assert loaded.error == 'vault: denied'
        assert loaded.materialized == ['storage']
        assert loaded.runtime['storage']['id'] == '/stg'
        assert loaded.get_resource('vault').error == 'denied'
        assert loaded.get_resource('site').status == 'skipped'
        assert loaded.started_at == state.started_at

    def test_secrets_redacted_on_save(self, state_dir):
        state = ExecutionState('webapp', state_dir, secrets=['hunter2-pass'])
        state.add_resource('sql', name='sql-1', type='X/y@1')
        state.runtime.record('sql', {'properties': {'password': 'hunter2-pass'}})
        state.outputs = {'conn': 'user=admin;password=hunter2-pass'}
        state.error = 'sql: rejected hunter2-pass'
        path = state.save()

        text = path.read_text()
        assert 'hunter2-pass' not in text
        data = json.loads(text)
        assert data['runtime']['sql']['properties']['password'] == '***'
        assert data['outputs']['conn'] == 'user=admin;password=***'
        # In-memory table keeps real values for later substitution
        assert state.runtime['sql']['properties']['password'] == 'hunter2-pass'

    def test_load_missing(self, state_dir):
        with pytest.raises(FileNotFoundError):
            ExecutionState.load('nope', state_dir)

    def test_explicit_path(self, tmp_path):
        state = ExecutionState('webapp')
        path = state.save(tmp_path / 'custom.json')
        loaded = ExecutionState.load('webapp', path=path)
        assert loaded.template_name == 'webapp'
