"""Tests for orchestrator.reconciler module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import UnresolvedReferenceError, ValidationError
from expressions import UNKNOWN
from orchestrator.graph import ResourceGraph
from orchestrator.reconciler import Diff, Reconciler, ResourceChange
from orchestrator.state import ResourceState, StateSnapshot
from providers.base import ProviderRegistry
from providers.null import NullProvider

from conftest import RecordingProvider, converged_snapshot, make_declarations, make_resource, three_tier


def _graph(resources, **sections):
    return ResourceGraph.build(make_declarations(resources, **sections))


def _actions(diff):
    return {c.address: c.action for c in diff.changes}


class TestResourceChange:
    """Tests for ResourceChange and Diff containers."""

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            ResourceChange(address='t.a', type='t', action='rebuild')

    def test_to_dict_renders_unknown(self):
        change = ResourceChange(address='t.a', type='t', action='create',
                                desired={'x': UNKNOWN, 'y': 1})
        assert change.to_dict()['desired'] == {'x': '(known after apply)', 'y': 1}

    def test_deposed_key(self):
        change = ResourceChange(address='t.a', type='t', action='destroy', deposed=True)
        assert change.key == 't.a (deposed)'
        assert change.to_dict()['deposed'] is True

    def test_diff_summary(self):
        diff = Diff(changes=[
            ResourceChange(address='t.a', type='t', action='create'),
            ResourceChange(address='t.b', type='t', action='no-op'),
            ResourceChange(address='t.c', type='t', action='create'),
        ])
        assert diff.summary()['create'] == 2
        assert diff.summary()['no-op'] == 1
        assert [c.address for c in diff.actionable] == ['t.a', 't.c']
        assert diff.get('t.b').action == 'no-op'
        assert diff.get('t.b', deposed=True) is None


class TestDiff:
    """Tests for Reconciler.diff() without drift detection."""

    def test_empty_state_creates_everything(self):
        graph = _graph(three_tier())
        diff = Reconciler(graph, StateSnapshot.empty()).diff()
        assert [(c.address, c.action) for c in diff.changes] == [
            ('test_resource.network', 'create'),
            ('test_resource.database', 'create'),
            ('test_resource.app', 'create'),
        ]
        database = diff.get('test_resource.database')
        assert database.desired['network_id'] is UNKNOWN
        assert database.desired['size'] == 'small'
        assert database.prior is None

    def test_converged_is_noop(self):
        graph = _graph(three_tier())
        diff = Reconciler(graph, converged_snapshot(graph)).diff()
        assert set(_actions(diff).values()) == {'no-op'}
        assert not diff.has_changes

    def test_leaf_attribute_change_updates_only_leaf(self):
        graph = _graph(three_tier())
        snapshot = converged_snapshot(graph)
        changed = _graph(three_tier(app={'image': 'app:2'}))
        diff = Reconciler(changed, snapshot).diff()
        assert _actions(diff) == {
            'test_resource.network': 'no-op',
            'test_resource.database': 'no-op',
            'test_resource.app': 'update',
        }
        app = diff.get('test_resource.app')
        assert app.changed == ['image']
        assert app.desired['db'] == 'database.internal'
        assert app.prior['image'] == 'app:1'

    def test_producer_update_makes_outputs_unknown(self):
        graph = _graph(three_tier())
        snapshot = converged_snapshot(graph)
        diff = Reconciler(_graph(three_tier(network={'cidr': '10.1.0.0/16'})), snapshot).diff()
        assert diff.get('test_resource.network').action == 'update'
        database = diff.get('test_resource.database')
        assert database.action == 'update'
        assert database.desired['network_id'] is UNKNOWN

    def test_producer_update_passes_input_values(self):
        resources = [
            make_resource('a', cidr='10.0.0.0/16'),
            make_resource('b', cidr='${test_resource.a.cidr}'),
        ]
        snapshot = converged_snapshot(_graph(resources))
        resources[0]['attributes']['cidr'] = '10.9.0.0/16'
        diff = Reconciler(_graph(resources), snapshot).diff()
        b = diff.get('test_resource.b')
        assert b.action == 'update'
        assert b.desired['cidr'] == '10.9.0.0/16'

    def test_force_new_attribute_replaces(self):
        provider = RecordingProvider(force_new=('size',))
        registry = ProviderRegistry([provider])
        graph = _graph(three_tier())
        snapshot = converged_snapshot(graph)
        changed = _graph(three_tier(database={'size': 'large'}))
        diff = Reconciler(changed, snapshot, registry).diff(refresh=False)
        database = diff.get('test_resource.database')
        assert database.action == 'replace'
        assert database.reason == 'size forces replacement'
        app = diff.get('test_resource.app')
        assert app.action == 'update'
        assert app.desired['db'] is UNKNOWN

    def test_replace_on_change_lifecycle(self):
        resources = [make_resource('a', image='v1', lifecycle={'replace_on_change': ['image']})]
        snapshot = converged_snapshot(_graph(resources))
        resources[0]['attributes']['image'] = 'v2'
        change = Reconciler(_graph(resources), snapshot).diff().get('test_resource.a')
        assert change.action == 'replace'
        assert change.changed == ['image']

    def test_ignore_changes(self):
        resources = [make_resource('a', image='v1', lifecycle={'ignore_changes': ['image']})]
        snapshot = converged_snapshot(_graph(resources))
        resources[0]['attributes']['image'] = 'v2'
        assert Reconciler(_graph(resources), snapshot).diff().get('test_resource.a').action == 'no-op'

    def test_removed_attribute_is_a_change(self):
        resources = [make_resource('a', image='v1', extra='x')]
        snapshot = converged_snapshot(_graph(resources))
        del resources[0]['attributes']['extra']
        change = Reconciler(_graph(resources), snapshot).diff().get('test_resource.a')
        assert change.action == 'update'
        assert change.changed == ['extra']

    def test_tainted_replaces(self):
        graph = _graph(three_tier())
        snapshot = converged_snapshot(graph)
        entry = snapshot.get('test_resource.database')
        snapshot = snapshot.with_resource(entry.replace(status='tainted'))
        diff = Reconciler(graph, snapshot).diff()
        assert diff.get('test_resource.database').action == 'replace'
        assert diff.get('test_resource.database').reason == 'tainted'
        assert diff.get('test_resource.app').action == 'update'

    def test_type_change_replaces(self):
        graph = _graph([make_resource('a')])
        snapshot = StateSnapshot.empty().with_resource(ResourceState(
            address='test_resource.a', type='legacy_resource', inputs={'tag': 'a'},
            outputs={'id': 'old'}))
        change = Reconciler(graph, snapshot).diff().get('test_resource.a')
        assert change.action == 'replace'
        assert 'legacy_resource' in change.reason

    def test_removed_resource_destroyed_after_declared(self):
        full = _graph(three_tier())
        snapshot = converged_snapshot(full)
        diff = Reconciler(_graph(three_tier()[:2]), snapshot).diff()
        assert diff.changes[-1].address == 'test_resource.app'
        assert diff.changes[-1].action == 'destroy'
        assert diff.changes[-1].reason == 'no longer declared'
        assert diff.changes[-1].prior['image'] == 'app:1'

    def test_destroy_all(self):
        graph = _graph(three_tier())
        diff = Reconciler(graph, converged_snapshot(graph)).diff(destroy=True)
        assert set(_actions(diff).values()) == {'destroy'}
        assert len(diff.changes) == 3

    def test_deposed_instance_destroyed(self):
        graph = _graph([make_resource('a')])
        snapshot = converged_snapshot(graph)
        entry = snapshot.get('test_resource.a')
        snapshot = snapshot.with_resource(entry.replace(deposed={'id': 'old-id'}))
        diff = Reconciler(graph, snapshot).diff()
        assert diff.get('test_resource.a').action == 'no-op'
        deposed = diff.get('test_resource.a', deposed=True)
        assert deposed.action == 'destroy'
        assert diff.has_changes

    def test_prevent_destroy_blocks_replace(self):
        resources = [make_resource('a', lifecycle={'prevent_destroy': True})]
        graph = _graph(resources)
        snapshot = converged_snapshot(graph)
        snapshot = snapshot.with_resource(snapshot.get('test_resource.a').replace(status='tainted'))
        with pytest.raises(ValidationError, match='prevent_destroy'):
            Reconciler(graph, snapshot).diff()

    def test_prevent_destroy_blocks_destroy_plan(self):
        graph = _graph([make_resource('a', lifecycle={'prevent_destroy': True})])
        with pytest.raises(ValidationError, match=r'test_resource.a \(destroy\)'):
            Reconciler(graph, converged_snapshot(graph)).diff(destroy=True)

    def test_prevent_destroy_allows_update(self):
        resources = [make_resource('a', image='v1', lifecycle={'prevent_destroy': True})]
        snapshot = converged_snapshot(_graph(resources))
        resources[0]['attributes']['image'] = 'v2'
        assert Reconciler(_graph(resources), snapshot).diff().get('test_resource.a').action == 'update'

    def test_missing_snapshot_attribute(self):
        resources = [make_resource('a'), make_resource('b', x='${test_resource.a.nope}')]
        graph = _graph(resources)
        snapshot = StateSnapshot.empty().with_resource(ResourceState(
            address='test_resource.a', type='test_resource', inputs={'tag': 'a'},
            outputs={'id': 'a-id'}))
        with pytest.raises(UnresolvedReferenceError, match='test_resource.a.nope'):
            Reconciler(graph, snapshot).diff()


class TestDrift:
    """Tests for drift detection."""

    @pytest.fixture
    def setup(self, provider, registry):
        graph = _graph(three_tier())
        snapshot = converged_snapshot(graph, provider)
        return graph, snapshot

    def test_no_drift(self, setup, provider, registry):
        graph, snapshot = setup
        diff = Reconciler(graph, snapshot, registry).diff()
        assert diff.drift == []
        assert sorted(provider.ops('read')) == ['app', 'database', 'network']

    def test_modified(self, setup, provider, registry):
        graph, snapshot = setup
        provider.objects['app-id']['endpoint'] = 'elsewhere'
        drift = Reconciler(graph, snapshot, registry).detect_drift()
        assert len(drift) == 1
        assert drift[0].address == 'test_resource.app'
        assert drift[0].kind == 'modified'
        assert drift[0].changed == ['endpoint']
        assert drift[0].actual['endpoint'] == 'elsewhere'

    def test_deleted(self, setup, provider, registry):
        graph, snapshot = setup
        del provider.objects['database-id']
        drift = Reconciler(graph, snapshot, registry).detect_drift()
        assert [(d.address, d.kind) for d in drift] == [('test_resource.database', 'deleted')]
        assert drift[0].to_dict()['actual'] is None

    def test_drift_does_not_change_actions(self, setup, provider, registry):
        graph, snapshot = setup
        del provider.objects['database-id']
        diff = Reconciler(graph, snapshot, registry).diff()
        assert set(_actions(diff).values()) == {'no-op'}
        assert len(diff.drift) == 1

    def test_read_failure_is_not_drift(self, setup, provider, registry):
        graph, snapshot = setup
        provider.fail.add(('read', 'app'))
        del provider.objects['app-id']
        assert Reconciler(graph, snapshot, registry).detect_drift() == []

    def test_refresh_disabled(self, setup, provider, registry):
        graph, snapshot = setup
        del provider.objects['app-id']
        diff = Reconciler(graph, snapshot, registry).diff(refresh=False)
        assert diff.drift == []
        assert provider.ops('read') == []

    def test_unregistered_type_skipped(self, setup):
        graph, snapshot = setup
        registry = ProviderRegistry([NullProvider()])
        assert Reconciler(graph, snapshot, registry).detect_drift() == []
