"""Shared pytest fixtures for iac-engine tests."""

import itertools
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ProviderError
from declarations import Declarations
from expressions import resolve
from orchestrator.state import LocalStateBackend, MemoryStateBackend, ResourceState, StateSnapshot
from providers.base import ProviderRegistry, ResourceSchema
from providers.null import NullProvider


class RecordingProvider:
    """In-memory provider that records calls and can inject failures.

    Every resource carries a 'tag' attribute (the declaration factory sets it
    to the resource name) so calls can be matched to resources.

    Attributes:
        calls: (operation, tag) in call order
        objects: id -> provider state of live objects (edit to simulate drift)
        fail: (operation, tag) pairs that raise ProviderError
        hooks: (operation, tag) -> callable run inside the call
        delay: Seconds each call sleeps (to observe concurrency)
        max_active: Highest number of simultaneous calls seen
    """

    def __init__(self, type_name: str = 'test_resource', force_new: tuple = (),
                 delay: float = 0.0):
        self.schema = ResourceSchema(
            type_name=type_name,
            outputs=('id', 'tag', 'endpoint'),
            force_new=force_new,
            allow_extra=True,
        )
        self.calls: list[tuple[str, Optional[str]]] = []
        self.objects: dict[str, dict] = {}
        self.fail: set[tuple[str, str]] = set()
        self.hooks: dict[tuple[str, str], Callable] = {}
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _call(self, operation: str, tag: Optional[str]) -> None:
        with self._lock:
            self.calls.append((operation, tag))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if hook := self.hooks.get((operation, tag)):
                hook()
            if (operation, tag) in self.fail:
                raise ProviderError(f"injected {operation} failure for {tag}")
        finally:
            with self._lock:
                self.active -= 1

    def ops(self, operation: Optional[str] = None) -> list:
        """Tags called, optionally filtered by operation."""
        if operation is None:
            return list(self.calls)
        return [tag for op, tag in self.calls if op == operation]

    def create(self, attrs: dict) -> dict:
        tag = attrs.get('tag')
        self._call('create', tag)
        obj_id = f'{self.schema.type_name}-{next(self._ids)}'
        state = {'id': obj_id, 'tag': tag, 'endpoint': f'{tag}.internal'}
        with self._lock:
            self.objects[obj_id] = dict(state)
        return state

    def update(self, attrs: dict, state: dict) -> dict:
        tag = attrs.get('tag')
        self._call('update', tag)
        new_state = dict(state, tag=tag)
        with self._lock:
            self.objects[state['id']] = dict(new_state)
        return new_state

    def destroy(self, state: dict) -> None:
        self._call('destroy', state.get('tag'))
        with self._lock:
            self.objects.pop(state['id'], None)

    def read(self, state: dict) -> Optional[dict]:
        self._call('read', state.get('tag'))
        with self._lock:
            obj = self.objects.get(state['id'])
        return dict(obj) if obj is not None else None


def make_resource(name: str, type: str = 'test_resource', depends_on: Optional[list] = None,
                  lifecycle: Optional[dict] = None, **attributes) -> dict:
    """Resource declaration dict with tag=name."""
    data: dict = {'name': name, 'type': type, 'attributes': {'tag': name, **attributes}}
    if depends_on:
        data['depends_on'] = depends_on
    if lifecycle:
        data['lifecycle'] = lifecycle
    return data


def make_declarations(resources: list, **sections) -> Declarations:
    return Declarations.from_dict({'schema_version': 1, 'name': 'test',
                                   'resources': resources, **sections})


def three_tier(**overrides) -> list:
    """network -> database -> app, the canonical dependency chain."""
    network = make_resource('network', cidr='10.0.0.0/16')
    database = make_resource('database', network_id='${test_resource.network.id}', size='small')
    app = make_resource('app', db='${test_resource.database.endpoint}', image='app:1')
    for res in (network, database, app):
        res['attributes'].update(overrides.get(res['name'], {}))
    return [network, database, app]


def converged_snapshot(graph, provider: Optional[RecordingProvider] = None) -> StateSnapshot:
    """Snapshot as if every node of graph had been applied.

    Outputs follow RecordingProvider's shape (id '<name>-id'); when a
    provider is given its live objects are seeded to match.
    """
    snapshot = StateSnapshot.empty()
    for node in graph.topological_order():
        inputs = resolve(node.attributes, snapshot.attribute)
        outputs = {'id': f'{node.name}-id', 'tag': inputs.get('tag'),
                   'endpoint': f"{inputs.get('tag')}.internal"}
        if provider is not None:
            provider.objects[outputs['id']] = dict(outputs)
        snapshot = snapshot.with_resource(ResourceState(
            address=node.address, type=node.type, inputs=inputs, outputs=outputs,
            dependencies=tuple(graph.dependencies(node.address)),
        ))
    return snapshot


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry([provider, NullProvider()])


@pytest.fixture
def memory_backend():
    return MemoryStateBackend()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / '.states' / 'state.json'


@pytest.fixture
def local_backend(state_path):
    return LocalStateBackend(state_path)


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch):
    """Keep IAC_ENGINE_* settings from the developer's shell out of tests."""
    for name in ('IAC_ENGINE_CONFIG', 'IAC_ENGINE_STATE',
                 'IAC_ENGINE_CONCURRENCY', 'IAC_ENGINE_TIMEOUT'):
        monkeypatch.delenv(name, raising=False)
