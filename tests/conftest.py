"""Shared pytest fixtures for iac-engine tests."""

import sys
import threading
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.errors import NotFoundError, ProviderError
from engine.executor import PlanExecutor
from engine.graph import ResourceGraph
from engine.planner import Planner
from engine.resolver import ExpressionResolver
from engine.state import StateStore
from engine.variables import VariableRegistry
from stack import Stack


class FakeProvider:
    """In-memory provider with failure injection.

    Every created resource gets computed attributes the stack cannot know
    before apply: 'id', 'fqdn' and 'endpoint'.
    """

    def __init__(self):
        self.resources: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.tokens: list[str] = []
        self.failures: dict[tuple[str, str], ProviderError] = {}
        self.hooks: dict[tuple[str, str], callable] = {}
        self._lock = threading.Lock()
        self._next = 0

    def fail(self, verb: str, name: str, error: ProviderError = None) -> None:
        """Make <verb> fail for the resource whose 'name' attribute is ``name``."""
        self.failures[(verb, name)] = error or ProviderError(f"{verb} {name} rejected: 400 quota exceeded")

    def on(self, verb: str, name: str, hook) -> None:
        """Run ``hook()`` just before <verb> completes for resource ``name``."""
        self.hooks[(verb, name)] = hook

    def _check(self, verb: str, name: str) -> None:
        if hook := self.hooks.get((verb, name)):
            hook()
        if error := self.failures.get((verb, name)):
            raise error

    def _computed(self, rid: str, attributes: dict) -> dict:
        name = attributes.get('name', rid)
        return {
            'id': rid,
            'fqdn': f'{name}.example.test',
            'endpoint': f'https://{name}.example.test/',
        }

    def name_of(self, resource_id: str) -> str:
        return self.resources[resource_id]['attributes'].get('name', resource_id)

    def create(self, kind: str, attributes: dict, token: str) -> dict:
        name = attributes.get('name', kind)
        with self._lock:
            self.calls.append(('create', name))
            self.tokens.append(token)
        self._check('create', name)
        with self._lock:
            self._next += 1
            rid = f'{kind}-{self._next}'
            self.resources[rid] = {'kind': kind, 'attributes': dict(attributes)}
        return self._computed(rid, attributes)

    def read(self, resource_id: str) -> dict:
        with self._lock:
            if resource_id not in self.resources:
                raise NotFoundError(resource_id)
            stored = self.resources[resource_id]['attributes']
        return {**stored, **self._computed(resource_id, stored)}

    def update(self, resource_id: str, attributes: dict, token: str) -> dict:
        if resource_id not in self.resources:
            raise NotFoundError(resource_id)
        name = self.name_of(resource_id)
        with self._lock:
            self.calls.append(('update', name))
            self.tokens.append(token)
        self._check('update', name)
        with self._lock:
            self.resources[resource_id]['attributes'] = dict(attributes)
        return self._computed(resource_id, attributes)

    def delete(self, resource_id: str, token: str) -> None:
        if resource_id not in self.resources:
            return
        name = self.name_of(resource_id)
        with self._lock:
            self.calls.append(('delete', name))
            self.tokens.append(token)
        self._check('delete', name)
        with self._lock:
            del self.resources[resource_id]

    def names(self) -> set[str]:
        return {r['attributes'].get('name') for r in self.resources.values()}


class EngineHarness:
    """Runs validate/plan/apply/destroy on stack dicts without the driver."""

    def __init__(self, state_path: Path, provider: FakeProvider):
        self.store = StateStore(state_path)
        self.store.initialize()
        self.provider = provider

    def build(self, data: dict, overrides: dict = None):
        stack = Stack.from_dict(data)
        variables = VariableRegistry(stack.body.variables).resolve(overrides or {})
        return ResourceGraph(stack, variables), variables

    def plan(self, data: dict, overrides: dict = None):
        graph, variables = self.build(data, overrides)
        snapshot = self.store.snapshot()
        resolved = ExpressionResolver(graph, variables, snapshot).resolve()
        return Planner(snapshot).plan(graph, resolved)

    def apply(self, data: dict, overrides: dict = None, parallelism: int = 2, cancel_event=None):
        graph, variables = self.build(data, overrides)
        snapshot = self.store.snapshot()
        resolver = ExpressionResolver(graph, variables, snapshot)
        plan = Planner(snapshot).plan(graph, resolver.resolve())
        result = PlanExecutor(plan, self.store, self.provider, resolver=resolver,
                              parallelism=parallelism, cancel_event=cancel_event,
                              wait_interval=0.05).run()
        return plan, result

    def destroy(self, parallelism: int = 2):
        plan = Planner(self.store.snapshot()).destroy_plan()
        result = PlanExecutor(plan, self.store, self.provider, parallelism=parallelism,
                              wait_interval=0.05).run()
        return plan, result


# Two resources: B reads A's provider-assigned id
AB_STACK = {
    'name': 'ab',
    'variables': {
        'suffix': {'type': 'string', 'default': 'one'},
    },
    'resources': [
        {'name': 'a', 'kind': 'thing', 'attributes': {'name': 'a'}},
        {'name': 'b', 'kind': 'thing', 'attributes': {'name': 'b-${var.suffix}', 'parent': '${thing.a.id}'}},
    ],
    'outputs': {
        'b_id': {'value': '${thing.b.id}'},
        'b_name': {'value': '${thing.b.name}'},
    },
}


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def engine(tmp_path, provider):
    return EngineHarness(tmp_path / '.state' / 'state.json', provider)


@pytest.fixture
def ab_stack():
    """Fresh copy of the two-resource stack (tests may mutate it)."""
    return yaml.safe_load(yaml.safe_dump(AB_STACK))


@pytest.fixture
def workdir(tmp_path, ab_stack):
    """Workdir with stack.yaml, settings.yaml and secrets.yaml."""
    (tmp_path / 'stack.yaml').write_text(yaml.safe_dump(ab_stack, sort_keys=False))
    (tmp_path / 'settings.yaml').write_text(
        "api_endpoint: https://provisioning.example.test\n"
        "parallelism: 2\n"
    )
    (tmp_path / 'secrets.yaml').write_text("api_token: test-token\n")
    return tmp_path
