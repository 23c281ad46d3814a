"""Tests for engine.planner module."""

import json

import pytest

from engine.errors import ConflictError, ValidationError
from engine.expressions import UNKNOWN
from engine.planner import CREATE, DESTROY, NOOP, UPDATE, Plan, PlanAction, Planner, detect_drift
from engine.state import StateRecord, StateSnapshot


def _actions(plan):
    return [(a.action, a.address) for a in plan.actions]


class TestPlanning:
    """Diffing materialized resources against state."""

    def test_first_plan_creates_everything(self, engine, ab_stack):
        plan = engine.plan(ab_stack)
        assert _actions(plan) == [(CREATE, 'thing.a'), (CREATE, 'thing.b')]
        assert plan.get('thing.b').dependencies == ['thing.a']
        assert plan.get('thing.b').desired['parent'] is UNKNOWN

    def test_second_plan_is_all_noop(self, engine, ab_stack):
        engine.apply(ab_stack)
        plan = engine.plan(ab_stack)
        assert _actions(plan) == [(NOOP, 'thing.a'), (NOOP, 'thing.b')]
        assert not plan.has_changes

    def test_change_to_dependent_only(self, engine, ab_stack):
        engine.apply(ab_stack)
        plan = engine.plan(ab_stack, {'suffix': 'two'})
        assert _actions(plan) == [(NOOP, 'thing.a'), (UPDATE, 'thing.b')]
        assert plan.get('thing.b').changed_attributes == ['name']

    def test_removed_definition_is_destroyed(self, engine, ab_stack):
        engine.apply(ab_stack)
        del ab_stack['resources'][1]
        ab_stack['outputs'] = {}
        plan = engine.plan(ab_stack)
        assert _actions(plan) == [(NOOP, 'thing.a'), (DESTROY, 'thing.b')]

    def test_count_zero_destroys(self, engine):
        data = {
            'name': 's',
            'variables': {'on': {'type': 'bool', 'default': True}},
            'resources': [{'name': 'x', 'kind': 'thing', 'count': '${var.on}', 'attributes': {'name': 'x'}}],
        }
        engine.apply(data)
        plan = engine.plan(data, {'on': 'false'})
        assert _actions(plan) == [(DESTROY, 'thing.x')]

    def test_kind_change_is_rejected(self, engine, ab_stack):
        engine.store.put('thing.a', kind='legacy', config={}, attributes={'id': 'x'},
                         dependencies=[], position=0, expected_version=None)
        with pytest.raises(ValidationError) as exc:
            engine.plan(ab_stack)
        assert exc.value.code == 'E105'

    def test_destroys_run_dependents_first(self, engine):
        data = {'name': 's', 'resources': [
            {'name': 'a', 'kind': 'thing', 'attributes': {'name': 'a'}},
            {'name': 'b', 'kind': 'thing', 'attributes': {'name': 'b', 'p': '${thing.a.id}'}},
            {'name': 'c', 'kind': 'thing', 'attributes': {'name': 'c', 'p': '${thing.b.id}'}},
        ]}
        engine.apply(data)
        plan = engine.plan({'name': 's'})
        assert _actions(plan) == [(DESTROY, 'thing.c'), (DESTROY, 'thing.b'), (DESTROY, 'thing.a')]
        assert plan.get('thing.a').dependencies == ['thing.b']

    def test_destroy_waits_for_kept_dependent(self, engine):
        data = {
            'name': 's',
            'variables': {'on': {'type': 'bool', 'default': True}},
            'resources': [
                {'name': 'ai', 'kind': 'thing', 'count': '${var.on}', 'attributes': {'name': 'ai'}},
                {'name': 'app', 'kind': 'thing', 'attributes': {
                    'name': 'app', 'env': {'AI': '${thing.ai.endpoint}'},
                }},
            ],
        }
        engine.apply(data)
        plan = engine.plan(data, {'on': 'false'})
        assert _actions(plan) == [(UPDATE, 'thing.app'), (DESTROY, 'thing.ai')]
        assert plan.get('thing.ai').dependencies == ['thing.app']

    def test_destroy_plan_reverses_create_order(self, engine):
        data = {'name': 's', 'resources': [
            {'name': n, 'kind': 'thing', 'attributes': {'name': n}} for n in ('c', 'a', 'b')
        ]}
        engine.apply(data)
        plan = Planner(engine.store.snapshot()).destroy_plan()
        assert plan.destroy
        assert [a.address for a in plan.actions] == ['thing.b', 'thing.a', 'thing.c']


class TestPlanFile:
    """Plan serialization and staleness."""

    def _plan(self):
        return Plan(
            actions=[
                PlanAction('thing.a', CREATE, 'thing', desired={'name': 'a'}),
                PlanAction('thing.b', CREATE, 'thing', desired={'p': UNKNOWN}, dependencies=['thing.a'], position=1),
            ],
            fingerprint='fp',
            state_serial=3,
        )

    def test_save_and_load(self, tmp_path):
        path = self._plan().save(tmp_path / 'plan.json')
        loaded = Plan.load(path)
        assert loaded.fingerprint == 'fp'
        assert loaded.get('thing.b').desired['p'] is UNKNOWN
        assert loaded.get('thing.b').dependencies == ['thing.a']

    def test_unknown_is_encoded(self, tmp_path):
        path = self._plan().save(tmp_path / 'plan.json')
        data = json.loads(path.read_text())
        assert data['actions'][1]['desired'] == {'p': {'__unknown__': True}}

    def test_load_rejects_garbage(self, tmp_path):
        path = tmp_path / 'plan.json'
        path.write_text('nope')
        with pytest.raises(ValidationError, match='Cannot read plan file'):
            Plan.load(path)

    def test_load_rejects_other_format(self, tmp_path):
        path = tmp_path / 'plan.json'
        path.write_text(json.dumps({'format': 99}))
        with pytest.raises(ValidationError, match='Unsupported plan format'):
            Plan.load(path)

    def test_check_current(self):
        plan = self._plan()
        plan.check_current('fp', 3)
        with pytest.raises(ConflictError) as exc:
            plan.check_current('other', 3)
        assert exc.value.code == 'E303'
        with pytest.raises(ConflictError, match='state serial is 4'):
            plan.check_current('fp', 4)

    def test_format(self):
        plan = self._plan()
        text = plan.format()
        assert '  + thing.a' in text
        assert text.endswith('Plan: 2 to add, 0 to change, 0 to destroy.')

    def test_format_without_changes(self):
        plan = Plan(actions=[PlanAction('thing.a', NOOP, 'thing', desired={}, prior={})])
        assert 'No changes' in plan.format()


class TestDriftDetection:
    """detect_drift against the provider."""

    def _snapshot(self, resource_id):
        return StateSnapshot(records={'thing.a': StateRecord(
            'thing.a', 'thing', config={'name': 'a', 'size': 1}, attributes={'id': resource_id},
        )})

    def test_no_drift(self, provider):
        attributes = provider.create('thing', {'name': 'a', 'size': 1}, 'tok')
        assert detect_drift(self._snapshot(attributes['id']), provider) == []

    def test_changed_attribute(self, provider):
        attributes = provider.create('thing', {'name': 'a', 'size': 2}, 'tok')
        drift = detect_drift(self._snapshot(attributes['id']), provider)
        assert len(drift) == 1
        assert drift[0].code == 'E500'
        assert 'size' in drift[0].message

    def test_missing_remotely(self, provider):
        drift = detect_drift(self._snapshot('gone'), provider)
        assert 'no longer exists' in drift[0].message

