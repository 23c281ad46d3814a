"""Tests for engine.executor module.

Uses the in-memory FakeProvider to test ordering, failure propagation,
cancellation and state commits without a real API.
"""

import datetime
import threading

import pytest

from engine.errors import ProviderError
from engine.executor import (
    BLOCKED,
    FAILED,
    SKIPPED,
    SUCCEEDED,
    ActionReport,
    PlanExecutor,
)
from engine.planner import DESTROY, Planner, UPDATE

CHAIN_AND_SIDE = {
    'name': 's',
    'resources': [
        {'name': 'a', 'kind': 'thing', 'attributes': {'name': 'a'}},
        {'name': 'b', 'kind': 'thing', 'attributes': {'name': 'b', 'parent': '${thing.a.id}'}},
        {'name': 'c', 'kind': 'thing', 'attributes': {'name': 'c', 'parent': '${thing.b.id}'}},
        {'name': 'side', 'kind': 'thing', 'attributes': {'name': 'side'}},
    ],
}


class TestActionReport:
    """Tests for ActionReport dataclass."""

    def test_lifecycle(self):
        report = ActionReport('thing.a', 'create')
        report.start()
        report.succeed()
        assert report.status == SUCCEEDED
        assert report.duration is not None

    def test_fail_to_dict(self):
        report = ActionReport('thing.a', 'create')
        report.start()
        report.fail('quota exceeded', 'E400')
        d = report.to_dict()
        assert d['status'] == FAILED
        assert d['error'] == 'quota exceeded'
        assert d['code'] == 'E400'

    def test_block(self):
        report = ActionReport('thing.b', 'create')
        report.block('thing.a')
        assert report.status == BLOCKED
        assert 'thing.a' in report.error


class TestApply:
    """Successful runs."""

    def test_create_wires_provider_ids(self, engine, provider, ab_stack):
        plan, result = engine.apply(ab_stack)
        assert result.success
        snapshot = engine.store.snapshot()
        a_id = snapshot.get('thing.a').resource_id
        assert snapshot.get('thing.b').config == {'name': 'b-one', 'parent': a_id}
        assert provider.resources[snapshot.get('thing.b').resource_id]['attributes']['parent'] == a_id

    def test_state_records_dependencies_and_position(self, engine, ab_stack):
        engine.apply(ab_stack)
        record = engine.store.get('thing.b')
        assert record.dependencies == ['thing.a']
        assert record.position == 1

    def test_dependency_committed_before_dependent_dispatched(self, engine, provider, ab_stack):
        seen = []
        provider.on('create', 'b-one', lambda: seen.append('thing.a' in engine.store.snapshot()))
        engine.apply(ab_stack)
        assert seen == [True]

    def test_second_apply_makes_no_calls(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        calls = len(provider.calls)
        plan, result = engine.apply(ab_stack)
        assert result.success
        assert len(provider.calls) == calls

    def test_update_in_place(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        b_id = engine.store.get('thing.b').resource_id
        plan, result = engine.apply(ab_stack, {'suffix': 'two'})
        assert plan.get('thing.b').action == UPDATE
        assert result.success
        assert provider.calls[-1] == ('update', 'b-one')
        assert engine.store.get('thing.b').resource_id == b_id
        assert engine.store.get('thing.b').config['name'] == 'b-two'

    def test_independent_actions_run_concurrently(self, engine, provider):
        barrier = threading.Barrier(2, timeout=5)
        data = {'name': 's', 'resources': [
            {'name': 'x', 'kind': 'thing', 'attributes': {'name': 'x'}},
            {'name': 'y', 'kind': 'thing', 'attributes': {'name': 'y'}},
        ]}
        provider.on('create', 'x', barrier.wait)
        provider.on('create', 'y', barrier.wait)
        plan, result = engine.apply(data, parallelism=2)
        assert result.success

    def test_date_attribute_is_recorded(self, engine, provider):
        data = {'name': 's', 'resources': [
            {'name': 'a', 'kind': 'thing', 'attributes': {'name': 'a', 'expires': datetime.date(2030, 1, 1)}},
        ]}
        plan, result = engine.apply(data)
        assert result.success
        assert engine.store.get('thing.a').config['expires'] == '2030-01-01'
        assert [a.action for a in engine.plan(data).actions] == ['noop']

    def test_request_tokens_are_unique_per_action(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        assert len(set(provider.tokens)) == 2

    def test_invalid_parallelism(self, engine, ab_stack):
        plan = engine.plan(ab_stack)
        with pytest.raises(ValueError):
            PlanExecutor(plan, engine.store, engine.provider, parallelism=0)


class TestFailures:
    """Failure propagation and partial state."""

    def test_failed_action_blocks_dependents_only(self, engine, provider):
        provider.fail('create', 'a')
        plan, result = engine.apply(CHAIN_AND_SIDE)
        assert not result.success
        assert result.statuses == {
            'thing.a': FAILED,
            'thing.b': BLOCKED,
            'thing.c': BLOCKED,
            'thing.side': SUCCEEDED,
        }
        assert result.reports['thing.a'].code == 'E400'
        assert set(engine.store.snapshot().records) == {'thing.side'}
        assert provider.names() == {'side'}

    def test_update_failure_blocks_dependent(self, engine, provider, ab_stack):
        ab_stack['resources'][1]['attributes']['label'] = '${thing.a.name}'
        engine.apply(ab_stack)
        ab_stack['resources'][0]['attributes']['size'] = 2
        ab_stack['resources'][1]['attributes']['label'] = '${thing.a.size}'
        provider.fail('update', 'a')
        plan, result = engine.apply(ab_stack)
        assert result.statuses == {'thing.a': FAILED, 'thing.b': BLOCKED}
        assert 'size' not in engine.store.get('thing.a').config

    def test_rerun_after_partial_failure_converges(self, engine, provider):
        provider.fail('create', 'a')
        engine.apply(CHAIN_AND_SIDE)
        provider.failures.clear()
        plan, result = engine.apply(CHAIN_AND_SIDE)
        assert result.success
        assert [a.action for a in plan.actions].count('noop') == 1
        assert provider.calls.count(('create', 'side')) == 1
        assert set(engine.store.snapshot().records) == {'thing.a', 'thing.b', 'thing.c', 'thing.side'}

    def test_function_error_on_computed_value_fails_action(self, engine, provider, monkeypatch):
        computed = provider._computed
        monkeypatch.setattr(provider, '_computed',
                            lambda rid, attributes: {**computed(rid, attributes), 'zones': ['1']})
        data = {'name': 's', 'resources': [
            {'name': 'a', 'kind': 'thing', 'attributes': {'name': 'a'}},
            {'name': 'b', 'kind': 'thing', 'attributes': {
                'name': 'b', 'zoned': '${contains({z = 1}, thing.a.zones)}',
            }},
            {'name': 'c', 'kind': 'thing', 'attributes': {'name': 'c', 'p': '${thing.b.id}'}},
        ]}
        plan, result = engine.apply(data)
        assert result.statuses == {'thing.a': SUCCEEDED, 'thing.b': FAILED, 'thing.c': BLOCKED}
        assert 'contains()' in result.reports['thing.b'].error
        assert set(engine.store.snapshot().records) == {'thing.a'}

    def test_unexpected_exception_is_contained(self, engine, provider, ab_stack):
        def _boom():
            raise RuntimeError('socket exploded')
        provider.on('create', 'a', _boom)
        plan, result = engine.apply(ab_stack)
        assert result.reports['thing.a'].status == FAILED
        assert 'socket exploded' in result.reports['thing.a'].error
        assert result.reports['thing.b'].status == BLOCKED


class TestCancellation:
    """Cancellation stops dispatch, in-flight work completes."""

    def test_cancel_before_start(self, engine, provider, ab_stack):
        event = threading.Event()
        event.set()
        plan, result = engine.apply(ab_stack, cancel_event=event)
        assert result.cancelled
        assert set(result.statuses.values()) == {SKIPPED}
        assert provider.calls == []

    def test_cancel_during_apply(self, engine, provider, ab_stack):
        event = threading.Event()
        provider.on('create', 'a', event.set)
        plan, result = engine.apply(ab_stack, cancel_event=event)
        assert result.statuses == {'thing.a': SUCCEEDED, 'thing.b': SKIPPED}
        assert 'thing.a' in engine.store.snapshot()


class TestConflicts:
    """Compare-and-set on state versions."""

    def test_concurrent_state_change_halts_run(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        plan = engine.plan(ab_stack, {'suffix': 'two'})
        record = engine.store.get('thing.b')
        engine.store.put('thing.b', kind='thing', config=record.config, attributes=record.attributes,
                         dependencies=record.dependencies, position=record.position,
                         expected_version=record.version)

        result = PlanExecutor(plan, engine.store, provider, wait_interval=0.05).run()
        assert result.conflict is not None
        assert result.conflict.code == 'E301'
        assert result.reports['thing.b'].status == FAILED
        assert ('update', 'b-one') not in provider.calls


class TestDestroy:
    """Destroy plans."""

    def test_destroy_everything(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        plan, result = engine.destroy()
        assert result.success
        assert [a.action for a in plan.actions] == [DESTROY, DESTROY]
        assert provider.calls[-2:] == [('delete', 'b-one'), ('delete', 'a')]
        assert engine.store.snapshot().records == {}
        assert provider.resources == {}

    def test_destroy_is_idempotent_when_remote_is_gone(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        provider.resources.clear()
        plan, result = engine.destroy()
        assert result.success
        assert engine.store.snapshot().records == {}

    def test_failed_delete_keeps_record_and_blocks_dependency(self, engine, provider, ab_stack):
        engine.apply(ab_stack)
        provider.fail('delete', 'b-one')
        plan, result = engine.destroy()
        assert result.statuses == {'thing.b': FAILED, 'thing.a': BLOCKED}
        assert set(engine.store.snapshot().records) == {'thing.a', 'thing.b'}

    def test_destroy_plan_from_empty_state(self, engine):
        plan = Planner(engine.store.snapshot()).destroy_plan()
        assert plan.actions == []
        assert not plan.has_changes
