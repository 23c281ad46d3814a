"""Tests for engine.driver module.

Runs whole lifecycle commands against a temporary workdir with the
in-memory FakeProvider injected.
"""

import yaml

import pytest

from config import load_run_config
from engine.driver import (
    APPLIED,
    DESTROYED,
    EXIT_OK,
    EXIT_PARTIAL,
    EXIT_PRECONDITION,
    EXIT_VALIDATION,
    INITIALIZED,
    PLANNED,
    UNINITIALIZED,
    VALIDATED,
    Driver,
    exit_code_for,
)
from engine.errors import ConflictError, PreconditionError, ProviderError, ValidationError
from engine.executor import BLOCKED, FAILED


@pytest.fixture
def echoed():
    return []


@pytest.fixture
def make_driver(workdir, provider, echoed):
    def _make(cli_vars=None, confirm=lambda prompt: True, with_provider=True):
        config = load_run_config(workdir, environ={})
        return Driver(
            config,
            cli_vars=cli_vars,
            provider=provider if with_provider else None,
            environ={},
            confirm=confirm,
            echo=echoed.append,
        )
    return _make


@pytest.fixture
def initialized(make_driver):
    result = make_driver().run('init')
    assert result.success
    return make_driver


class TestExitCodes:
    """Tests for exit_code_for."""

    def test_mapping(self):
        assert exit_code_for(None) == EXIT_OK
        assert exit_code_for(ValidationError('x')) == EXIT_VALIDATION
        assert exit_code_for(ConflictError('x')) == EXIT_VALIDATION
        assert exit_code_for(PreconditionError('x')) == EXIT_PRECONDITION
        assert exit_code_for(ProviderError('x')) == EXIT_PARTIAL


class TestInitValidate:
    """init and validate phases."""

    def test_init(self, make_driver, workdir):
        driver = make_driver()
        result = driver.run('init')
        assert result.success
        assert driver.furthest == INITIALIZED
        assert (workdir / '.state' / 'state.json').exists()
        assert result.payload['stack'] == 'ab'

    def test_init_with_broken_stack(self, make_driver, workdir):
        (workdir / 'stack.yaml').write_text('resources: []\n')
        result = make_driver().run('init')
        assert result.exit_code == EXIT_VALIDATION

    def test_validate(self, make_driver):
        driver = make_driver()
        result = driver.run('validate')
        assert result.success
        assert driver.furthest == VALIDATED
        assert result.payload == {'resources': 2, 'present': 2}

    def test_validate_bad_variable_stops_early(self, make_driver):
        driver = make_driver(cli_vars={'ghost': '1'})
        result = driver.run('validate')
        assert not result.success
        assert result.exit_code == EXIT_VALIDATION
        assert driver.furthest == UNINITIALIZED
        assert 'ghost' in result.message


class TestPlan:
    """plan phase."""

    def test_plan_requires_init(self, make_driver):
        result = make_driver().run('plan')
        assert result.exit_code == EXIT_PRECONDITION
        assert result.error.code == 'E601'

    def test_plan(self, initialized, provider):
        driver = initialized()
        result = driver.run('plan')
        assert driver.furthest == PLANNED
        assert result.payload['plan'].summary['create'] == 2
        assert provider.calls == []

    def test_plan_with_refresh_reports_drift(self, initialized, provider):
        initialized().run('apply', auto_approve=True)
        provider.resources.clear()
        result = initialized().run('plan', refresh=True)
        assert len(result.payload['drift']) == 2

    def test_refresh_without_endpoint_is_precondition_failure(self, initialized, workdir, echoed):
        assert initialized().run('apply', auto_approve=True).success
        (workdir / 'settings.yaml').write_text('parallelism: 2\n')
        driver = initialized(with_provider=False)
        result = driver.run('plan', refresh=True)
        assert result.exit_code == EXIT_PRECONDITION
        assert result.error.code == 'E604'
        assert driver.furthest == VALIDATED
        assert any('API endpoint not configured' in line for line in echoed)

    def test_plan_without_refresh_needs_no_credentials(self, initialized, workdir):
        (workdir / 'settings.yaml').write_text('parallelism: 2\n')
        assert initialized(with_provider=False).run('plan').success


class TestApply:
    """apply phase."""

    def test_apply(self, initialized, provider, workdir, echoed):
        driver = initialized()
        result = driver.run('apply', auto_approve=True)
        assert result.success
        assert result.exit_code == EXIT_OK
        assert driver.furthest == APPLIED
        assert provider.names() == {'a', 'b-one'}
        assert result.payload['outputs']['b_name'].value == 'b-one'
        assert any('Plan: 2 to add' in line for line in echoed)
        assert len(list((workdir / 'reports').glob('*.ab.apply.succeeded.*'))) == 2

    def test_apply_twice_is_noop(self, initialized, provider):
        initialized().run('apply', auto_approve=True)
        calls = len(provider.calls)
        result = initialized().run('apply')
        assert result.success
        assert len(provider.calls) == calls

    def test_declined(self, initialized, provider):
        driver = initialized(confirm=lambda prompt: False)
        result = driver.run('apply')
        assert result.exit_code == EXIT_VALIDATION
        assert result.error.code == 'E109'
        assert provider.calls == []

    def test_saved_plan(self, initialized, workdir, provider):
        initialized().run('plan', out=workdir / 'plan.json')
        result = initialized().run('apply', plan_file=workdir / 'plan.json', auto_approve=True)
        assert result.success
        assert provider.names() == {'a', 'b-one'}

    def test_stale_saved_plan(self, initialized, workdir, provider):
        initialized().run('plan', out=workdir / 'plan.json')
        result = initialized(cli_vars={'suffix': 'two'}).run(
            'apply', plan_file=workdir / 'plan.json', auto_approve=True)
        assert result.exit_code == EXIT_VALIDATION
        assert result.error.code == 'E303'
        assert provider.calls == []

    def test_saved_plan_after_state_change(self, initialized, workdir):
        initialized().run('plan', out=workdir / 'plan.json')
        initialized().run('apply', auto_approve=True)
        result = initialized().run('apply', plan_file=workdir / 'plan.json', auto_approve=True)
        assert result.error.code == 'E303'

    def test_failed_update_blocks_dependent(self, initialized, workdir, provider):
        stack = yaml.safe_load((workdir / 'stack.yaml').read_text())
        stack['variables']['size'] = {'type': 'number', 'default': 1}
        stack['resources'][0]['attributes']['size'] = '${var.size}'
        stack['resources'][1]['attributes']['size'] = '${thing.a.size}'
        (workdir / 'stack.yaml').write_text(yaml.safe_dump(stack))
        assert initialized().run('apply', auto_approve=True).success

        provider.fail('update', 'a')
        result = initialized(cli_vars={'size': '2'}).run('apply', auto_approve=True)
        assert result.exit_code == EXIT_PARTIAL
        assert result.payload['result'].statuses == {'thing.a': FAILED, 'thing.b': BLOCKED}
        assert len(list((workdir / 'reports').glob('*.ab.apply.failed.json'))) == 1

    def test_preflight_without_token(self, initialized, workdir):
        (workdir / 'secrets.yaml').unlink()
        result = initialized(with_provider=False).run('apply', auto_approve=True)
        assert result.exit_code == EXIT_PRECONDITION
        assert result.error.code == 'E604'


class TestDestroyOutput:
    """destroy and output phases."""

    def test_destroy(self, initialized, provider, echoed):
        initialized().run('apply', auto_approve=True)
        driver = initialized()
        result = driver.run('destroy')
        assert result.success
        assert driver.furthest == DESTROYED
        assert provider.resources == {}
        assert any('WARNING' in line for line in echoed)
        assert initialized().run('output').payload == {}

    def test_destroy_declined(self, initialized, provider):
        initialized().run('apply', auto_approve=True)
        result = initialized(confirm=lambda prompt: False).run('destroy')
        assert result.error.code == 'E109'
        assert len(provider.resources) == 2

    def test_destroy_nothing(self, initialized):
        result = initialized().run('destroy')
        assert result.success
        assert result.payload['result'] is None

    def test_output(self, initialized):
        initialized().run('apply', auto_approve=True)
        result = initialized().run('output', name='b_name')
        assert list(result.payload) == ['b_name']
        assert result.payload['b_name'].value == 'b-one'

    def test_output_unknown_name(self, initialized):
        result = initialized().run('output', name='nope')
        assert result.error.code == 'E108'

    def test_unknown_command(self, make_driver):
        with pytest.raises(ValueError):
            make_driver().run('frobnicate')
