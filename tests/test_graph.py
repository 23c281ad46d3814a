"""Tests for engine.graph module."""

import pytest

from engine.errors import GraphError, ValidationError
from engine.expressions import Literal
from engine.graph import INPUT, OUTPUT, RESOURCE, ResourceGraph, topological_sort
from engine.variables import VariableRegistry
from stack import Stack


def _graph(data, overrides=None):
    stack = Stack.from_dict(data)
    variables = VariableRegistry(stack.body.variables).resolve(overrides or {})
    return ResourceGraph(stack, variables)


def _res(name, /, kind='thing', **attributes):
    return {'name': name, 'kind': kind, 'attributes': attributes}


MODULE_STACK = {
    'name': 'mod',
    'resources': [_res('rg', kind='group', name='rg')],
    'modules': [{
        'name': 'app',
        'inputs': {'group': '${group.rg.id}'},
        'body': {
            'variables': {'group': {'type': 'string'}, 'port': {'default': 5001}},
            'resources': [_res('svc', group='${var.group}', port='${var.port}')],
            'outputs': {'url': {'value': 'https://${thing.svc.fqdn}'}},
        },
    }],
    'outputs': {'url': {'value': '${module.app.url}'}},
}


class TestConstruction:
    """Node creation and reference binding."""

    def test_ab_edges(self, ab_stack):
        graph = _graph(ab_stack)
        assert graph.get_node('thing.b').dependencies == {'thing.a'}
        assert graph.get_node('thing.a').dependents == {'thing.b'}
        assert graph.get_node('thing.a').node_type == RESOURCE

    def test_module_nodes(self):
        graph = _graph(MODULE_STACK)
        assert graph.get_node('module.app.var.group').node_type == INPUT
        assert graph.get_node('module.app.output.url').node_type == OUTPUT
        assert 'module.app.thing.svc' in graph
        assert graph.get_node('module.app.var.group').dependencies == {'group.rg'}
        assert graph.resource_dependencies('module.app.thing.svc') == {'group.rg'}

    def test_unknown_reference(self):
        with pytest.raises(GraphError) as exc:
            _graph({'name': 's', 'resources': [_res('a', x='${thing.nope.id}')]})
        assert exc.value.code == 'E201'
        assert 'thing.nope.id' in exc.value.message

    def test_undeclared_variable(self):
        with pytest.raises(GraphError, match="undeclared variable 'var.ghost'"):
            _graph({'name': 's', 'resources': [_res('a', x='${var.ghost}')]})

    def test_module_scope_is_isolated(self):
        data = {
            'name': 's',
            'resources': [_res('outer')],
            'modules': [{'name': 'm', 'body': {'resources': [_res('inner', x='${thing.outer.id}')]}}],
        }
        with pytest.raises(GraphError, match='unknown address'):
            _graph(data)

    def test_missing_module_input(self):
        data = {'name': 's', 'modules': [{'name': 'm', 'body': {'variables': {'need': {}}}}]}
        with pytest.raises(ValidationError, match="missing required input 'need'"):
            _graph(data)

    def test_undeclared_module_input(self):
        data = {'name': 's', 'modules': [{'name': 'm', 'inputs': {'x': 1}, 'body': {}}]}
        with pytest.raises(ValidationError, match='undeclared input'):
            _graph(data)

    def test_explicit_depends_on(self):
        data = {'name': 's', 'resources': [
            _res('a'),
            {'name': 'b', 'kind': 'thing', 'depends_on': ['thing.a']},
        ]}
        assert _graph(data).get_node('thing.b').dependencies == {'thing.a'}

    def test_depends_on_module(self):
        data = dict(MODULE_STACK)
        data['resources'] = MODULE_STACK['resources'] + [
            {'name': 'after', 'kind': 'thing', 'depends_on': ['module.app']},
        ]
        graph = _graph(data)
        assert graph.get_node('thing.after').dependencies == {'module.app.thing.svc'}

    def test_depends_on_unknown(self):
        data = {'name': 's', 'resources': [{'name': 'b', 'kind': 'thing', 'depends_on': ['thing.x']}]}
        with pytest.raises(GraphError) as exc:
            _graph(data)
        assert exc.value.code == 'E202'

    def test_count_on_variables_is_folded(self):
        data = {
            'name': 's',
            'variables': {'on': {'type': 'bool', 'default': False}},
            'resources': [{'name': 'a', 'kind': 'thing', 'count': '${var.on}'}],
        }
        assert _graph(data).get_node('thing.a').conditions == [Literal(False)]


class TestCycles:
    """Cycle detection."""

    def test_two_node_cycle(self):
        data = {'name': 's', 'resources': [
            _res('a', x='${thing.b.id}'),
            _res('b', x='${thing.a.id}'),
        ]}
        with pytest.raises(GraphError) as exc:
            _graph(data)
        assert exc.value.cycle[0] == exc.value.cycle[-1]
        assert set(exc.value.cycle) == {'thing.a', 'thing.b'}

    def test_self_reference(self):
        with pytest.raises(GraphError, match='thing.a -> thing.a'):
            _graph({'name': 's', 'resources': [_res('a', x='${thing.a.id}')]})

    def test_long_chain(self):
        resources = [_res('r0')] + [_res(f'r{i}', p=f'${{thing.r{i - 1}.id}}') for i in range(1, 3000)]
        graph = _graph({'name': 's', 'resources': resources})
        assert graph.resource_order()[0] == 'thing.r0'
        assert graph.resource_order()[-1] == 'thing.r2999'

    def test_long_cycle(self):
        resources = [_res('r0', p='${thing.r2999.id}')]
        resources += [_res(f'r{i}', p=f'${{thing.r{i - 1}.id}}') for i in range(1, 3000)]
        with pytest.raises(GraphError) as exc:
            _graph({'name': 's', 'resources': resources})
        assert len(exc.value.cycle) == 3001


class TestOrdering:
    """create_order / destroy_order."""

    def test_dependencies_first(self, ab_stack):
        graph = _graph(ab_stack)
        assert graph.resource_order() == ['thing.a', 'thing.b']
        assert [n.address for n in graph.destroy_order()] == ['thing.b', 'thing.a']

    def test_ties_follow_declaration_order(self):
        data = {'name': 's', 'resources': [_res('c'), _res('a'), _res('b')]}
        assert _graph(data).resource_order() == ['thing.c', 'thing.a', 'thing.b']

    def test_order_is_deterministic(self):
        graph1 = _graph(MODULE_STACK)
        graph2 = _graph(MODULE_STACK)
        assert [n.address for n in graph1.create_order()] == [n.address for n in graph2.create_order()]

    def test_resource_position(self, ab_stack):
        graph = _graph(ab_stack)
        assert graph.resource_position('thing.b') == 1

    def test_topological_sort_priority(self):
        order = topological_sort({'x': set(), 'y': set(), 'z': {'x'}}, {'x': 2, 'y': 1, 'z': 0})
        assert order == ['y', 'x', 'z']

    def test_topological_sort_cycle(self):
        with pytest.raises(GraphError):
            topological_sort({'x': {'y'}, 'y': {'x'}}, {})
