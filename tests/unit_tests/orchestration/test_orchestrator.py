"""Orchestrator behaviour over in-memory resources."""
import json
import threading
from unittest.mock import MagicMock

import pytest

from fargate_deploy.aws.base import Action, Resource
from fargate_deploy.exceptions import ConflictError, ProviderError
from fargate_deploy.orchestration.deployment_state import DeploymentStateManager
from fargate_deploy.orchestration.graph import ResourceGraph
from fargate_deploy.orchestration.orchestrator import Orchestrator


class FakeResource(Resource):
    kind = "fake"

    def __init__(self, name, world, calls, depends_on=(), value=1, error=None, conflict=False, secret=None):
        super().__init__(name, depends_on=depends_on)
        self.world = world
        self.calls = calls
        self.value = value
        self.error = error
        self.conflict = conflict
        self.secret = secret

    def read(self, ctx):
        return dict(self.world[self.name]) if self.name in self.world else None

    def create(self, ctx):
        if self.error is not None:
            raise self.error
        for dependency in self.depends_on:
            assert ctx.output(dependency, 'id') is not None
        self.calls.append(("create", self.name))
        self.world[self.name] = {'id': f"{self.name}-id", 'value': self.value}
        if self.secret:
            ctx.emit_credentials(self.name, {'secret': self.secret})
        return dict(self.world[self.name])

    def diff(self, ctx, live):
        if self.conflict:
            raise ConflictError(self.name, 'value', self.value, live['value'])
        if live['value'] != self.value:
            return {'value': (live['value'], self.value)}
        return {}

    def update(self, ctx, live, changes):
        self.calls.append(("update", self.name))
        self.world[self.name]['value'] = self.value
        return dict(self.world[self.name])

    def delete(self, ctx, live):
        self.calls.append(("delete", self.name))
        del self.world[self.name]


@pytest.fixture
def world():
    return {}


@pytest.fixture
def calls():
    return []


@pytest.fixture
def journal(tmp_path):
    return DeploymentStateManager(str(tmp_path / "state.json"))


@pytest.fixture
def orchestrator(external_config, settings, journal):
    return Orchestrator(external_config, settings, clients=MagicMock(), journal=journal)


def chain(world, calls, **overrides):
    """a -> b -> c, plus an independent d."""
    specs = {
        'a': {},
        'b': {'depends_on': ['a']},
        'c': {'depends_on': ['b']},
        'd': {},
    }
    for name, kwargs in overrides.items():
        specs[name].update(kwargs)
    return ResourceGraph(FakeResource(name, world, calls, **kwargs) for name, kwargs in specs.items())


def test_apply_creates_in_dependency_order_then_converges(orchestrator, world, calls):
    result = orchestrator.apply(chain(world, calls))

    assert [c.action for c in result.changes] == [Action.CREATE] * 4
    created = [name for op, name in calls]
    assert created.index('a') < created.index('b') < created.index('c')
    assert result.outputs['c']['id'] == 'c-id'

    calls.clear()
    second = orchestrator.apply(chain(world, calls))
    assert second.mutations == []
    assert calls == []


def test_apply_updates_drifted_resource(orchestrator, world, calls):
    orchestrator.apply(chain(world, calls))
    calls.clear()

    result = orchestrator.apply(chain(world, calls, b={'value': 2}))

    assert calls == [("update", "b")]
    change = next(c for c in result.changes if c.name == 'b')
    assert change.action is Action.UPDATE
    assert change.changes == {'value': (1, 2)}


def test_plan_never_mutates(orchestrator, world, calls):
    plan = orchestrator.plan(chain(world, calls))

    assert [c.action for c in plan.changes] == [Action.CREATE] * 4
    assert plan.has_changes
    assert calls == []
    assert world == {}


def test_plan_flags_resources_waiting_on_missing_dependencies(orchestrator, world, calls):
    world['b'] = {'id': 'b-id', 'value': 1}

    plan = orchestrator.plan(chain(world, calls))

    b = next(c for c in plan.changes if c.name == 'b')
    assert b.action is Action.UPDATE
    assert b.changes == {'dependencies': (None, ['a'])}


def test_plan_after_apply_is_all_noop(orchestrator, world, calls):
    orchestrator.apply(chain(world, calls))

    plan = orchestrator.plan(chain(world, calls))

    assert not plan.has_changes
    assert len(plan.by_action(Action.NOOP)) == 4


def test_plan_reports_conflicts(orchestrator, world, calls):
    world['d'] = {'id': 'd-id', 'value': 1}

    plan = orchestrator.plan(chain(world, calls, d={'conflict': True}))

    assert [c.name for c in plan.conflicts] == ['d']
    assert "reconcile manually" in plan.conflicts[0].message


def test_apply_stops_after_failing_level(orchestrator, world, calls, journal):
    error = ProviderError('b', 'AccessDenied: not authorized', code='AccessDenied')

    with pytest.raises(ProviderError) as exc_info:
        orchestrator.apply(chain(world, calls, b={'error': error}))

    assert exc_info.value.step == 'b'
    assert 'a' in world
    assert 'c' not in world
    state = json.loads(journal.state_file.read_text())
    assert state['status'] == 'failed'
    assert state['resources']['b']['status'] == 'failed'
    assert state['resources']['c']['status'] == 'pending'


def test_apply_refuses_conflicting_resource(orchestrator, world, calls):
    world['a'] = {'id': 'a-id', 'value': 7}

    with pytest.raises(ConflictError):
        orchestrator.apply(chain(world, calls, a={'conflict': True}))

    assert 'b' not in world


def test_cancelled_apply_schedules_nothing_new(external_config, settings, journal, world, calls):
    event = threading.Event()
    event.set()
    orchestrator = Orchestrator(external_config, settings, clients=MagicMock(), journal=journal, cancel_event=event)

    result = orchestrator.apply(chain(world, calls))

    assert result.cancelled
    assert result.changes == []
    assert journal.state.status == 'cancelled'


def test_interrupt_marks_run_cancelled(orchestrator, world, calls, journal):
    with pytest.raises(KeyboardInterrupt):
        orchestrator.apply(chain(world, calls, c={'error': KeyboardInterrupt()}))

    assert orchestrator.cancel_event.is_set()
    assert journal.state.status == 'cancelled'
    assert 'b' in world


def test_rerun_after_failure_resumes_without_duplicates(orchestrator, world, calls):
    with pytest.raises(ProviderError):
        orchestrator.apply(chain(world, calls, c={'error': ProviderError('c', 'boom')}))
    calls.clear()

    result = orchestrator.apply(chain(world, calls))

    assert calls == [("create", "c")]
    assert [c.name for c in result.mutations] == ['c']


def test_destroy_deletes_dependents_first(orchestrator, world, calls):
    orchestrator.apply(chain(world, calls))
    calls.clear()

    result = orchestrator.destroy(chain(world, calls))

    deleted = [name for op, name in calls]
    assert deleted.index('c') < deleted.index('b') < deleted.index('a')
    assert world == {}
    assert len(result.deleted) == 4


def test_destroy_skips_missing_resources(orchestrator, world, calls):
    world['a'] = {'id': 'a-id', 'value': 1}

    result = orchestrator.destroy(chain(world, calls))

    actions = {c.name: c.action for c in result.changes}
    assert actions == {'a': Action.DELETE, 'b': Action.SKIP, 'c': Action.SKIP, 'd': Action.SKIP}


def test_credentials_stay_out_of_outputs_repr_and_journal(orchestrator, world, calls, journal):
    result = orchestrator.apply(chain(world, calls, d={'secret': 'wJalrXUtnFEMI'}))

    assert result.credentials == {'d': {'secret': 'wJalrXUtnFEMI'}}
    assert 'wJalrXUtnFEMI' not in repr(result)
    assert 'wJalrXUtnFEMI' not in json.dumps(result.outputs)
    assert 'wJalrXUtnFEMI' not in journal.state_file.read_text()
