"""
Unit tests for FleetController.
Tests: reconcile, pod events, timeouts, drain, command retries, version
conflicts, bus events, heartbeats, leader gating
"""
from dataclasses import replace

import pytest
import redis

from fleet import metrics
from fleet.cluster_driver import PodStatus
from fleet.errors import ClusterError, TransientError, VersionConflict
from shared.events import InstanceEvent
from shared.state_machine import InstanceState, TerminationReason


def sample(name, **labels):
    return metrics.REGISTRY.get_sample_value(name, labels) or 0.0


def states(controller, template_id='lobby'):
    return sorted(i.state.value for i in controller.registry.snapshot(template_id))


def live(controller, template_id='lobby'):
    return [i for i in controller.registry.snapshot(template_id) if not i.is_terminal]


def pod_for(instance, phase='Pending'):
    return PodStatus(
        name=instance.pod_name,
        namespace=instance.namespace,
        instance_id=instance.instance_id,
        template_id=instance.template_id,
        phase=phase
    )


@pytest.fixture
def drain_one(controller, seed, make_instance, lobby_template):
    """Three READY instances with max=2: 'drainme' is drained, the two busy ones stay."""
    def _drain_one(load):
        seed(make_instance(instance_id='keep1', load=5))
        seed(make_instance(instance_id='keep2', load=5, created_offset=1))
        seed(make_instance(instance_id='drainme', load=load, created_offset=2))
        controller.update_template(lobby_template.with_limits(max_instances=2))
        controller.reconcile('lobby')
        assert controller.registry.get('drainme').state == InstanceState.DRAINING
    return _drain_one


class TestReconcile:
    """Tests for reconcile()."""

    def test_creates_minimum(self, controller, driver, store, bus):
        """min=2, max=5, empty fleet: two PENDING instances, persisted, published and created."""
        decision = controller.reconcile('lobby')

        assert decision.create_count == 2
        assert states(controller) == ['pending', 'pending']
        assert len(driver.pods) == 2
        assert len(store.list_live_instances()) == 2
        created = [e for e in bus.events if e.old_state is None]
        assert [e.new_state for e in created] == [InstanceState.PENDING, InstanceState.PENDING]
        assert all(e.version == 1 and e.origin_replica_id == 'fleet-test01' for e in created)

    def test_repeated_reconcile_is_idempotent(self, controller, driver):
        controller.reconcile('lobby')
        decision = controller.reconcile('lobby')

        assert decision.is_noop
        assert len(driver.pods) == 2

    def test_pod_spec_names_match_records(self, controller, driver, registry):
        controller.reconcile('lobby')
        for spec in driver.created:
            instance = registry.find_by_pod_name(spec.metadata.name)
            assert instance is not None
            assert instance.namespace == spec.metadata.namespace

    def test_surplus_ready_instances_drained(self, controller, seed, make_instance, notifier, lobby_template):
        """Five READY with max=3: the two least loaded move to DRAINING."""
        for n, load in enumerate([7, 0, 3, 1, 9]):
            seed(make_instance(instance_id=f'i{n}', load=load, created_offset=n))
        controller.update_template(lobby_template.with_limits(max_instances=3))

        decision = controller.reconcile('lobby')

        assert [i.instance_id for i in decision.drain] == ['i1', 'i3']
        draining = sorted(i.instance_id for i in controller.registry.snapshot('lobby')
                          if i.state == InstanceState.DRAINING)
        assert draining == ['i1', 'i3']
        assert notifier.notify_scheduled_for_stop.call_count == 2

    def test_removed_template_retired(self, controller, seed, make_instance):
        seed(make_instance(instance_id='ready'))
        seed(make_instance(instance_id='new', state=InstanceState.PENDING))
        controller.remove_template('lobby')

        controller.reconcile('lobby')

        assert controller.registry.get('ready').state == InstanceState.DRAINING
        removed = controller.registry.get('new')
        assert removed.state == InstanceState.TERMINATED
        assert removed.termination_reason == TerminationReason.TEMPLATE_REMOVED


class TestPodEvents:
    """Tests for handle_pod_event()."""

    def test_pending_then_ready(self, controller, driver, store, bus):
        controller.reconcile('lobby')
        name = sorted(driver.pods)[0]

        starting = controller.handle_pod_event(driver.set_phase(name, 'Pending'))
        assert starting.state == InstanceState.STARTING

        ready = controller.handle_pod_event(driver.set_phase(name, 'Running', ready=True, pod_ip='10.0.0.4'))
        assert ready.state == InstanceState.READY
        assert ready.address == '10.0.0.4:25565'
        assert ready.version == 3
        assert store.get_instance(ready.instance_id) == ready
        assert [e.new_state for e in bus.events_for(ready.instance_id)] == [
            InstanceState.PENDING, InstanceState.STARTING, InstanceState.READY
        ]

    def test_duplicate_event_is_noop(self, ready_fleet, driver, bus):
        name = sorted(driver.pods)[0]
        published = len(bus.events)

        instance = ready_fleet.handle_pod_event(driver.set_phase(name, 'Running', ready=True, pod_ip='10.0.0.1'))

        assert instance.state == InstanceState.READY
        assert len(bus.events) == published

    def test_pod_first_seen_ready_skips_starting(self, controller, driver):
        controller.reconcile('lobby')
        name = sorted(driver.pods)[0]

        instance = controller.handle_pod_event(driver.set_phase(name, 'Running', ready=True, pod_ip='10.0.0.9'))

        assert instance.state == InstanceState.READY
        assert instance.version == 2

    def test_pod_deleted(self, ready_fleet, driver):
        name = sorted(driver.pods)[0]

        instance = ready_fleet.handle_pod_event(driver.remove(name))

        assert instance.state == InstanceState.TERMINATED
        assert instance.termination_reason == TerminationReason.POD_DELETED

    def test_pod_deleted_wakes_template(self, ready_fleet, driver):
        wake = ready_fleet._wake_event('lobby')
        wake.clear()

        ready_fleet.handle_pod_event(driver.remove(sorted(driver.pods)[0]))

        assert wake.is_set()

    def test_becoming_ready_wakes_template(self, controller, driver):
        controller.reconcile('lobby')
        wake = controller._wake_event('lobby')
        wake.clear()

        controller.handle_pod_event(driver.set_phase(sorted(driver.pods)[0], 'Running', ready=True, pod_ip='10.0.0.3'))

        assert wake.is_set()

    def test_pod_failed_is_deleted(self, ready_fleet, driver):
        name = sorted(driver.pods)[0]

        instance = ready_fleet.handle_pod_event(driver.set_phase(name, 'Failed'))

        assert instance.state == InstanceState.TERMINATED
        assert instance.termination_reason == TerminationReason.POD_FAILED
        assert name in driver.deleted

    def test_pod_succeeded(self, ready_fleet, driver):
        name = sorted(driver.pods)[0]
        instance = ready_fleet.handle_pod_event(driver.set_phase(name, 'Succeeded'))
        assert instance.termination_reason == TerminationReason.POD_SUCCEEDED

    def test_terminated_instance_never_revived(self, ready_fleet, driver):
        name = sorted(driver.pods)[0]
        event = driver.set_phase(name, 'Running', ready=True, pod_ip='10.0.0.1')
        ready_fleet.handle_pod_event(driver.set_phase(name, 'Failed'))
        driver.pods[name] = event.pod

        instance = ready_fleet.handle_pod_event(event)

        assert instance.state == InstanceState.TERMINATED

    def test_unknown_pod_adopted_from_store(self, controller, store, make_instance, driver):
        record = make_instance(instance_id='remote', state=InstanceState.PENDING)
        store.insert_instance(record)
        driver.pods[record.pod_name] = pod_for(record)

        instance = controller.handle_pod_event(driver.set_phase(record.pod_name, 'Pending'))

        assert instance.instance_id == 'remote'
        assert instance.state == InstanceState.STARTING

    def test_unknown_pod_ignored(self, controller, make_instance, driver):
        record = make_instance(instance_id='ghost', state=InstanceState.STARTING)
        driver.pods[record.pod_name] = pod_for(record)

        assert controller.handle_pod_event(driver.set_phase(record.pod_name, 'Pending')) is None


class TestTimeouts:
    """Tests for readiness and heartbeat timeouts in tick()."""

    def test_readiness_timeout(self, controller, clock, driver):
        controller.reconcile('lobby')
        first = {i.instance_id for i in controller.registry.snapshot('lobby')}

        clock.advance(121)
        controller.tick('lobby')

        for instance_id in first:
            instance = controller.registry.get(instance_id)
            assert instance.state == InstanceState.TERMINATED
            assert instance.termination_reason == TerminationReason.READINESS_TIMEOUT
        assert len(live(controller)) == 2
        assert not first & {i.instance_id for i in live(controller)}

    def test_within_readiness_window(self, controller, clock):
        controller.reconcile('lobby')
        clock.advance(60)
        controller.tick('lobby')
        assert states(controller) == ['pending', 'pending']

    def test_heartbeat_timeout_terminates_and_replaces(self, ready_fleet, clock, driver):
        quiet, chatty = ready_fleet.registry.snapshot('lobby')
        clock.advance(20)
        ready_fleet.record_heartbeat(chatty.instance_id, 3)
        clock.advance(15)

        ready_fleet.tick('lobby')

        timed_out = ready_fleet.registry.get(quiet.instance_id)
        assert timed_out.state == InstanceState.TERMINATED
        assert timed_out.termination_reason == TerminationReason.HEARTBEAT_TIMEOUT
        assert quiet.pod_name in driver.deleted
        assert ready_fleet.registry.get(chatty.instance_id).state == InstanceState.READY
        assert len(live(ready_fleet)) == 2

    def test_late_heartbeat_does_not_revive(self, ready_fleet, clock, bus):
        quiet = ready_fleet.registry.snapshot('lobby')[0]
        clock.advance(31)
        ready_fleet.tick('lobby')

        assert ready_fleet.record_heartbeat(quiet.instance_id, 1) is None
        stale = InstanceEvent(
            quiet.instance_id, 'lobby', 'ready', 'ready', quiet.version + 10, 'fleet-other',
            instance=quiet.to_dict()
        )
        ready_fleet.handle_bus_event(stale)

        assert ready_fleet.registry.get(quiet.instance_id).state == InstanceState.TERMINATED
        assert ready_fleet.store.get_instance(quiet.instance_id).state == InstanceState.TERMINATED


class TestDrain:
    """Tests for drain completion in tick()."""

    def test_empty_draining_instance_deleted(self, controller, drain_one, driver):
        drain_one(load=1)
        controller.record_heartbeat('drainme', 0)

        controller.tick('lobby')

        instance = controller.registry.get('drainme')
        assert instance.state == InstanceState.TERMINATED
        assert instance.termination_reason == TerminationReason.DRAINED
        assert 'lobby-drainme' in driver.deleted

    def test_drain_timeout(self, controller, drain_one, clock):
        controller.config.drain_timeout_seconds = 20
        drain_one(load=4)

        clock.advance(10)
        controller.tick('lobby')
        assert controller.registry.get('drainme').state == InstanceState.DRAINING

        clock.advance(15)
        controller.tick('lobby')
        instance = controller.registry.get('drainme')
        assert instance.state == InstanceState.TERMINATED
        assert instance.termination_reason == TerminationReason.DRAIN_TIMEOUT

    def test_pod_deleted_while_draining_keeps_reason(self, controller, drain_one, driver):
        drain_one(load=0)
        driver.delete_errors = [ClusterError('timeout', transient=True)]

        controller.tick('lobby')
        assert controller.registry.get('drainme').state == InstanceState.DRAINING

        instance = controller.handle_pod_event(driver.remove('lobby-drainme'))
        assert instance.termination_reason == TerminationReason.DRAINED


class TestCommandRetries:
    """Cluster command failures are retried with backoff, then give up."""

    def test_transient_create_failure_retried(self, controller, driver, clock):
        driver.create_errors = [ClusterError('503', transient=True)] * 2
        before = sample('fleet_transient_retries_total', operation='pod-create')

        controller.reconcile('lobby')
        assert len(driver.pods) == 0

        clock.advance(30)
        controller.tick('lobby')

        assert len(driver.pods) == 2
        assert states(controller) == ['pending', 'pending']
        assert sample('fleet_transient_retries_total', operation='pod-create') == before + 2

    def test_retry_waits_for_backoff(self, controller, driver):
        driver.create_errors = [ClusterError('503', transient=True)] * 2
        controller.reconcile('lobby')

        controller.tick('lobby')

        assert len(driver.pods) == 0

    def test_exhausted_create_terminates_and_replaces(self, controller, driver, clock):
        # retry_max_attempts is 3: two instances, three failures each
        driver.create_errors = [ClusterError('503', transient=True)] * 6
        controller.reconcile('lobby')
        first = {i.instance_id for i in controller.registry.snapshot('lobby')}

        clock.advance(30)
        controller.tick('lobby')
        clock.advance(30)
        controller.tick('lobby')

        for instance_id in first:
            instance = controller.registry.get(instance_id)
            assert instance.state == InstanceState.TERMINATED
            assert instance.termination_reason == TerminationReason.CREATE_FAILED
        assert len(live(controller)) == 2
        assert len(driver.pods) == 2

    def test_permanent_failure_not_retried(self, controller, driver):
        driver.create_errors = [ClusterError('403', transient=False)] * 2

        controller.reconcile('lobby')

        terminated = [i for i in controller.registry.snapshot('lobby') if i.is_terminal]
        assert len(terminated) == 2
        assert all(i.termination_reason == TerminationReason.CREATE_FAILED for i in terminated)

    def test_exhausted_delete(self, controller, drain_one, driver, clock):
        drain_one(load=0)
        driver.delete_errors = [ClusterError('timeout', transient=True)] * 3

        controller.tick('lobby')
        clock.advance(15)
        controller.tick('lobby')
        clock.advance(15)
        controller.record_heartbeat('keep1', 5)
        controller.record_heartbeat('keep2', 5)
        controller.tick('lobby')

        instance = controller.registry.get('drainme')
        assert instance.termination_reason == TerminationReason.DELETE_FAILED


class TestVersionConflicts:
    """Optimistic writes: refresh once, then defer."""

    def test_conflict_refreshed_and_retried(self, ready_fleet, store):
        instance = ready_fleet.registry.snapshot('lobby')[0]
        # Another replica wrote a heartbeat this replica has not seen yet.
        store.save_instance(instance.evolve(load=9), expected_version=instance.version)
        before = sample('fleet_version_conflicts_total', outcome='refreshed')

        updated = ready_fleet.record_heartbeat(instance.instance_id, 3)

        assert updated.load == 3
        assert updated.version == instance.version + 2
        assert store.get_instance(instance.instance_id) == updated
        assert sample('fleet_version_conflicts_total', outcome='refreshed') == before + 1

    def test_repeated_conflict_counted_as_transient(self, ready_fleet, mocker):
        instance = ready_fleet.registry.snapshot('lobby')[0]
        mocker.patch.object(
            ready_fleet.store, 'save_instance',
            side_effect=VersionConflict(instance.instance_id, instance.version, instance.version + 1)
        )
        before = sample('fleet_transient_retries_total', operation='instance-write')

        assert ready_fleet.record_heartbeat(instance.instance_id, 3) is None

        assert ready_fleet.store.save_instance.call_count == 2
        assert sample('fleet_transient_retries_total', operation='instance-write') == before + 1
        assert ready_fleet.registry.get(instance.instance_id).version == instance.version

    def test_store_unavailable_leaves_registry_untouched(self, ready_fleet, mocker, bus):
        instance = ready_fleet.registry.snapshot('lobby')[0]
        mocker.patch.object(ready_fleet.store, 'save_instance', side_effect=TransientError('down'))
        published = len(bus.events)

        assert ready_fleet.record_heartbeat(instance.instance_id, 3) is None

        assert ready_fleet.registry.get(instance.instance_id) == instance
        assert len(bus.events) == published

    def test_publish_failure_keeps_transition(self, ready_fleet, mocker, bus):
        instance = ready_fleet.registry.snapshot('lobby')[0]
        mocker.patch.object(bus, 'publish_instance_event', side_effect=redis.ConnectionError('gone'))

        updated = ready_fleet.record_heartbeat(instance.instance_id, 2)

        assert updated.load == 2
        assert bus.publish_instance_event.call_count == 3
        assert ready_fleet.store.get_instance(instance.instance_id).load == 2


class TestBusEvents:
    """Tests for handle_bus_event()."""

    def remote_event(self, instance, old_state=None, origin='fleet-other'):
        return InstanceEvent(
            instance.instance_id, instance.template_id, old_state, instance.state,
            instance.version, origin, instance=instance.to_dict()
        )

    def test_applies_remote_event_and_wakes(self, controller, make_instance):
        instance = make_instance(instance_id='remote', state=InstanceState.PENDING)

        assert controller.handle_bus_event(self.remote_event(instance)) is True

        assert controller.registry.get('remote') == instance
        assert controller._wake_event('lobby').is_set()

    def test_own_events_skipped(self, controller, make_instance):
        instance = make_instance(instance_id='mine')
        assert controller.handle_bus_event(self.remote_event(instance, origin='fleet-test01')) is False
        assert controller.registry.get('mine') is None

    def test_duplicate_discarded(self, controller, make_instance):
        instance = make_instance(instance_id='remote')
        controller.handle_bus_event(self.remote_event(instance))
        assert controller.handle_bus_event(self.remote_event(instance)) is False

    def test_heartbeat_event_does_not_wake(self, controller, make_instance):
        instance = make_instance(instance_id='remote')
        controller.registry.load_record(instance)
        heartbeat = instance.evolve(load=4)

        assert controller.handle_bus_event(self.remote_event(heartbeat, InstanceState.READY)) is True
        assert not controller._wake_event('lobby').is_set()

    def test_event_without_payload_fetched_from_store(self, controller, store, make_instance):
        record = make_instance(instance_id='remote')
        store.insert_instance(record)
        event = InstanceEvent('remote', 'lobby', None, 'ready', 1, 'fleet-other')

        assert controller.handle_bus_event(event) is True
        assert controller.registry.get('remote') == record


class TestHeartbeats:

    def test_records_load(self, ready_fleet, clock):
        instance = ready_fleet.registry.snapshot('lobby')[0]
        clock.advance(5)

        updated = ready_fleet.record_heartbeat(instance.instance_id, 7)

        assert updated.load == 7
        assert updated.last_heartbeat == clock.now
        assert updated.state == InstanceState.READY

    def test_unknown_instance(self, controller):
        assert controller.record_heartbeat('nobody', 1) is None

    def test_negative_load_clamped(self, ready_fleet):
        instance = ready_fleet.registry.snapshot('lobby')[0]
        assert ready_fleet.record_heartbeat(instance.instance_id, -3).load == 0


class TestTerminatedEviction:
    """Terminated records leave the registry after the retention window."""

    @pytest.fixture
    def churned(self, controller, driver):
        """Twenty rounds of every lobby pod disappearing and being replaced."""
        controller.config.terminated_retention_seconds = 10
        controller.reconcile('lobby')
        for _ in range(20):
            for name in sorted(driver.pods):
                controller.handle_pod_event(driver.remove(name))
            controller.reconcile('lobby')
        return controller

    def test_churn_does_not_grow_registry(self, churned, clock):
        assert len(churned.registry.all()) == 42

        clock.advance(11)
        churned.tick('lobby')

        assert len(churned.registry.all()) == 2
        assert len(churned.registry._locks) == 2
        assert {i.state for i in churned.registry.all()} == {InstanceState.PENDING}

    def test_kept_within_retention(self, churned, clock):
        clock.advance(5)
        churned.tick('lobby')

        assert len(churned.registry.all()) == 42

    def test_followers_evict_too(self, churned, clock, mocker):
        churned.leader = mocker.Mock()
        churned.leader.is_leader.return_value = False

        clock.advance(11)
        churned.tick('lobby')

        assert len(churned.registry.all()) == 2

    def test_late_event_for_evicted_instance_discarded(self, controller, driver, bus, clock):
        controller.config.terminated_retention_seconds = 10
        controller.reconcile('lobby')
        name = sorted(driver.pods)[0]
        gone = controller.handle_pod_event(driver.remove(name))
        created = bus.events_for(gone.instance_id)[0]

        clock.advance(11)
        controller.tick('lobby')

        assert controller.handle_bus_event(replace(created, origin_replica_id='fleet-other')) is False
        assert controller.registry.get(gone.instance_id) is None


class TestLeaderGating:
    """Followers observe but never command the cluster."""

    def test_follower_does_not_create(self, controller, driver, mocker):
        controller.leader = mocker.Mock()
        controller.leader.is_leader.return_value = False

        assert controller.reconcile('lobby') is None
        assert controller.tick('lobby') is None
        assert driver.pods == {}

    def test_follower_records_but_does_not_delete(self, ready_fleet, driver, mocker):
        ready_fleet.leader = mocker.Mock()
        ready_fleet.leader.is_leader.return_value = False
        name = sorted(driver.pods)[0]

        instance = ready_fleet.handle_pod_event(driver.set_phase(name, 'Failed'))

        assert instance.state == InstanceState.TERMINATED
        assert driver.deleted == []


class TestTemplates:

    def test_update_template_bumps_version(self, controller, store, lobby_template):
        stored = controller.update_template(replace(lobby_template, max_instances=8))

        assert stored.version == 2
        assert store.get_template('lobby').max_instances == 8
        assert controller.template('lobby').max_instances == 8
