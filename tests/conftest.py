"""
Pytest configuration and fixtures for fleet orchestrator tests.
"""
import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLEET_ENV'] = 'testing'

from fleet.cluster_driver import (
    INSTANCE_LABEL,
    TEMPLATE_ID_ANNOTATION,
    PodLifecycleEvent,
    PodRef,
    PodSnapshot,
    PodStatus,
)
from fleet.config import FleetConfig
from fleet.fleet_controller import FleetController
from fleet.instance_registry import InstanceRegistry
from fleet.instances import FleetTemplate, ServerInstance
from fleet.store import PersistenceStore
from shared.events import InstanceEvent
from shared.state_machine import InstanceState

NAMESPACE = 'game-servers'
START = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock the tests move forward by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeClusterDriver:
    """In-memory stand-in for the Kubernetes cluster."""

    def __init__(self, namespace: str = NAMESPACE):
        self.namespace = namespace
        self.pods = {}
        self.created = []
        self.deleted = []
        self.create_errors = []
        self.delete_errors = []

    def create_pod(self, spec):
        if self.create_errors:
            raise self.create_errors.pop(0)
        metadata = spec.metadata
        pod = PodStatus(
            name=metadata.name,
            namespace=metadata.namespace or self.namespace,
            instance_id=metadata.labels.get(INSTANCE_LABEL),
            template_id=metadata.annotations.get(TEMPLATE_ID_ANNOTATION),
            phase='Pending'
        )
        self.pods[pod.name] = pod
        self.created.append(spec)
        return pod.ref

    def delete_pod(self, ref: PodRef):
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        self.pods.pop(ref.name, None)
        self.deleted.append(ref.name)

    def list_pods(self) -> PodSnapshot:
        return PodSnapshot(pods=tuple(self.pods.values()), resource_version='1')

    def set_phase(self, pod_name: str, phase: str, ready: bool = False, pod_ip: str = None) -> PodLifecycleEvent:
        """Change a pod the way the kubelet would and return the watch event."""
        pod = self.pods[pod_name]
        pod = PodStatus(
            name=pod.name,
            namespace=pod.namespace,
            instance_id=pod.instance_id,
            template_id=pod.template_id,
            phase=phase,
            ready=ready,
            pod_ip=pod_ip
        )
        self.pods[pod_name] = pod
        return PodLifecycleEvent('MODIFIED', pod)

    def remove(self, pod_name: str) -> PodLifecycleEvent:
        """Pod disappears outside the orchestrator's control."""
        pod = self.pods.pop(pod_name)
        return PodLifecycleEvent('DELETED', pod)

    def watch(self, stop_event):
        yield self.list_pods()


class RecordingBus:
    """Event bus double that records what is published."""

    def __init__(self):
        self.events = []
        self.template_handlers = {}
        self.heartbeat_handler = None
        self.listening = False

    def publish_instance_event(self, event):
        self.events.append(event)

    def subscribe_template(self, template_id, handler):
        self.template_handlers[template_id] = handler

    def subscribe_heartbeats(self, handler):
        self.heartbeat_handler = handler

    def start_listening(self):
        self.listening = True

    def stop_listening(self):
        self.listening = False

    def events_for(self, instance_id):
        return [e for e in self.events if e.instance_id == instance_id]


class RelayBus(RecordingBus):
    """Delivers every published event to the other connected replicas, through the wire format."""

    def __init__(self):
        super().__init__()
        self.peers = []
        self.connected = True

    def publish_instance_event(self, event):
        super().publish_instance_event(event)
        if not self.connected:
            return
        for peer in self.peers:
            peer.handle_bus_event(InstanceEvent.from_json(event.to_json()))


class StaticLeader:
    """Leader tracker whose answer the test decides."""

    def __init__(self, leader: bool):
        self.leader = leader

    def is_leader(self) -> bool:
        return self.leader

    def start(self):
        pass

    def stop(self):
        pass


def no_sleep(seconds):
    pass


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    """SQLite in-memory store with the schema created."""
    store = PersistenceStore('sqlite:///:memory:')
    store.create_schema()
    yield store
    store.drop_schema()


@pytest.fixture
def registry():
    return InstanceRegistry()


@pytest.fixture
def driver():
    return FakeClusterDriver()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def lobby_template():
    return FleetTemplate(
        template_id='lobby',
        image='registry.example.com/games/lobby:1.0',
        min_instances=2,
        max_instances=5,
        readiness_timeout_seconds=120,
        heartbeat_timeout_seconds=30,
        control_port=8081
    )


@pytest.fixture
def fleet_config(lobby_template):
    return FleetConfig(
        cluster_namespace=NAMESPACE,
        fleet_templates=[lobby_template],
        heartbeat_timeout_seconds=30,
        readiness_timeout_seconds=120,
        event_bus_endpoint='redis://localhost:6379',
        store_endpoint='sqlite:///:memory:',
        retry_max_attempts=3,
        retry_base_delay_seconds=1,
        retry_max_delay_seconds=10,
        leader_election=False,
        replica_id='fleet-test01'
    )


@pytest.fixture
def notifier(mocker):
    mock = mocker.MagicMock()
    mock.notify_scheduled_for_stop.return_value = True
    return mock


@pytest.fixture
def controller(fleet_config, registry, store, driver, bus, notifier, clock):
    """Controller wired to in-memory collaborators, with templates stored."""
    store.sync_templates(fleet_config.fleet_templates)
    return FleetController(
        config=fleet_config,
        registry=registry,
        store=store,
        driver=driver,
        bus=bus,
        notifier=notifier,
        clock=clock,
        sleep=no_sleep
    )


@pytest.fixture
def make_instance(clock):
    """Factory for ServerInstance records."""
    def _make(instance_id='inst0001', template_id='lobby', state=InstanceState.READY, load=0,
              version=1, host='10.0.0.1', port=25565, created_offset=0, **kwargs):
        created = clock.now + timedelta(seconds=created_offset)
        return ServerInstance(
            instance_id=instance_id,
            template_id=template_id,
            state=state,
            pod_name=f'{template_id}-{instance_id}',
            namespace=NAMESPACE,
            host=host if state in (InstanceState.READY, InstanceState.DRAINING) else None,
            port=port if state in (InstanceState.READY, InstanceState.DRAINING) else None,
            load=load,
            last_heartbeat=kwargs.pop('last_heartbeat', created),
            created_at=created,
            updated_at=created,
            version=version,
            **kwargs
        )
    return _make


@pytest.fixture
def bring_up(driver):
    """Drive every pending pod through STARTING to READY via watch events."""
    def _bring_up(controller, pod_ip_prefix='10.0.0.'):
        for index, name in enumerate(sorted(driver.pods)):
            controller.handle_pod_event(driver.set_phase(name, 'Pending'))
            controller.handle_pod_event(
                driver.set_phase(name, 'Running', ready=True, pod_ip=f'{pod_ip_prefix}{index + 1}')
            )
    return _bring_up


@pytest.fixture
def ready_fleet(controller, bring_up):
    """Lobby fleet at its minimum size with every instance READY."""
    controller.reconcile('lobby')
    bring_up(controller)
    return controller


@pytest.fixture
def seed(store, registry, driver):
    """Put an instance record in the store and registry, with a pod if it has one."""
    def _seed(instance, with_pod=True):
        store.insert_instance(instance)
        registry.load_record(instance)
        if with_pod and instance.state != InstanceState.PENDING and not instance.is_terminal:
            ready = instance.state in (InstanceState.READY, InstanceState.DRAINING)
            driver.pods[instance.pod_name] = PodStatus(
                name=instance.pod_name,
                namespace=instance.namespace,
                instance_id=instance.instance_id,
                template_id=instance.template_id,
                phase='Running' if ready else 'Pending',
                ready=ready,
                pod_ip=instance.host
            )
        return instance
    return _seed


@pytest.fixture
def app(controller):
    """Operations API bound to the test controller."""
    from fleet.app import create_app
    app = create_app(controller, config_name='testing')
    yield app


@pytest.fixture
def client(app):
    """Test client that sends the operations API key on every request."""
    client = app.test_client()
    client.environ_base['HTTP_AUTHORIZATION'] = app.config['REST_AUTH_KEY']
    return client


@pytest.fixture
def make_env(fleet_config):
    """
    Factory for independent orchestrator replicas. Pass ``store``, ``bus``, ``driver``
    or ``clock`` to share them between replicas.
    """
    stores = []

    def _make_env(store=None, bus=None, driver=None, clock=None, leader=None, replica_id='fleet-test01',
                  templates=None):
        if store is None:
            store = PersistenceStore('sqlite:///:memory:')
            store.create_schema()
            stores.append(store)
        config = replace(
            fleet_config,
            replica_id=replica_id,
            fleet_templates=templates or fleet_config.fleet_templates
        )
        store.sync_templates(config.fleet_templates)
        env = SimpleNamespace(
            store=store,
            registry=InstanceRegistry(),
            driver=driver or FakeClusterDriver(),
            bus=bus if bus is not None else RecordingBus(),
            clock=clock or ManualClock()
        )
        env.controller = FleetController(
            config=config,
            registry=env.registry,
            store=env.store,
            driver=env.driver,
            bus=env.bus,
            leader=leader,
            notifier=SimpleNamespace(notify_scheduled_for_stop=lambda template, instance: True),
            clock=env.clock,
            sleep=no_sleep
        )
        return env

    yield _make_env
    for store in stores:
        store.drop_schema()
