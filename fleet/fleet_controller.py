"""
Fleet Controller - the reconciliation loop.

Responsibilities:
- Apply pod lifecycle events from the Cluster Driver to the Instance Registry
- Persist every instance transition and publish it on the event bus
- Apply instance events published by other replicas
- Enforce readiness and heartbeat timeouts on a periodic tick per template
- Ask the Scheduler for sizing decisions and carry them out (create, drain, delete)
- Repair registry and cluster drift with a list-and-reconcile pass on every
  (re)subscription of the pod watch

Every transition follows the same path: compute the next version of the
instance, write it to the store conditioned on the version that was read,
apply it to the local registry, then publish it. Cluster commands are only
issued by the leader replica; every replica records what it observes.
"""
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

import redis

from . import metrics
from . import scheduler
from .cluster_driver import (
    ClusterDriver,
    PodLifecycleEvent,
    PodRef,
    PodSnapshot,
    PodStatus,
    build_pod_spec,
)
from .config import FleetConfig
from .errors import ClusterError, TransientError, VersionConflict
from .instance_registry import InstanceRegistry
from .instances import FleetTemplate, ServerInstance
from .leader import LeaderTracker
from .name_generator import generate_instance_id, pod_name_for
from .notifier import InstanceNotifier
from .store import PersistenceStore
from shared.events import InstanceEvent, utcnow, format_timestamp
from shared.pubsub import PubSubClient
from shared.retry import BackoffPolicy
from shared.state_machine import (
    COUNT_RELEVANT_STATES,
    InstanceState,
    TerminationReason,
    can_transition,
)

logger = logging.getLogger(__name__)

# Store and bus calls are retried briefly inline; longer outages are left to the next tick.
IO_BACKOFF = BackoffPolicy(max_attempts=3, base_delay=0.2, max_delay=2.0)
LIST_GRACE = timedelta(seconds=5)

CREATE = "create"
DELETE = "delete"
CLEANUP = "cleanup"


@dataclass
class PendingCommand:
    """A cluster command for one instance that has not succeeded yet."""
    kind: str
    instance_id: str
    template_id: str
    reason: Optional[str] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None


class FleetController:

    def __init__(
        self,
        config: FleetConfig,
        registry: InstanceRegistry,
        store: PersistenceStore,
        driver: ClusterDriver,
        bus: PubSubClient,
        leader: LeaderTracker = None,
        notifier: InstanceNotifier = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = None
    ):
        self.config = config
        self.registry = registry
        self.store = store
        self.driver = driver
        self.bus = bus
        self.leader = leader
        self.notifier = notifier or InstanceNotifier()
        self.clock = clock
        self.replica_id = config.replica_id
        self.backoff = config.backoff

        self._sleep = sleep
        self._templates: Dict[str, FleetTemplate] = {t.template_id: t for t in config.fleet_templates}
        self._templates_lock = threading.Lock()
        self._commands: Dict[str, PendingCommand] = {}
        self._commands_lock = threading.Lock()
        self._drain_started: Dict[str, datetime] = {}
        self._reconcile_locks = defaultdict(threading.Lock)
        self._wake_events: Dict[str, threading.Event] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self._workers_lock = threading.Lock()
        self._stop = threading.Event()
        self._watch_thread = None

    # ==================== Lifecycle ====================

    def start(self):
        """Load templates and instance records, then start the worker threads."""
        stored = self.store.sync_templates(self.config.fleet_templates)
        with self._templates_lock:
            self._templates = {t.template_id: t for t in stored}
        self.recover()

        if self.leader is not None:
            self.leader.start()

        for template_id in self.template_ids():
            self.bus.subscribe_template(template_id, self.handle_bus_event)
        self.bus.subscribe_heartbeats(self.record_heartbeat)
        self.bus.start_listening()

        self._watch_thread = threading.Thread(target=self._consume_watch, name="pod-watch-consumer", daemon=True)
        self._watch_thread.start()

        for template_id in self.template_ids():
            self._ensure_worker(template_id)

        logger.info(f"Fleet controller {self.replica_id} started with templates: {sorted(self.template_ids())}")

    def stop(self):
        logger.info(f"Stopping fleet controller {self.replica_id}...")
        self._stop.set()
        for event in list(self._wake_events.values()):
            event.set()
        for thread in list(self._workers.values()):
            thread.join(timeout=5)
        if self._watch_thread:
            self._watch_thread.join(timeout=5)
        self.bus.stop_listening()
        if self.leader is not None:
            self.leader.stop()
        logger.info("Fleet controller stopped")

    def recover(self) -> int:
        """Load every live instance record from the store into the registry."""
        records = IO_BACKOFF.retrying(
            (TransientError,),
            description="load instance records",
            **self._sleep_kwargs()
        )(self.store.list_live_instances)
        loaded = sum(1 for record in records if self.registry.load_record(record))
        logger.info(f"Recovered {loaded} live instances from the store")
        return loaded

    def is_leader(self) -> bool:
        return self.leader is None or self.leader.is_leader()

    # ==================== Templates ====================

    def template(self, template_id: str) -> Optional[FleetTemplate]:
        with self._templates_lock:
            return self._templates.get(template_id)

    def template_ids(self) -> set:
        with self._templates_lock:
            return set(self._templates)

    def templates(self) -> list:
        with self._templates_lock:
            return sorted(self._templates.values(), key=lambda t: t.template_id)

    def update_template(self, template: FleetTemplate) -> FleetTemplate:
        """
        Administrative, versioned update of a template. A reconcile pass
        already in flight finishes with the old limits; the next one uses
        the new template.
        """
        current = self.template(template.template_id)
        if current is not None and template.version <= current.version:
            template = FleetTemplate.from_dict(dict(template.to_dict(), version=current.version + 1))
        stored = self.store.save_template(template)
        with self._templates_lock:
            self._templates[stored.template_id] = stored
        if not self._stop.is_set() and self._watch_thread is not None:
            self.bus.subscribe_template(stored.template_id, self.handle_bus_event)
            self._ensure_worker(stored.template_id)
        self.wake(stored.template_id)
        logger.info(f"Template {stored.template_id} updated to v{stored.version}")
        return stored

    def remove_template(self, template_id: str):
        """Stop managing a template; its live instances are drained by the next pass."""
        with self._templates_lock:
            self._templates.pop(template_id, None)
        self.wake(template_id)

    # ==================== Workers ====================

    def wake(self, template_id: str):
        """Request an on-demand tick for a template."""
        self._wake_event(template_id).set()

    def _wake_on_count_change(self, event: InstanceEvent):
        if event.is_state_change and (
            event.new_state in COUNT_RELEVANT_STATES or event.old_state in COUNT_RELEVANT_STATES
        ):
            self.wake(event.template_id)

    def _wake_event(self, template_id: str) -> threading.Event:
        with self._workers_lock:
            event = self._wake_events.get(template_id)
            if event is None:
                event = self._wake_events[template_id] = threading.Event()
            return event

    def _ensure_worker(self, template_id: str):
        with self._workers_lock:
            if template_id in self._workers:
                return
            thread = threading.Thread(
                target=self._tick_loop,
                args=(template_id,),
                name=f"tick-{template_id}",
                daemon=True
            )
            self._workers[template_id] = thread
        thread.start()

    def _tick_loop(self, template_id: str):
        wake = self._wake_event(template_id)
        while not self._stop.is_set():
            try:
                self.tick(template_id)
            except Exception:
                logger.exception(f"Tick failed for template {template_id}")
            wake.wait(self.config.reconcile_interval_seconds)
            wake.clear()

    def _consume_watch(self):
        for item in self.driver.watch(self._stop):
            try:
                if isinstance(item, PodSnapshot):
                    self.resync(item)
                else:
                    self.handle_pod_event(item)
            except Exception:
                logger.exception("Failed to process pod watch item")

    # ==================== Periodic tick ====================

    def _evict_terminated(self, template_id: str):
        retention = timedelta(seconds=self.config.terminated_retention_seconds)
        with self._commands_lock:
            pending = set(self._commands)
        self.registry.evict_terminated(self.clock() - retention, template_id=template_id, keep=pending)

    def tick(self, template_id: str):
        """
        Periodic pass for one template. Every replica evicts TERMINATED
        records past the retention window; the leader then runs timeouts,
        drain completion, due command retries and a reconcile.
        """
        self._update_gauges(template_id)
        self._evict_terminated(template_id)
        if not self.is_leader():
            return None

        template = self.template(template_id)
        now = self.clock()

        for instance in self.registry.snapshot(template_id):
            if instance.is_terminal or self._has_command(instance.instance_id):
                continue
            if template is None:
                continue
            if instance.state in (InstanceState.PENDING, InstanceState.STARTING):
                if now - instance.created_at > timedelta(seconds=template.readiness_timeout_seconds):
                    logger.warning(f"Instance {instance.instance_id} not ready after "
                                   f"{template.readiness_timeout_seconds}s")
                    self._terminate_and_cleanup(instance.instance_id, TerminationReason.READINESS_TIMEOUT)
                continue

            last_seen = instance.last_heartbeat or instance.updated_at
            if now - last_seen > timedelta(seconds=template.heartbeat_timeout_seconds):
                logger.warning(f"Instance {instance.instance_id} missed heartbeats for "
                               f"{template.heartbeat_timeout_seconds}s")
                self._terminate_and_cleanup(instance.instance_id, TerminationReason.HEARTBEAT_TIMEOUT)
                continue

            if instance.state == InstanceState.DRAINING:
                started = self._drain_started.setdefault(instance.instance_id, now)
                if instance.load == 0:
                    self._issue(PendingCommand(DELETE, instance.instance_id, template_id, TerminationReason.DRAINED))
                elif now - started > timedelta(seconds=self.config.drain_timeout_seconds):
                    self._issue(PendingCommand(DELETE, instance.instance_id, template_id, TerminationReason.DRAIN_TIMEOUT))

        self._retry_due_commands(template_id, now)
        return self.reconcile(template_id)

    def _update_gauges(self, template_id: str):
        for state, count in self.registry.counts(template_id).items():
            metrics.INSTANCES.labels(template_id=template_id, state=state.value).set(count)

    # ==================== Reconcile ====================

    def reconcile(self, template_id: str) -> Optional[scheduler.ScalingDecision]:
        """
        Bring the number of active instances of a template within its
        desired bounds. Creates new PENDING instances or drains READY ones,
        as decided by the scheduler. Returns the decision, or None when this
        replica is not the leader or a pass for the template is already
        running.
        """
        if not self.is_leader():
            return None

        lock = self._reconcile_locks[template_id]
        if not lock.acquire(blocking=False):
            return None
        try:
            metrics.RECONCILE_PASSES.labels(template_id=template_id).inc()
            template = self.template(template_id)
            if template is None:
                self._retire_template_instances(template_id)
                return None

            decision = scheduler.plan(template, self.registry.snapshot(template_id))
            if decision.is_noop:
                return decision

            logger.info(f"Template {template_id}: {decision.active} active, {decision.desired} desired, "
                        f"creating {decision.create_count}, draining {len(decision.drain)}")
            for _ in range(decision.create_count):
                self._create_instance(template)
            for instance in decision.drain:
                self._drain(template, instance)
            return decision
        finally:
            lock.release()

    def _retire_template_instances(self, template_id: str):
        for instance in self.registry.snapshot(template_id):
            if instance.is_terminal or self._has_command(instance.instance_id):
                continue
            if instance.state == InstanceState.READY:
                self._transition(
                    instance.instance_id,
                    lambda cur: cur.evolve(now=self.clock(), state=InstanceState.DRAINING)
                )
            elif instance.state in (InstanceState.PENDING, InstanceState.STARTING):
                self._terminate_and_cleanup(instance.instance_id, TerminationReason.TEMPLATE_REMOVED)

    def _create_instance(self, template: FleetTemplate) -> Optional[ServerInstance]:
        now = self.clock()
        instance_id = generate_instance_id()
        instance = ServerInstance(
            instance_id=instance_id,
            template_id=template.template_id,
            state=InstanceState.PENDING,
            pod_name=pod_name_for(template.template_id, instance_id),
            namespace=self.config.cluster_namespace,
            created_at=now,
            updated_at=now
        )
        try:
            self._commit(None, instance)
        except (TransientError, VersionConflict) as e:
            logger.error(f"Failed to record new instance for {template.template_id}: {e}")
            return None

        self._issue(PendingCommand(CREATE, instance_id, template.template_id))
        return self.registry.get(instance_id)

    def _drain(self, template: FleetTemplate, instance: ServerInstance):
        updated = self._transition(
            instance.instance_id,
            lambda cur: cur.evolve(now=self.clock(), state=InstanceState.DRAINING) if cur.state == InstanceState.READY else None
        )
        if updated is not None:
            self._drain_started[instance.instance_id] = self.clock()
            self.notifier.notify_scheduled_for_stop(template, updated)

    # ==================== Cluster commands ====================

    def _has_command(self, instance_id: str) -> bool:
        with self._commands_lock:
            return instance_id in self._commands

    def _issue(self, command: PendingCommand):
        with self._commands_lock:
            if command.instance_id in self._commands:
                return
            self._commands[command.instance_id] = command
        self._run_command(command.instance_id)

    def _retry_due_commands(self, template_id: str, now: datetime):
        with self._commands_lock:
            due = [
                c.instance_id for c in self._commands.values()
                if c.template_id == template_id and (c.next_attempt_at is None or c.next_attempt_at <= now)
            ]
        for instance_id in due:
            self._run_command(instance_id)

    def _run_command(self, instance_id: str):
        with self._commands_lock:
            command = self._commands.get(instance_id)
        if command is None:
            return

        instance = self.registry.get(instance_id)
        if instance is None or (instance.is_terminal and command.kind != CLEANUP):
            self._drop_command(instance_id)
            return

        try:
            if command.kind == CREATE:
                template = self.template(instance.template_id)
                if template is None:
                    self._drop_command(instance_id)
                    self._terminate(instance_id, TerminationReason.TEMPLATE_REMOVED)
                    return
                self.driver.create_pod(build_pod_spec(template, instance))
            else:
                self.driver.delete_pod(PodRef(instance.pod_name, instance.namespace))
        except ClusterError as e:
            self._command_failed(command, e)
            return

        metrics.CLUSTER_COMMANDS.labels(command=command.kind, result="ok").inc()
        self._drop_command(instance_id)
        if command.kind == DELETE:
            self._terminate(instance_id, command.reason or TerminationReason.DRAINED)

    def _command_failed(self, command: PendingCommand, error: ClusterError):
        metrics.CLUSTER_COMMANDS.labels(command=command.kind, result="error").inc()
        command.attempts += 1

        if error.transient and not self.backoff.exhausted(command.attempts):
            delay = self.backoff.delay(command.attempts)
            command.next_attempt_at = self.clock() + timedelta(seconds=delay)
            metrics.TRANSIENT_RETRIES.labels(operation=f"pod-{command.kind}").inc()
            logger.warning(f"{command.kind} for instance {command.instance_id} failed "
                           f"(attempt {command.attempts}/{self.backoff.max_attempts}), retrying in {delay:.1f}s: {error}")
            return

        self._drop_command(command.instance_id)
        logger.error(f"Giving up on {command.kind} for instance {command.instance_id} "
                     f"after {command.attempts} attempts: {error}")
        if command.kind == CREATE:
            self._terminate(command.instance_id, TerminationReason.CREATE_FAILED)
        elif command.kind == DELETE:
            self._terminate(command.instance_id, TerminationReason.DELETE_FAILED)
        self.wake(command.template_id)

    def _drop_command(self, instance_id: str):
        with self._commands_lock:
            self._commands.pop(instance_id, None)

    # ==================== Transitions ====================

    def _terminate(self, instance_id: str, reason: str) -> Optional[ServerInstance]:
        updated = self._transition(
            instance_id,
            lambda cur: cur.evolve(now=self.clock(), state=InstanceState.TERMINATED, termination_reason=reason)
        )
        if updated is not None:
            metrics.TERMINATIONS.labels(template_id=updated.template_id, reason=reason).inc()
            self._drain_started.pop(instance_id, None)
            logger.info(f"Instance {instance_id} terminated: {reason}")
        return updated

    def _terminate_and_cleanup(self, instance_id: str, reason: str):
        """Terminate an instance and make sure its pod goes away."""
        updated = self._terminate(instance_id, reason)
        if updated is not None and self.is_leader():
            self._issue(PendingCommand(CLEANUP, instance_id, updated.template_id, reason))

    def _transition(
        self,
        instance_id: str,
        mutate: Callable[[ServerInstance], Optional[ServerInstance]]
    ) -> Optional[ServerInstance]:
        """
        Apply ``mutate`` to the current record and commit the result.

        ``mutate`` returns the next version of the instance, or None when
        there is nothing to do. A version conflict refreshes the record from
        the store and recomputes once; a second conflict is left for the
        next pass and counted as a transient retry.
        """
        for attempt in range(2):
            current = self.registry.get(instance_id)
            if current is None or current.is_terminal:
                return None

            updated = mutate(current)
            if updated is None:
                return None
            if not can_transition(current.state, updated.state):
                logger.debug(f"Ignoring invalid transition {current.state.value} -> "
                             f"{updated.state.value} for {instance_id}")
                return None

            try:
                return self._commit(current, updated)
            except VersionConflict as e:
                if attempt == 0:
                    metrics.VERSION_CONFLICTS.labels(outcome="refreshed").inc()
                    logger.info(f"{e}; refreshing from the store")
                    self._refresh(instance_id)
                    continue
                metrics.VERSION_CONFLICTS.labels(outcome="repeated").inc()
                metrics.TRANSIENT_RETRIES.labels(operation="instance-write").inc()
                logger.warning(f"Repeated version conflict on {instance_id}, deferring to the next pass")
                self._refresh(instance_id)
            except TransientError as e:
                metrics.TRANSIENT_RETRIES.labels(operation="instance-write").inc()
                logger.error(f"Could not record transition of {instance_id}: {e}")
            return None
        return None

    def _refresh(self, instance_id: str) -> Optional[ServerInstance]:
        try:
            record = self.store.get_instance(instance_id)
        except TransientError as e:
            logger.warning(f"Could not refresh instance {instance_id}: {e}")
            return None
        if record is not None:
            self.registry.load_record(record)
        return self.registry.get(instance_id)

    def _commit(self, current: Optional[ServerInstance], updated: ServerInstance) -> ServerInstance:
        """Persist, apply locally, publish. Raises VersionConflict or TransientError."""
        if current is None:
            write = lambda: self.store.insert_instance(updated, origin_replica_id=self.replica_id)
        else:
            write = lambda: self.store.save_instance(
                updated,
                expected_version=current.version,
                old_state=current.state,
                origin_replica_id=self.replica_id
            )
        IO_BACKOFF.retrying(
            (TransientError,),
            description=f"store instance {updated.instance_id}",
            on_retry=lambda attempt, e: metrics.TRANSIENT_RETRIES.labels(operation="instance-write").inc(),
            **self._sleep_kwargs()
        )(write)

        event = self._event_for(current, updated)
        self.registry.apply_event(event)
        if event.is_state_change:
            metrics.TRANSITIONS.labels(template_id=updated.template_id, new_state=updated.state.value).inc()
        self._wake_on_count_change(event)
        self._publish(event)
        return updated

    def _event_for(self, current: Optional[ServerInstance], updated: ServerInstance) -> InstanceEvent:
        return InstanceEvent(
            instance_id=updated.instance_id,
            template_id=updated.template_id,
            old_state=current.state if current else None,
            new_state=updated.state,
            version=updated.version,
            origin_replica_id=self.replica_id,
            timestamp=format_timestamp(updated.updated_at),
            instance=updated.to_dict()
        )

    def _publish(self, event: InstanceEvent):
        try:
            IO_BACKOFF.retrying(
                (redis.RedisError,),
                description=f"publish event for {event.instance_id}",
                on_retry=lambda attempt, e: metrics.TRANSIENT_RETRIES.labels(operation="bus-publish").inc(),
                **self._sleep_kwargs()
            )(self.bus.publish_instance_event, event)
        except redis.RedisError as e:
            # The store holds the transition; other replicas pick it up on their next resync.
            logger.error(f"Failed to publish event for instance {event.instance_id}: {e}")

    def _sleep_kwargs(self) -> dict:
        return {"sleep": self._sleep} if self._sleep is not None else {}

    # ==================== Pod events ====================

    def handle_pod_event(self, event: PodLifecycleEvent) -> Optional[ServerInstance]:
        """Apply one observed pod lifecycle event. Safe to call repeatedly with the same event."""
        pod = event.pod
        instance = self._instance_for_pod(pod)
        if instance is None:
            logger.debug(f"Pod {pod.name} does not map to a known instance")
            return None

        if instance.is_terminal:
            if event.kind != "DELETED" and self.is_leader() and not self._has_command(instance.instance_id):
                self._issue(PendingCommand(CLEANUP, instance.instance_id, instance.template_id))
            return instance

        if event.kind == "DELETED":
            command = self._pending_command(instance.instance_id)
            reason = command.reason if command and command.kind == DELETE else TerminationReason.POD_DELETED
            self._drop_command(instance.instance_id)
            return self._terminate(instance.instance_id, reason)

        if pod.is_finished:
            reason = TerminationReason.POD_FAILED if pod.phase == "Failed" else TerminationReason.POD_SUCCEEDED
            self._terminate_and_cleanup(instance.instance_id, reason)
            return self.registry.get(instance.instance_id)

        return self._observe(instance.instance_id, pod)

    def _observe(self, instance_id: str, pod: PodStatus) -> Optional[ServerInstance]:
        def mutate(current: ServerInstance) -> Optional[ServerInstance]:
            if pod.ready and pod.pod_ip and pod.phase == "Running":
                if current.state not in (InstanceState.PENDING, InstanceState.STARTING):
                    return None
                template = self.template(current.template_id)
                port = template.container_port if template else current.port
                now = self.clock()
                return current.evolve(
                    now=now,
                    state=InstanceState.READY,
                    host=pod.pod_ip,
                    port=port,
                    last_heartbeat=current.last_heartbeat or now
                )
            if current.state == InstanceState.PENDING:
                return current.evolve(now=self.clock(), state=InstanceState.STARTING)
            return None

        updated = self._transition(instance_id, mutate)
        if updated is not None:
            self._drop_create_command(instance_id)
        return updated or self.registry.get(instance_id)

    def _drop_create_command(self, instance_id: str):
        # The pod exists, so a still-pending create has in fact succeeded.
        with self._commands_lock:
            command = self._commands.get(instance_id)
            if command is not None and command.kind == CREATE:
                self._commands.pop(instance_id)

    def _pending_command(self, instance_id: str) -> Optional[PendingCommand]:
        with self._commands_lock:
            return self._commands.get(instance_id)

    def _instance_for_pod(self, pod: PodStatus) -> Optional[ServerInstance]:
        if pod.instance_id:
            instance = self.registry.get(pod.instance_id)
        else:
            instance = self.registry.find_by_pod_name(pod.name)
        if instance is not None:
            return instance

        if pod.instance_id and self.registry.is_evicted(pod.instance_id):
            return None

        # Created by another replica whose event has not reached us yet.
        try:
            record = (self.store.get_instance(pod.instance_id) if pod.instance_id
                      else self.store.find_by_pod_name(pod.name))
        except TransientError as e:
            logger.warning(f"Could not look up pod {pod.name} in the store: {e}")
            return None
        if record is None:
            return None
        self.registry.load_record(record)
        return self.registry.get(record.instance_id)

    # ==================== Resync ====================

    def resync(self, snapshot: PodSnapshot):
        """
        List-and-reconcile pass, run before the pod watch (re)starts.

        Brings the registry up to the store's last-known records, applies
        the observed state of every listed pod, terminates live instances
        whose pod has disappeared and, on the leader, deletes pods that no
        live instance owns.
        """
        logger.info(f"Reconciling {len(snapshot.pods)} pods against stored instances")
        try:
            self.recover()
        except TransientError as e:
            logger.error(f"Resync skipped, store unavailable: {e}")
            return

        seen = set()
        for pod in snapshot.pods:
            instance = self._instance_for_pod(pod)
            if instance is None or instance.is_terminal:
                self._delete_orphan(pod, instance)
                continue
            seen.add(instance.instance_id)
            self.handle_pod_event(PodLifecycleEvent("MODIFIED", pod))

        # Instances created around the time of the list may own pods the list missed.
        cutoff = snapshot.listed_at - LIST_GRACE if snapshot.listed_at else None
        for instance in self.registry.live():
            if instance.instance_id in seen:
                continue
            if instance.namespace != self.config.cluster_namespace:
                continue
            if cutoff is not None and instance.created_at > cutoff:
                continue
            command = self._pending_command(instance.instance_id)
            if command is not None and command.kind == CREATE:
                continue
            logger.info(f"Pod of instance {instance.instance_id} is gone")
            self._drop_command(instance.instance_id)
            self._terminate(instance.instance_id, TerminationReason.POD_DELETED)

        for template_id in self.template_ids() | self.registry.template_ids():
            self.wake(template_id)

    def _delete_orphan(self, pod: PodStatus, instance: Optional[ServerInstance]):
        if not self.is_leader():
            return
        if instance is not None and self._has_command(instance.instance_id):
            return
        logger.warning(f"Deleting orphaned pod {pod.name}")
        try:
            self.driver.delete_pod(pod.ref)
            metrics.ORPHANS_DELETED.inc()
        except ClusterError as e:
            logger.error(f"Failed to delete orphaned pod {pod.name}: {e}")

    # ==================== Event bus ====================

    def handle_bus_event(self, event: InstanceEvent) -> bool:
        """Apply an instance event published by a replica. Returns True when the registry changed."""
        if event.origin_replica_id == self.replica_id:
            metrics.EVENTS_APPLIED.labels(source="bus", result="own").inc()
            return False

        before = self.registry.get(event.instance_id)
        changed = self.registry.apply_event(event)
        if not changed and before is None and event.instance is None:
            changed = self._refresh(event.instance_id) is not None

        metrics.EVENTS_APPLIED.labels(source="bus", result="applied" if changed else "discarded").inc()
        if changed:
            self._wake_on_count_change(event)
        return changed

    # ==================== Heartbeats ====================

    def record_heartbeat(self, instance_id: str, load: int = 0) -> Optional[ServerInstance]:
        """Refresh an instance's heartbeat and load. Returns the updated record."""
        if self.registry.get(instance_id) is None:
            self._refresh(instance_id)

        def mutate(current: ServerInstance) -> Optional[ServerInstance]:
            now = self.clock()
            return current.evolve(now=now, load=max(0, int(load)), last_heartbeat=now)

        before = self.registry.get(instance_id)
        updated = self._transition(instance_id, mutate)
        if updated is None:
            return None

        template = self.template(updated.template_id)
        if template is not None and template.capacity and before is not None and before.load != updated.load:
            self.wake(updated.template_id)
        if updated.state == InstanceState.DRAINING and updated.load == 0:
            self.wake(updated.template_id)
        return updated

    # ==================== Queries ====================

    def instances(self, template_id: str, states: Iterable[InstanceState] = None):
        snapshot = self.registry.snapshot(template_id)
        if states is None:
            return list(snapshot)
        states = set(states)
        return [i for i in snapshot if i.state in states]
