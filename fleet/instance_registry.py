import logging
import threading
from collections import Counter, OrderedDict
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .instances import ServerInstance
from shared.events import InstanceEvent
from shared.state_machine import InstanceState

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Optional[ServerInstance], ServerInstance], None]


class InstanceRegistry:
    """
    Replica-local cache of instance state.

    All mutation goes through ``apply_event`` or ``load_record``, which are
    serialised per instance id: events for different instances proceed
    independently, events for the same instance are applied one at a time.
    A record only ever moves to a strictly higher version, and a TERMINATED
    record is never replaced, so duplicate and out-of-order deliveries from
    the event bus cannot regress state.

    TERMINATED records are only kept until ``evict_terminated`` drops them;
    the store holds the history. Evicted ids are remembered (up to
    ``tombstone_limit`` of them) so late events cannot bring them back.
    """

    def __init__(self, tombstone_limit: int = 10000):
        self._instances: Dict[str, ServerInstance] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # instance id -> terminal version, oldest eviction first
        self._tombstones: "OrderedDict[str, int]" = OrderedDict()
        self.tombstone_limit = tombstone_limit
        # Guards the dicts themselves; never held across caller work.
        self._map_lock = threading.Lock()
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener):
        """Register a callback invoked as ``listener(old, new)`` after each change."""
        self._listeners.append(listener)

    def _lock_for(self, instance_id: str) -> threading.Lock:
        with self._map_lock:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = self._locks[instance_id] = threading.Lock()
            return lock

    def apply_event(self, event: InstanceEvent) -> bool:
        """
        Apply an instance event. Returns True when the registry changed.

        Events carrying the full record replace the cached instance; events
        without one can only update an instance the registry already knows.
        """
        if self.is_evicted(event.instance_id):
            return False
        with self._lock_for(event.instance_id):
            current = self.get(event.instance_id)
            if not self._supersedes(event.instance_id, current, event.version):
                return False

            if event.instance is not None:
                updated = ServerInstance.from_dict(event.instance)
                updated = replace(updated, state=event.new_state, version=event.version)
            elif current is not None:
                updated = replace(current, state=event.new_state, version=event.version)
            else:
                logger.debug(f"Event for unknown instance {event.instance_id} has no record, skipping")
                return False

            with self._map_lock:
                self._instances[event.instance_id] = updated

        self._notify(current, updated)
        return True

    def load_record(self, instance: ServerInstance) -> bool:
        """Install a full record (store refresh, recovery) under the same version rule."""
        if self.is_evicted(instance.instance_id):
            return False
        with self._lock_for(instance.instance_id):
            current = self.get(instance.instance_id)
            if not self._supersedes(instance.instance_id, current, instance.version):
                return False
            with self._map_lock:
                self._instances[instance.instance_id] = instance

        self._notify(current, instance)
        return True

    def _supersedes(self, instance_id: str, current: Optional[ServerInstance], version: int) -> bool:
        if current is None:
            with self._map_lock:
                return instance_id not in self._tombstones
        if current.is_terminal:
            return False
        return version > current.version

    def evict_terminated(
        self,
        terminated_before: datetime,
        template_id: str = None,
        keep: Iterable[str] = ()
    ) -> int:
        """
        Drop TERMINATED records last updated before ``terminated_before``,
        with their locks. Ids in ``keep`` stay. Returns the number evicted.
        """
        keep = set(keep)
        with self._map_lock:
            candidates = [
                i.instance_id for i in self._instances.values()
                if i.is_terminal
                and i.updated_at < terminated_before
                and i.instance_id not in keep
                and (template_id is None or i.template_id == template_id)
            ]

        evicted = 0
        for instance_id in candidates:
            with self._lock_for(instance_id):
                with self._map_lock:
                    instance = self._instances.get(instance_id)
                    if instance is None or not instance.is_terminal:
                        continue
                    del self._instances[instance_id]
                    del self._locks[instance_id]
                    self._tombstones[instance_id] = instance.version
                    while len(self._tombstones) > self.tombstone_limit:
                        self._tombstones.popitem(last=False)
            evicted += 1

        if evicted:
            logger.debug(f"Evicted {evicted} terminated instances from the registry")
        return evicted

    def is_evicted(self, instance_id: str) -> bool:
        with self._map_lock:
            return instance_id in self._tombstones

    def _notify(self, old: Optional[ServerInstance], new: ServerInstance):
        for listener in self._listeners:
            try:
                listener(old, new)
            except Exception:
                logger.exception(f"Registry listener failed for instance {new.instance_id}")

    def get(self, instance_id: str) -> Optional[ServerInstance]:
        with self._map_lock:
            return self._instances.get(instance_id)

    def find_by_pod_name(self, pod_name: str) -> Optional[ServerInstance]:
        with self._map_lock:
            matches = [i for i in self._instances.values() if i.pod_name == pod_name]
        live = [i for i in matches if not i.is_terminal]
        return (live or matches or [None])[0]

    def snapshot(self, template_id: str) -> Tuple[ServerInstance, ...]:
        """Immutable copy of every instance of a template, oldest first."""
        with self._map_lock:
            instances = [i for i in self._instances.values() if i.template_id == template_id]
        return tuple(sorted(instances, key=lambda i: (i.created_at, i.instance_id)))

    def all(self) -> Tuple[ServerInstance, ...]:
        with self._map_lock:
            return tuple(self._instances.values())

    def live(self) -> Tuple[ServerInstance, ...]:
        return tuple(i for i in self.all() if not i.is_terminal)

    def template_ids(self) -> set:
        with self._map_lock:
            return {i.template_id for i in self._instances.values()}

    def counts(self, template_id: str) -> Dict[InstanceState, int]:
        counts = Counter(i.state for i in self.snapshot(template_id))
        return {state: counts.get(state, 0) for state in InstanceState}
