import threading
from typing import Dict, List, Optional

from .instance_registry import InstanceRegistry
from .instances import RoutingEntry, ServerInstance
from .scheduler import select_instance
from shared.state_machine import InstanceState


class RoutingTable:
    """
    Read-optimised view of READY instances for proxies and dispatchers.

    Entries are derived from registry changes only; nothing writes to the
    table directly.
    """

    def __init__(self, registry: InstanceRegistry):
        self._registry = registry
        self._entries: Dict[str, Dict[str, RoutingEntry]] = {}
        self._lock = threading.Lock()
        registry.add_listener(self._on_change)
        self.rebuild()

    def rebuild(self):
        entries: Dict[str, Dict[str, RoutingEntry]] = {}
        for instance in self._registry.all():
            if self._routable(instance):
                entries.setdefault(instance.template_id, {})[instance.instance_id] = RoutingEntry.from_instance(instance)
        with self._lock:
            self._entries = entries

    def _on_change(self, old: Optional[ServerInstance], new: ServerInstance):
        # Re-read the registry: listeners may run out of order across threads.
        current = self._registry.get(new.instance_id) or new
        with self._lock:
            template_entries = self._entries.setdefault(current.template_id, {})
            if self._routable(current):
                template_entries[current.instance_id] = RoutingEntry.from_instance(current)
            else:
                template_entries.pop(current.instance_id, None)

    @staticmethod
    def _routable(instance: ServerInstance) -> bool:
        return instance.state == InstanceState.READY and bool(instance.host) and bool(instance.port)

    def entries(self, template_id: str) -> List[RoutingEntry]:
        with self._lock:
            entries = list(self._entries.get(template_id, {}).values())
        return sorted(entries, key=lambda e: (e.created_at, e.instance_id))

    def select(self, template_id: str, capacity: Optional[int] = None) -> Optional[RoutingEntry]:
        return select_instance(self.entries(template_id), capacity)
