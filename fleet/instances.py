"""
Value types shared by the registry, scheduler, store and controller.

All of them are frozen: a change to an instance is a new ServerInstance with
a higher version, never an in-place edit.
"""
import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from shared.events import utcnow, format_timestamp, parse_timestamp
from shared.state_machine import (
    InstanceState,
    COUNT_RELEVANT_STATES,
    ADDRESSABLE_STATES,
    parse_state,
)

BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


def template_identifier(template_id: str) -> str:
    """Stable label-safe identifier: base62 of the SHA-256 of the template id."""
    number = int.from_bytes(hashlib.sha256(template_id.encode()).digest(), "big")
    digits = []
    while number > 0:
        number, remainder = divmod(number, len(BASE62))
        digits.append(BASE62[remainder])
    # Label values are capped at 63 characters.
    return "".join(reversed(digits))[:40] or "0"


@dataclass(frozen=True)
class FleetTemplate:
    template_id: str
    image: str
    min_instances: int = 0
    max_instances: int = 1
    readiness_timeout_seconds: int = 120
    heartbeat_timeout_seconds: int = 30
    cpu: str = "1"
    memory: str = "1024Mi"
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None
    container_port: int = 25565
    control_port: Optional[int] = None
    capacity: Optional[int] = None
    version: int = 1

    def __post_init__(self):
        if not self.template_id:
            raise ValueError("template_id is required")
        if not self.image:
            raise ValueError("image is required")
        if self.min_instances < 0:
            raise ValueError("min_instances must not be negative")
        if self.max_instances < self.min_instances:
            raise ValueError("max_instances must be >= min_instances")
        if self.readiness_timeout_seconds <= 0 or self.heartbeat_timeout_seconds <= 0:
            raise ValueError("timeouts must be positive")
        if self.capacity is not None and self.capacity <= 0:
            raise ValueError("capacity must be positive")

    @property
    def identifier(self) -> str:
        return template_identifier(self.template_id)

    @property
    def resources(self) -> dict:
        resources = {"requests": {"cpu": self.cpu, "memory": self.memory}}
        limits = {}
        if self.cpu_limit:
            limits["cpu"] = self.cpu_limit
        if self.memory_limit:
            limits["memory"] = self.memory_limit
        if limits:
            resources["limits"] = limits
        return resources

    def with_limits(self, min_instances: int = None, max_instances: int = None) -> "FleetTemplate":
        """Explicit versioned update of the instance bounds."""
        return replace(
            self,
            min_instances=self.min_instances if min_instances is None else min_instances,
            max_instances=self.max_instances if max_instances is None else max_instances,
            version=self.version + 1
        )

    def to_dict(self) -> dict:
        return {
            'template_id': self.template_id,
            'image': self.image,
            'min_instances': self.min_instances,
            'max_instances': self.max_instances,
            'readiness_timeout_seconds': self.readiness_timeout_seconds,
            'heartbeat_timeout_seconds': self.heartbeat_timeout_seconds,
            'cpu': self.cpu,
            'memory': self.memory,
            'cpu_limit': self.cpu_limit,
            'memory_limit': self.memory_limit,
            'container_port': self.container_port,
            'control_port': self.control_port,
            'capacity': self.capacity,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FleetTemplate":
        data = {key.replace('-', '_'): value for key, value in data.items()}
        resources = data.get('resources') or {}
        requests = resources.get('requests', {})
        limits = resources.get('limits', {})
        capacity = data.get('capacity')
        control_port = data.get('control_port')
        return cls(
            template_id=str(data['template_id']),
            image=str(data['image']),
            min_instances=int(data.get('min_instances', 0)),
            max_instances=int(data.get('max_instances', 1)),
            readiness_timeout_seconds=int(data.get('readiness_timeout_seconds', 120)),
            heartbeat_timeout_seconds=int(data.get('heartbeat_timeout_seconds', 30)),
            cpu=str(data.get('cpu', requests.get('cpu', '1'))),
            memory=str(data.get('memory', requests.get('memory', '1024Mi'))),
            cpu_limit=data.get('cpu_limit', limits.get('cpu')),
            memory_limit=data.get('memory_limit', limits.get('memory')),
            container_port=int(data.get('container_port', 25565)),
            control_port=int(control_port) if control_port is not None else None,
            capacity=int(capacity) if capacity is not None else None,
            version=int(data.get('version', 1))
        )


@dataclass(frozen=True)
class ServerInstance:
    instance_id: str
    template_id: str
    state: InstanceState
    pod_name: str
    namespace: str
    host: Optional[str] = None
    port: Optional[int] = None
    load: int = 0
    last_heartbeat: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    termination_reason: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        object.__setattr__(self, 'state', parse_state(self.state))

    @property
    def is_terminal(self) -> bool:
        return self.state == InstanceState.TERMINATED

    @property
    def counts_toward_fleet(self) -> bool:
        return self.state in COUNT_RELEVANT_STATES

    @property
    def address(self) -> Optional[str]:
        if self.state in ADDRESSABLE_STATES and self.host and self.port:
            return f"{self.host}:{self.port}"
        return None

    def evolve(self, now: datetime = None, **changes) -> "ServerInstance":
        """Return the next version of this instance with ``changes`` applied."""
        return replace(self, version=self.version + 1, updated_at=now or utcnow(), **changes)

    def to_dict(self) -> dict:
        return {
            'instance_id': self.instance_id,
            'template_id': self.template_id,
            'state': self.state.value,
            'pod_name': self.pod_name,
            'namespace': self.namespace,
            'host': self.host,
            'port': self.port,
            'address': self.address,
            'load': self.load,
            'last_heartbeat': format_timestamp(self.last_heartbeat),
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at),
            'termination_reason': self.termination_reason,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServerInstance":
        return cls(
            instance_id=data['instance_id'],
            template_id=data['template_id'],
            state=data['state'],
            pod_name=data['pod_name'],
            namespace=data['namespace'],
            host=data.get('host'),
            port=data.get('port'),
            load=int(data.get('load') or 0),
            last_heartbeat=parse_timestamp(data.get('last_heartbeat')),
            created_at=parse_timestamp(data.get('created_at')) or utcnow(),
            updated_at=parse_timestamp(data.get('updated_at')) or utcnow(),
            termination_reason=data.get('termination_reason'),
            version=int(data.get('version', 1))
        )


@dataclass(frozen=True)
class RoutingEntry:
    """Read-only projection of a READY instance for routing consumers."""
    instance_id: str
    template_id: str
    host: str
    port: int
    load: int
    created_at: datetime

    @classmethod
    def from_instance(cls, instance: ServerInstance) -> "RoutingEntry":
        return cls(
            instance_id=instance.instance_id,
            template_id=instance.template_id,
            host=instance.host,
            port=instance.port,
            load=instance.load,
            created_at=instance.created_at
        )

    def to_dict(self) -> dict:
        return {
            'instance_id': self.instance_id,
            'template_id': self.template_id,
            'address': f"{self.host}:{self.port}",
            'load': self.load,
        }
