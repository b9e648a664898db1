from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import json

from .state_machine import InstanceState, parse_state


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class InstanceEvent:
    """
    One instance state change as carried on the event bus.

    ``instance`` optionally holds the full instance record after the change
    (see ``fleet.instances.ServerInstance.to_dict``) so that receiving
    replicas can materialise address and load without a store read. A
    heartbeat is an event whose old and new states are equal.
    """
    instance_id: str
    template_id: str
    old_state: Optional[InstanceState]
    new_state: InstanceState
    version: int
    origin_replica_id: str
    timestamp: str = None
    instance: Optional[dict] = None

    def __post_init__(self):
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", format_timestamp(utcnow()))
        object.__setattr__(self, "new_state", parse_state(self.new_state))
        if self.old_state is not None:
            object.__setattr__(self, "old_state", parse_state(self.old_state))

    @property
    def is_state_change(self) -> bool:
        return self.old_state != self.new_state

    def to_dict(self) -> dict:
        data = {
            "instanceId": self.instance_id,
            "templateId": self.template_id,
            "oldState": self.old_state.value if self.old_state else None,
            "newState": self.new_state.value,
            "version": self.version,
            "timestamp": self.timestamp,
            "originReplicaId": self.origin_replica_id,
        }
        if self.instance is not None:
            data["instance"] = self.instance
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceEvent":
        return cls(
            instance_id=data["instanceId"],
            template_id=data["templateId"],
            old_state=data.get("oldState"),
            new_state=data["newState"],
            version=int(data["version"]),
            origin_replica_id=data.get("originReplicaId", ""),
            timestamp=data.get("timestamp"),
            instance=data.get("instance")
        )

    @classmethod
    def from_json(cls, json_str: str) -> "InstanceEvent":
        return cls.from_dict(json.loads(json_str))


def heartbeat_message(instance_id: str, load: int) -> str:
    return json.dumps({"instanceId": instance_id, "load": int(load)})
