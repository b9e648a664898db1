"""
Fleet sizing and instance selection policy.

Pure functions over a registry snapshot: nothing here talks to the cluster,
the bus or the store. The Fleet Controller carries out the decisions.
"""
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Tuple

from .instances import FleetTemplate, RoutingEntry, ServerInstance
from shared.state_machine import InstanceState


@dataclass(frozen=True)
class ScalingDecision:
    desired: int
    active: int
    create_count: int = 0
    drain: Tuple[ServerInstance, ...] = field(default_factory=tuple)

    @property
    def is_noop(self) -> bool:
        return self.create_count == 0 and not self.drain


def drain_order(instance: ServerInstance):
    # Lowest load first, then oldest.
    return (instance.load, instance.created_at, instance.instance_id)


def desired_count(template: FleetTemplate, snapshot: Sequence[ServerInstance]) -> int:
    """
    Number of active instances the template should have.

    Without a declared capacity the fleet only has to stay within
    [min_instances, max_instances]. With one, it is sized to the current
    load plus ``min_instances`` spare servers, still within the bounds.
    """
    active = [i for i in snapshot if i.counts_toward_fleet]
    if template.capacity:
        total_load = sum(i.load for i in active)
        wanted = math.ceil(total_load / template.capacity) + template.min_instances
    else:
        wanted = len(active)
    return max(template.min_instances, min(template.max_instances, wanted))


def plan(template: FleetTemplate, snapshot: Sequence[ServerInstance]) -> ScalingDecision:
    """
    Decide how many instances to create, or which ones to drain.

    Only READY instances are drain candidates; surplus PENDING or STARTING
    instances are left to become READY and are drained on a later pass.
    """
    active = [i for i in snapshot if i.counts_toward_fleet]
    desired = desired_count(template, snapshot)

    if len(active) < desired:
        return ScalingDecision(desired=desired, active=len(active), create_count=desired - len(active))

    if len(active) > desired:
        surplus = len(active) - desired
        candidates = sorted(
            (i for i in active if i.state == InstanceState.READY),
            key=drain_order
        )
        return ScalingDecision(desired=desired, active=len(active), drain=tuple(candidates[:surplus]))

    return ScalingDecision(desired=desired, active=len(active))


def select_instance(entries: Iterable[RoutingEntry], capacity: Optional[int] = None) -> Optional[RoutingEntry]:
    """
    Pick the instance a new occupant should join.

    Fills the busiest instance that still has room, so that quiet instances
    empty out and can be drained. Ties go to the oldest instance.
    """
    best = None
    for entry in entries:
        if capacity is not None and entry.load >= capacity:
            continue
        if best is None or entry.load > best.load or (
            entry.load == best.load and entry.created_at < best.created_at
        ):
            best = entry
    return best
