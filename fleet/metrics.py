"""Process-wide Prometheus metrics of the orchestrator."""
from prometheus_client import Counter, Gauge, CollectorRegistry

REGISTRY = CollectorRegistry(auto_describe=True)

TRANSITIONS = Counter(
    'fleet_instance_transitions_total',
    'Instance state transitions recorded by this replica',
    ['template_id', 'new_state'],
    registry=REGISTRY
)

TERMINATIONS = Counter(
    'fleet_instance_terminations_total',
    'Instances forced to TERMINATED, by reason',
    ['template_id', 'reason'],
    registry=REGISTRY
)

TRANSIENT_RETRIES = Counter(
    'fleet_transient_retries_total',
    'Operations retried after a transient failure',
    ['operation'],
    registry=REGISTRY
)

VERSION_CONFLICTS = Counter(
    'fleet_version_conflicts_total',
    'Optimistic version conflicts on instance writes',
    ['outcome'],
    registry=REGISTRY
)

EVENTS_APPLIED = Counter(
    'fleet_events_applied_total',
    'Instance events offered to the registry',
    ['source', 'result'],
    registry=REGISTRY
)

RECONCILE_PASSES = Counter(
    'fleet_reconcile_passes_total',
    'Reconcile passes run',
    ['template_id'],
    registry=REGISTRY
)

CLUSTER_COMMANDS = Counter(
    'fleet_cluster_commands_total',
    'Pod create/delete commands issued to the cluster',
    ['command', 'result'],
    registry=REGISTRY
)

ORPHANS_DELETED = Counter(
    'fleet_orphan_pods_deleted_total',
    'Pods deleted because no instance record maps to them',
    registry=REGISTRY
)

INSTANCES = Gauge(
    'fleet_instances',
    'Instances in the local registry',
    ['template_id', 'state'],
    registry=REGISTRY
)

IS_LEADER = Gauge(
    'fleet_is_leader',
    '1 when this replica issues cluster commands',
    registry=REGISTRY
)
