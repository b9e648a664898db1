"""
Cluster Driver for running fleet instances as Kubernetes pods.

Wraps the pod create/delete/list/watch primitives of the Kubernetes client
behind a small interface. Watch callbacks are turned into a bounded queue
fed by a producer thread; every (re)subscription starts with a full pod
snapshot so the consumer can run its list-and-reconcile pass before live
events resume.
"""
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional, Tuple, Union

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import ClusterError
from .instances import FleetTemplate, ServerInstance
from shared.events import utcnow
from shared.retry import BackoffPolicy

logger = logging.getLogger(__name__)

INSTANCE_TYPE_LABEL = "type"
INSTANCE_TYPE_VALUE = "server-instance"
TEMPLATE_LABEL = "fleet-template"
INSTANCE_LABEL = "fleet-instance"
TEMPLATE_ID_ANNOTATION = "fleet/template-id"

TRANSIENT_STATUSES = {0, 408, 409, 429, 500, 502, 503, 504}
WATCH_TIMEOUT_SECONDS = 300


@dataclass(frozen=True)
class PodRef:
    name: str
    namespace: str


@dataclass(frozen=True)
class PodStatus:
    """What the cluster reports about one fleet pod."""
    name: str
    namespace: str
    instance_id: Optional[str]
    template_id: Optional[str]
    phase: str
    ready: bool = False
    pod_ip: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def ref(self) -> PodRef:
        return PodRef(self.name, self.namespace)

    @property
    def is_finished(self) -> bool:
        return self.phase in ("Succeeded", "Failed")


@dataclass(frozen=True)
class PodLifecycleEvent:
    kind: str  # ADDED, MODIFIED or DELETED
    pod: PodStatus


@dataclass(frozen=True)
class PodSnapshot:
    """Full pod list emitted at every (re)subscription of the watch."""
    pods: Tuple[PodStatus, ...] = field(default_factory=tuple)
    resource_version: Optional[str] = None
    listed_at: Optional[datetime] = None


WatchItem = Union[PodSnapshot, PodLifecycleEvent]


def pod_status_from(pod) -> PodStatus:
    """Translate a V1Pod into a PodStatus."""
    metadata = pod.metadata
    labels = metadata.labels or {}
    annotations = metadata.annotations or {}
    status = pod.status

    ready = False
    if status is not None and status.conditions:
        ready = any(c.type == "Ready" and c.status == "True" for c in status.conditions)

    return PodStatus(
        name=metadata.name,
        namespace=metadata.namespace,
        instance_id=labels.get(INSTANCE_LABEL),
        template_id=annotations.get(TEMPLATE_ID_ANNOTATION),
        phase=(status.phase if status is not None and status.phase else "Pending"),
        ready=ready,
        pod_ip=status.pod_ip if status is not None else None,
        created_at=metadata.creation_timestamp
    )


def build_pod_spec(template: FleetTemplate, instance: ServerInstance) -> client.V1Pod:
    """Pod manifest for one instance, parameterised by its template."""
    resources = template.resources
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=instance.pod_name,
            namespace=instance.namespace,
            labels={
                INSTANCE_TYPE_LABEL: INSTANCE_TYPE_VALUE,
                TEMPLATE_LABEL: template.identifier,
                INSTANCE_LABEL: instance.instance_id,
            },
            annotations={TEMPLATE_ID_ANNOTATION: template.template_id}
        ),
        spec=client.V1PodSpec(
            restart_policy="Never",
            containers=[
                client.V1Container(
                    name="server",
                    image=template.image,
                    image_pull_policy="Always",
                    ports=[client.V1ContainerPort(container_port=template.container_port)],
                    env=[
                        client.V1EnvVar(name="SERVER_ID", value=instance.instance_id),
                        client.V1EnvVar(name="TEMPLATE_ID", value=template.template_id),
                        client.V1EnvVar(name="KUBERNETES_NAMESPACE", value=instance.namespace),
                    ],
                    resources=client.V1ResourceRequirements(
                        requests=resources["requests"],
                        limits=resources.get("limits")
                    )
                )
            ]
        )
    )


def _cluster_error(action: str, error: Exception) -> ClusterError:
    if isinstance(error, ApiException):
        status = error.status or 0
        return ClusterError(
            f"Failed to {action}: {error.status} {error.reason}",
            transient=status in TRANSIENT_STATUSES,
            status=status
        )
    return ClusterError(f"Failed to {action}: {error}", transient=True)


class ClusterDriver:
    """Pod primitives of one Kubernetes namespace."""

    def __init__(
        self,
        namespace: str,
        core_v1: client.CoreV1Api = None,
        queue_size: int = 1000,
        backoff: BackoffPolicy = None
    ):
        self.namespace = namespace
        self.core_v1 = core_v1 or self._load_client()
        self.queue_size = queue_size
        self.backoff = backoff or BackoffPolicy(max_attempts=10, base_delay=1.0, max_delay=30.0)
        self.label_selector = f"{INSTANCE_TYPE_LABEL}={INSTANCE_TYPE_VALUE}"

    @staticmethod
    def _load_client() -> client.CoreV1Api:
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes configuration")
        return client.CoreV1Api()

    def create_pod(self, spec: client.V1Pod) -> PodRef:
        namespace = spec.metadata.namespace or self.namespace
        try:
            pod = self.core_v1.create_namespaced_pod(namespace=namespace, body=spec)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            if isinstance(e, ApiException) and e.status == 409:
                # Already created by an earlier attempt whose response was lost.
                logger.info(f"Pod {spec.metadata.name} already exists")
                return PodRef(spec.metadata.name, namespace)
            raise _cluster_error(f"create pod {spec.metadata.name}", e) from e
        logger.info(f"Created pod {pod.metadata.name} in {namespace}")
        return PodRef(pod.metadata.name, namespace)

    def delete_pod(self, ref: PodRef):
        try:
            self.core_v1.delete_namespaced_pod(name=ref.name, namespace=ref.namespace)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            if isinstance(e, ApiException) and e.status == 404:
                logger.info(f"Pod {ref.name} not found (already deleted)")
                return
            raise _cluster_error(f"delete pod {ref.name}", e) from e
        logger.info(f"Deleted pod {ref.name}")

    def list_pods(self) -> PodSnapshot:
        try:
            pod_list = self.core_v1.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=self.label_selector
            )
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise _cluster_error("list pods", e) from e
        return PodSnapshot(
            pods=tuple(pod_status_from(pod) for pod in pod_list.items),
            resource_version=pod_list.metadata.resource_version if pod_list.metadata else None,
            listed_at=utcnow()
        )

    def watch(self, stop_event: threading.Event) -> Iterator[WatchItem]:
        """
        Stream pod snapshots and lifecycle events until ``stop_event`` is set.

        A producer thread lists the pods, emits a PodSnapshot and then follows
        the watch stream from that resource version. When the stream breaks
        or times out it backs off and starts over with a fresh snapshot.
        Events may repeat; consumers must be idempotent.
        """
        items: "queue.Queue[WatchItem]" = queue.Queue(maxsize=self.queue_size)
        producer = threading.Thread(
            target=self._produce,
            args=(items, stop_event),
            name="pod-watch",
            daemon=True
        )
        producer.start()

        while not stop_event.is_set():
            try:
                yield items.get(timeout=0.5)
            except queue.Empty:
                continue

    def _produce(self, items: queue.Queue, stop_event: threading.Event):
        failures = 0
        while not stop_event.is_set():
            try:
                snapshot = self.list_pods()
                self._put(items, snapshot, stop_event)
                failures = 0
                self._follow(items, stop_event, snapshot.resource_version)
                logger.info("Pod watch stream ended, resubscribing")
            except (ClusterError, ApiException, urllib3.exceptions.HTTPError, OSError) as e:
                failures += 1
                delay = self.backoff.delay(failures)
                logger.warning(f"Pod watch disconnected ({e}), resubscribing in {delay:.1f}s")
                stop_event.wait(delay)

    def _follow(self, items: queue.Queue, stop_event: threading.Event, resource_version: Optional[str]):
        w = watch.Watch()
        kwargs = {
            "namespace": self.namespace,
            "label_selector": self.label_selector,
            "timeout_seconds": WATCH_TIMEOUT_SECONDS,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            for event in w.stream(self.core_v1.list_namespaced_pod, **kwargs):
                if stop_event.is_set():
                    return
                kind = event.get("type")
                pod = event.get("object")
                if kind == "ERROR" or pod is None or not hasattr(pod, "metadata"):
                    # e.g. 410 Gone: the resource version expired, relist.
                    logger.info(f"Pod watch returned {kind}, relisting")
                    return
                self._put(items, PodLifecycleEvent(kind, pod_status_from(pod)), stop_event)
        finally:
            w.stop()

    @staticmethod
    def _put(items: queue.Queue, item: WatchItem, stop_event: threading.Event):
        # Blocks while the consumer is behind; the bound applies back-pressure to the watch.
        while not stop_event.is_set():
            try:
                items.put(item, timeout=0.5)
                return
            except queue.Full:
                continue
