"""
Capability interface over the Kubernetes control plane.

The coordinator, the pollers and the log streamer only ever talk to the
cluster through a ClusterGateway. Two adapters exist: KubernetesApiGateway
(official Python client) and KubectlGateway (kubectl subprocesses). Adapters
keep no per-run state, so one instance can be shared by the poller thread and
the streamer thread.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Mapping, Optional

from errors import GatewayError, InvalidManifest
from models.job import ContainerRole, PhaseStatus, ResourceKind, ResourceRef

logger = logging.getLogger(__name__)

TRANSPORTS = ("api", "kubectl")

# Kubelet/API messages that mean "container has not started yet".
NOT_READY_MARKERS = (
    "waiting to start",
    "ContainerCreating",
    "PodInitializing",
)


class LogStream(ABC):
    """A follow-mode log stream: iterate for byte chunks, close() to stop."""

    @abstractmethod
    def __iter__(self) -> Iterator[bytes]:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class ClusterGateway(ABC):

    # --- Provisioning ---
    @abstractmethod
    def create_secret(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        """Raises AlreadyExists or Unauthorized."""

    @abstractmethod
    def create_config_map(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        """Raises AlreadyExists or Unauthorized."""

    @abstractmethod
    def apply_manifest(self, doc: Mapping[str, Any]) -> ResourceRef:
        """Creates the object described by ``doc``. Raises InvalidManifest or Unauthorized."""

    @abstractmethod
    def delete_resource(self, ref: ResourceRef) -> None:
        """Deletes ``ref``; a missing object counts as success."""

    # --- Observation ---
    @abstractmethod
    def get_phase(self, ref: ResourceRef, role: ContainerRole, index: int = 0) -> PhaseStatus:
        """Never raises: transient lookup failures are reported as Unknown."""

    @abstractmethod
    def fetch_logs(self, ref: ResourceRef, container: str, tail_lines: Optional[int] = None) -> bytes:
        """Raises NotReady if the container has not started, NotFound if the pod is gone."""

    @abstractmethod
    def stream_logs(self, ref: ResourceRef, container: str) -> LogStream:
        """Opens a follow-mode log stream. Raises NotReady like fetch_logs."""

    @abstractmethod
    def wait_until_ready(self, ref: ResourceRef, timeout: float) -> bool:
        """Blocks up to ``timeout`` seconds. False means the wait timed out."""

    @abstractmethod
    def describe(self, ref: ResourceRef) -> str:
        ...

    # --- Cluster info ---
    @abstractmethod
    def cluster_reachable(self) -> bool:
        ...

    @abstractmethod
    def current_context(self) -> str:
        ...

    @abstractmethod
    def node_labels(self) -> List[Dict[str, str]]:
        ...

    @abstractmethod
    def node_taints(self) -> List[str]:
        """Taints of every node as 'key=value:effect' strings."""

    @abstractmethod
    def namespace_exists(self, namespace: str) -> bool:
        ...

    @abstractmethod
    def create_namespace(self, namespace: str) -> None:
        ...


def is_not_ready_message(message: str) -> bool:
    return any(marker in message for marker in NOT_READY_MARKERS)


def pod_ref_from_manifest(doc: Mapping[str, Any]) -> ResourceRef:
    """
    Returns the reference a Pod manifest will be created under.

    Raises:
        InvalidManifest: If ``doc`` is not a named Pod.
    """
    kind = str(doc.get("kind", ""))
    metadata = doc.get("metadata") or {}
    if kind != "Pod" or not metadata.get("name"):
        raise InvalidManifest(f"Only named Pod manifests are supported, got kind '{kind}'")
    return ResourceRef(ResourceKind.POD, metadata["name"], metadata.get("namespace", "default"))


def phase_from_pod(pod: Optional[Mapping[str, Any]], role: ContainerRole, index: int = 0) -> PhaseStatus:
    """
    Reads one container's state out of a serialized pod (camelCase keys, as
    returned by ``kubectl get -o json`` or the API client's serializer).

    A pod without statuses for the container yet is Pending; anything that
    does not look like a pod is Unknown.
    """
    if not isinstance(pod, Mapping):
        return PhaseStatus.unknown()
    status = pod.get("status") or {}
    key = "initContainerStatuses" if role is ContainerRole.INIT else "containerStatuses"
    statuses = status.get(key) or []
    if index >= len(statuses):
        return PhaseStatus.pending()

    state = statuses[index].get("state") or {}
    if state.get("terminated") is not None:
        exit_code = state["terminated"].get("exitCode")
        if exit_code is None:
            return PhaseStatus.unknown()
        return PhaseStatus.terminated(int(exit_code))
    if state.get("running") is not None:
        return PhaseStatus.running()
    return PhaseStatus.pending()


def pod_is_ready(pod: Optional[Mapping[str, Any]]) -> bool:
    """True once the pod reports Ready, or its main containers have already exited."""
    if not isinstance(pod, Mapping):
        return False
    status = pod.get("status") or {}
    for condition in status.get("conditions") or []:
        if condition.get("type") == "Ready" and condition.get("status") == "True":
            return True
    if status.get("phase") in ("Succeeded", "Failed"):
        return True
    statuses = status.get("containerStatuses") or []
    return bool(statuses) and all((s.get("state") or {}).get("terminated") is not None for s in statuses)


def make_gateway(transport: str = "api", **kwargs) -> ClusterGateway:
    """Builds the adapter for ``transport`` ('api' or 'kubectl')."""
    if transport == "api":
        from kube_api_gateway import KubernetesApiGateway
        return KubernetesApiGateway(**kwargs)
    if transport == "kubectl":
        from kubectl_gateway import KubectlGateway
        return KubectlGateway(**kwargs)
    raise GatewayError(f"Unknown transport '{transport}', expected one of {TRANSPORTS}")
