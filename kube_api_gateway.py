"""ClusterGateway backed by the official Kubernetes Python client."""
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from errors import (
    AlreadyExists,
    GatewayError,
    InvalidManifest,
    NotFound,
    NotReady,
    Unauthorized,
)
from gateway import (
    ClusterGateway,
    LogStream,
    is_not_ready_message,
    phase_from_pod,
    pod_is_ready,
    pod_ref_from_manifest,
)
from models.job import ContainerRole, PhaseStatus, ResourceKind, ResourceRef

logger = logging.getLogger(__name__)

# --- Configuration ---
DELETE_TIMEOUT_SECONDS = 120.0
DELETE_POLL_INTERVAL = 1.0
CHUNK_SIZE = 4096
MANAGED_BY_LABELS = {"app": "opendal-bench", "managed-by": "bench-orchestrator"}


def load_client_config(context: Optional[str] = None) -> bool:
    """Loads in-cluster config, falling back to kubeconfig. Returns True when in-cluster."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config.")
        return True
    except config.ConfigException:
        try:
            config.load_kube_config(context=context)
            logger.info("Loaded kubeconfig.")
            return False
        except config.ConfigException as e:
            logger.error("Could not configure Kubernetes client.")
            raise GatewayError(f"Cannot load Kubernetes configuration: {e}") from e


def translate_error(error: ApiException, what: str) -> GatewayError:
    body = error.body.decode("utf-8", errors="replace") if isinstance(error.body, bytes) else str(error.body or "")
    message = f"{what}: {error.status} {error.reason} {body}".strip()
    if error.status == 409:
        return AlreadyExists(message)
    if error.status in (401, 403):
        return Unauthorized(message)
    if error.status == 404:
        return NotFound(message)
    if error.status == 400 and is_not_ready_message(body):
        return NotReady(message)
    if error.status in (400, 422):
        return InvalidManifest(message)
    return GatewayError(message)


class _ResponseLogStream(LogStream):
    """Wraps the raw urllib3 response of a follow-mode log request."""

    def __init__(self, response):
        self._response = response

    def __iter__(self):
        for chunk in self._response.stream(CHUNK_SIZE):
            if chunk:
                yield chunk

    def close(self) -> None:
        try:
            self._response.close()
            self._response.release_conn()
        except (TransportError, OSError) as e:
            logger.debug(f"Error closing log stream: {e}")


class KubernetesApiGateway(ClusterGateway):

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None, context: Optional[str] = None,
                 delete_timeout: float = DELETE_TIMEOUT_SECONDS):
        self.context = context
        self.in_cluster = False
        if core_v1 is None:
            self.in_cluster = load_client_config(context)
            core_v1 = client.CoreV1Api()
        self.core_v1 = core_v1
        self.delete_timeout = delete_timeout
        self._serializer = client.ApiClient()

    def _serialize(self, obj: Any) -> Dict[str, Any]:
        return self._serializer.sanitize_for_serialization(obj)

    # --- Provisioning ---
    def create_secret(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=MANAGED_BY_LABELS),
            type="Opaque",
            string_data=dict(data),
        )
        try:
            self.core_v1.create_namespaced_secret(namespace=namespace, body=body)
        except ApiException as e:
            raise translate_error(e, f"create secret {name}") from e
        except TransportError as e:
            raise GatewayError(f"create secret {name}: {e}") from e
        logger.info(f"Created secret {name} in namespace {namespace}")

    def create_config_map(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=MANAGED_BY_LABELS),
            data=dict(data),
        )
        try:
            self.core_v1.create_namespaced_config_map(namespace=namespace, body=body)
        except ApiException as e:
            raise translate_error(e, f"create configmap {name}") from e
        except TransportError as e:
            raise GatewayError(f"create configmap {name}: {e}") from e
        logger.info(f"Created configmap {name} in namespace {namespace}")

    def apply_manifest(self, doc: Mapping[str, Any]) -> ResourceRef:
        ref = pod_ref_from_manifest(doc)
        try:
            self.core_v1.create_namespaced_pod(namespace=ref.namespace, body=dict(doc))
        except ApiException as e:
            raise translate_error(e, f"create {ref}") from e
        except TransportError as e:
            raise GatewayError(f"create {ref}: {e}") from e
        logger.info(f"Created pod {ref.name} in namespace {ref.namespace}")
        return ref

    def delete_resource(self, ref: ResourceRef) -> None:
        delete = {
            ResourceKind.POD: self.core_v1.delete_namespaced_pod,
            ResourceKind.SECRET: self.core_v1.delete_namespaced_secret,
            ResourceKind.CONFIG_MAP: self.core_v1.delete_namespaced_config_map,
        }[ref.kind]
        try:
            delete(name=ref.name, namespace=ref.namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{ref} already gone")
                return
            raise translate_error(e, f"delete {ref}") from e
        except TransportError as e:
            raise GatewayError(f"delete {ref}: {e}") from e

        if ref.kind is ResourceKind.POD:
            self._wait_pod_gone(ref)
        logger.info(f"Deleted {ref}")

    def _wait_pod_gone(self, ref: ResourceRef) -> None:
        # Pods terminate gracefully; a same-named pod cannot be created until this one is gone.
        deadline = time.monotonic() + self.delete_timeout
        while time.monotonic() < deadline:
            try:
                self.core_v1.read_namespaced_pod(name=ref.name, namespace=ref.namespace)
            except ApiException as e:
                if e.status == 404:
                    return
                logger.debug(f"Error while waiting for {ref} to disappear: {e.status} {e.reason}")
            except TransportError as e:
                logger.debug(f"Error while waiting for {ref} to disappear: {e}")
            time.sleep(DELETE_POLL_INTERVAL)
        raise GatewayError(f"{ref} still present {self.delete_timeout:.0f}s after deletion")

    # --- Observation ---
    def get_phase(self, ref: ResourceRef, role: ContainerRole, index: int = 0) -> PhaseStatus:
        try:
            pod = self.core_v1.read_namespaced_pod(name=ref.name, namespace=ref.namespace)
        except (ApiException, TransportError) as e:
            logger.debug(f"Phase lookup for {ref} failed, reporting Unknown: {e}")
            return PhaseStatus.unknown()
        return phase_from_pod(self._serialize(pod), role, index)

    def fetch_logs(self, ref: ResourceRef, container: str, tail_lines: Optional[int] = None) -> bytes:
        try:
            response = self.core_v1.read_namespaced_pod_log(
                name=ref.name, namespace=ref.namespace, container=container,
                tail_lines=tail_lines, _preload_content=False,
            )
            return response.data
        except ApiException as e:
            raise translate_error(e, f"logs {ref} -c {container}") from e
        except TransportError as e:
            raise GatewayError(f"logs {ref} -c {container}: {e}") from e

    def stream_logs(self, ref: ResourceRef, container: str) -> LogStream:
        try:
            response = self.core_v1.read_namespaced_pod_log(
                name=ref.name, namespace=ref.namespace, container=container,
                follow=True, _preload_content=False,
            )
        except ApiException as e:
            raise translate_error(e, f"stream logs {ref} -c {container}") from e
        except TransportError as e:
            raise GatewayError(f"stream logs {ref} -c {container}: {e}") from e
        return _ResponseLogStream(response)

    def wait_until_ready(self, ref: ResourceRef, timeout: float) -> bool:
        try:
            if pod_is_ready(self._serialize(self.core_v1.read_namespaced_pod(name=ref.name, namespace=ref.namespace))):
                return True
            w = watch.Watch()
            for event in w.stream(
                self.core_v1.list_namespaced_pod,
                namespace=ref.namespace,
                field_selector=f"metadata.name={ref.name}",
                timeout_seconds=max(1, int(timeout)),
            ):
                if pod_is_ready(self._serialize(event["object"])):
                    w.stop()
                    return True
        except (ApiException, TransportError) as e:
            logger.warning(f"Error while waiting for {ref} to become ready: {e}")
        return False

    def describe(self, ref: ResourceRef) -> str:
        lines = [f"{ref}"]
        try:
            pod = self._serialize(self.core_v1.read_namespaced_pod(name=ref.name, namespace=ref.namespace))
            status = pod.get("status") or {}
            lines.append(f"Phase: {status.get('phase', 'Unknown')}")
            for condition in status.get("conditions") or []:
                lines.append(f"Condition {condition.get('type')}={condition.get('status')} {condition.get('reason') or ''}".rstrip())
            for container in (status.get("initContainerStatuses") or []) + (status.get("containerStatuses") or []):
                lines.append(f"Container {container.get('name')}: {container.get('state')}")
            events = self.core_v1.list_namespaced_event(
                namespace=ref.namespace, field_selector=f"involvedObject.name={ref.name}",
            )
            for event in events.items:
                lines.append(f"Event {event.type} {event.reason}: {event.message}")
        except (ApiException, TransportError) as e:
            lines.append(f"describe failed: {e}")
        return "\n".join(lines)

    # --- Cluster info ---
    def cluster_reachable(self) -> bool:
        try:
            self.core_v1.get_api_resources()
            return True
        except (ApiException, TransportError) as e:
            logger.debug(f"Cluster not reachable: {e}")
            return False

    def current_context(self) -> str:
        if self.context:
            return self.context
        if self.in_cluster:
            return "in-cluster"
        try:
            _, active = config.list_kube_config_contexts()
            return active["name"]
        except (config.ConfigException, KeyError, TypeError):
            return "unknown"

    def node_labels(self) -> List[Dict[str, str]]:
        try:
            nodes = self.core_v1.list_node().items
        except (ApiException, TransportError) as e:
            logger.warning(f"Could not list nodes: {e}")
            return []
        return [node.metadata.labels or {} for node in nodes]

    def node_taints(self) -> List[str]:
        try:
            nodes = self.core_v1.list_node().items
        except (ApiException, TransportError) as e:
            logger.warning(f"Could not list nodes: {e}")
            return []
        taints = []
        for node in nodes:
            for taint in (node.spec.taints if node.spec else None) or []:
                taints.append(f"{taint.key}={taint.value or ''}:{taint.effect}")
        return taints

    def namespace_exists(self, namespace: str) -> bool:
        try:
            self.core_v1.read_namespace(name=namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise translate_error(e, f"read namespace {namespace}") from e
        except TransportError as e:
            raise GatewayError(f"read namespace {namespace}: {e}") from e

    def create_namespace(self, namespace: str) -> None:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
        try:
            self.core_v1.create_namespace(body=body)
        except ApiException as e:
            raise translate_error(e, f"create namespace {namespace}") from e
        except TransportError as e:
            raise GatewayError(f"create namespace {namespace}: {e}") from e
        logger.info(f"Created namespace {namespace}")
