"""Prerequisite checks run before anything is created in the cluster."""
import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from errors import GatewayError, PrerequisiteError
from gateway import ClusterGateway
from models.job import Toleration

logger = logging.getLogger(__name__)

BENCH_TOLERATION = Toleration(key="node_group", value="bench_test", effect="NoSchedule")
TOLERATION_MODES = ("auto", "always", "never")


@dataclass(frozen=True)
class ClusterProfile:
    context: str
    cluster_type: str
    tolerations: Tuple[Toleration, ...] = ()


def detect_cluster_type(context: str, node_labels: List[Dict[str, str]]) -> str:
    """Classifies the cluster as 'minikube', 'eks' or 'unknown'."""
    lowered = context.lower()
    if "minikube" in lowered:
        return "minikube"
    if "eks" in lowered:
        return "eks"
    for labels in node_labels[:1]:
        if any("eks" in key or "eks" in value for key, value in labels.items()):
            return "eks"
    return "unknown"


def select_tolerations(gateway: ClusterGateway, cluster_type: str, mode: str = "auto") -> Tuple[Toleration, ...]:
    """
    Decides whether the benchmark pod must tolerate the bench_test node group taint.

    In 'auto' mode tolerations are only added on EKS clusters whose nodes
    actually carry the ``node_group=bench_test`` taint.
    """
    if mode not in TOLERATION_MODES:
        raise ValueError(f"Unknown toleration mode '{mode}'")
    if mode == "always":
        return (BENCH_TOLERATION,)
    if mode == "never":
        return ()
    if cluster_type != "eks":
        logger.info("Minikube or other cluster: tolerations not needed")
        return ()
    wanted = f"{BENCH_TOLERATION.key}={BENCH_TOLERATION.value}"
    if any(taint.startswith(wanted + ":") for taint in gateway.node_taints()):
        logger.info("EKS detected: adding tolerations for bench_test node group")
        return (BENCH_TOLERATION,)
    logger.info("EKS detected but bench_test node group taint not found, skipping tolerations")
    return ()


def check_prerequisites(gateway: ClusterGateway, namespace: str, toleration_mode: str = "auto") -> ClusterProfile:
    """
    Verifies cluster access, ensures the namespace exists and inspects the nodes.

    The namespace is treated as shared infrastructure: it is created when
    missing and left in place afterwards.

    Raises:
        PrerequisiteError: If the cluster cannot be reached or the namespace cannot be created.
    """
    logger.info("Checking prerequisites...")
    if not gateway.cluster_reachable():
        raise PrerequisiteError(
            "Cannot access Kubernetes cluster. Ensure the cluster is running and "
            "kubectl is configured (kubectl config get-contexts / use-context)."
        )
    logger.info("Kubernetes cluster accessible")

    context = gateway.current_context()
    logger.info(f"Current context: {context}")

    try:
        if not gateway.namespace_exists(namespace):
            logger.warning(f"Namespace '{namespace}' does not exist, creating...")
            gateway.create_namespace(namespace)
    except GatewayError as e:
        raise PrerequisiteError(f"Namespace '{namespace}' is not usable: {e}") from e

    cluster_type = detect_cluster_type(context, gateway.node_labels())
    logger.info(f"Cluster type: {cluster_type}")
    tolerations = select_tolerations(gateway, cluster_type, toleration_mode)
    return ClusterProfile(context=context, cluster_type=cluster_type, tolerations=tolerations)
