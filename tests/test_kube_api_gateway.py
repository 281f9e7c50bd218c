from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from coordinator import JobOrchestrator
from errors import AlreadyExists, GatewayError, InvalidManifest, NotFound, NotReady, Unauthorized
from kube_api_gateway import KubernetesApiGateway, translate_error
from models.job import ContainerRole, PhaseState, PhaseStatus, RunPhase

pytestmark = pytest.mark.kubernetes


def api_error(status: int, body: str = "") -> ApiException:
    error = ApiException(status=status, reason="reason")
    error.body = body
    return error


def container_status(name: str, state: client.V1ContainerState) -> client.V1ContainerStatus:
    return client.V1ContainerStatus(name=name, image="img", image_id="", ready=False, restart_count=0, state=state)


def pod_with(init_state=None, main_state=None, conditions=None) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name="opendal-bench", namespace="default"),
        status=client.V1PodStatus(
            phase="Pending",
            conditions=conditions,
            init_container_statuses=[container_status("s3-connectivity-check", init_state)] if init_state else None,
            container_statuses=[container_status("opendal-bench", main_state)] if main_state else None,
        ),
    )


@pytest.fixture
def core_v1():
    return MagicMock()


@pytest.fixture
def api_gateway(core_v1):
    return KubernetesApiGateway(core_v1=core_v1, delete_timeout=5.0)


@pytest.mark.parametrize("status, body, expected", [
    (409, "", AlreadyExists),
    (401, "", Unauthorized),
    (403, "", Unauthorized),
    (404, "", NotFound),
    (400, 'container "opendal-bench" in pod "opendal-bench" is waiting to start: PodInitializing', NotReady),
    (400, "container opendal-bnech is not valid for pod opendal-bench", InvalidManifest),
    (422, "spec.containers: Required value", InvalidManifest),
    (500, "etcdserver: request timed out", GatewayError),
])
def test_translate_error(status, body, expected):
    assert type(translate_error(api_error(status, body), "op")) is expected


def test_get_phase_from_pod_object(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod.return_value = pod_with(
        init_state=client.V1ContainerState(terminated=client.V1ContainerStateTerminated(exit_code=1)),
    )

    assert api_gateway.get_phase(job_request.pod_ref, ContainerRole.INIT) == PhaseStatus.terminated(1)
    assert api_gateway.get_phase(job_request.pod_ref, ContainerRole.MAIN) == PhaseStatus.pending()


def test_get_phase_running(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod.return_value = pod_with(
        init_state=client.V1ContainerState(terminated=client.V1ContainerStateTerminated(exit_code=0)),
        main_state=client.V1ContainerState(running=client.V1ContainerStateRunning()),
    )

    assert api_gateway.get_phase(job_request.pod_ref, ContainerRole.MAIN).state is PhaseState.RUNNING


def test_get_phase_api_error_is_unknown(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod.side_effect = api_error(500)

    assert api_gateway.get_phase(job_request.pod_ref, ContainerRole.INIT).state is PhaseState.UNKNOWN


def test_create_secret_uses_string_data(api_gateway, core_v1):
    api_gateway.create_secret("s3-credentials", "default", {"access_key_id": "AKIA"})

    body = core_v1.create_namespaced_secret.call_args.kwargs["body"]
    assert isinstance(body, client.V1Secret)
    assert body.string_data == {"access_key_id": "AKIA"}
    assert body.metadata.name == "s3-credentials"


def test_create_conflict(api_gateway, core_v1):
    core_v1.create_namespaced_config_map.side_effect = api_error(409)

    with pytest.raises(AlreadyExists):
        api_gateway.create_config_map("opendal-bench-config", "default", {})


def test_apply_manifest(api_gateway, core_v1, job_request):
    from manifest import build_pod_manifest

    ref = api_gateway.apply_manifest(build_pod_manifest(job_request))

    assert ref == job_request.pod_ref
    assert core_v1.create_namespaced_pod.call_args.kwargs["namespace"] == "default"


def test_apply_manifest_invalid(api_gateway, core_v1, job_request):
    from manifest import build_pod_manifest

    core_v1.create_namespaced_pod.side_effect = api_error(422, "invalid")

    with pytest.raises(InvalidManifest):
        api_gateway.apply_manifest(build_pod_manifest(job_request))


def test_delete_missing_is_success(api_gateway, core_v1, job_request):
    core_v1.delete_namespaced_secret.side_effect = api_error(404)

    api_gateway.delete_resource(job_request.secret_ref)

    core_v1.delete_namespaced_secret.assert_called_once_with(name="s3-credentials", namespace="default")


def test_delete_pod_waits_until_gone(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod.side_effect = api_error(404)

    api_gateway.delete_resource(job_request.pod_ref)

    core_v1.delete_namespaced_pod.assert_called_once()
    core_v1.read_namespaced_pod.assert_called_once()


def test_delete_failure_raises(api_gateway, core_v1, job_request):
    core_v1.delete_namespaced_config_map.side_effect = api_error(403)

    with pytest.raises(Unauthorized):
        api_gateway.delete_resource(job_request.config_ref)


def test_fetch_logs_returns_bytes(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod_log.return_value = MagicMock(data=b"QPS: 1.0\n")

    assert api_gateway.fetch_logs(job_request.pod_ref, "opendal-bench", tail_lines=50) == b"QPS: 1.0\n"
    kwargs = core_v1.read_namespaced_pod_log.call_args.kwargs
    assert kwargs["tail_lines"] == 50
    assert kwargs["_preload_content"] is False


def test_stream_logs_not_ready(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod_log.side_effect = api_error(400, "container is waiting to start: ContainerCreating")

    with pytest.raises(NotReady):
        api_gateway.stream_logs(job_request.pod_ref, "opendal-bench")


def test_stream_logs_yields_chunks(api_gateway, core_v1, job_request):
    response = MagicMock()
    response.stream.return_value = iter([b"a", b"", b"b"])
    core_v1.read_namespaced_pod_log.return_value = response

    stream = api_gateway.stream_logs(job_request.pod_ref, "opendal-bench")

    assert list(stream) == [b"a", b"b"]
    stream.close()
    response.release_conn.assert_called_once()
    assert core_v1.read_namespaced_pod_log.call_args.kwargs["follow"] is True


def test_wait_until_ready_short_circuits(api_gateway, core_v1, job_request):
    core_v1.read_namespaced_pod.return_value = pod_with(
        conditions=[client.V1PodCondition(type="Ready", status="True")],
    )

    assert api_gateway.wait_until_ready(job_request.pod_ref, 10) is True
    core_v1.list_namespaced_pod.assert_not_called()


def test_namespace_exists(api_gateway, core_v1):
    core_v1.read_namespace.side_effect = api_error(404)

    assert api_gateway.namespace_exists("bench") is False


def test_node_taints(api_gateway, core_v1):
    core_v1.list_node.return_value = client.V1NodeList(items=[
        client.V1Node(
            metadata=client.V1ObjectMeta(labels={"eks.amazonaws.com/nodegroup": "bench"}),
            spec=client.V1NodeSpec(taints=[client.V1Taint(key="node_group", value="bench_test", effect="NoSchedule")]),
        ),
    ])

    assert api_gateway.node_taints() == ["node_group=bench_test:NoSchedule"]
    assert api_gateway.node_labels() == [{"eks.amazonaws.com/nodegroup": "bench"}]


def test_cluster_reachable(api_gateway, core_v1):
    core_v1.get_api_resources.side_effect = api_error(401)

    assert api_gateway.cluster_reachable() is False


# --- Transport failures ---
def connection_refused(path: str) -> MaxRetryError:
    return MaxRetryError(None, path, reason=ProtocolError("Connection refused"))


@pytest.mark.parametrize("call, method", [
    (lambda gw, req: gw.create_secret("s3-credentials", "default", {"a": "b"}), "create_namespaced_secret"),
    (lambda gw, req: gw.create_config_map("bench-config", "default", {"a": "b"}), "create_namespaced_config_map"),
    (lambda gw, req: gw.apply_manifest({"kind": "Pod", "metadata": {"name": req.pod_name}}), "create_namespaced_pod"),
    (lambda gw, req: gw.namespace_exists("bench"), "read_namespace"),
    (lambda gw, req: gw.create_namespace("bench"), "create_namespace"),
])
def test_transport_failure_becomes_gateway_error(api_gateway, core_v1, job_request, call, method):
    getattr(core_v1, method).side_effect = connection_refused("/api/v1/namespaces")

    with pytest.raises(GatewayError, match="Connection refused"):
        call(api_gateway, job_request)


def test_unreachable_api_server_aborts_run_with_cleanup(api_gateway, core_v1, job_request, clock):
    core_v1.read_namespaced_pod.side_effect = api_error(404)
    core_v1.create_namespaced_secret.side_effect = connection_refused("/api/v1/namespaces/default/secrets")

    result = JobOrchestrator(api_gateway, job_request, clock=clock).run()

    assert result.phase is RunPhase.ABORTED
    assert "Connection refused" in result.reason
    assert result.leaked == ()
    core_v1.create_namespaced_config_map.assert_not_called()
    core_v1.create_namespaced_pod.assert_not_called()
    assert core_v1.delete_namespaced_secret.call_count == 2
