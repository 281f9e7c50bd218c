"""ClusterGateway backed by the kubectl CLI."""
import json
import logging
import shutil
import subprocess
from typing import Any, Dict, List, Mapping, Optional

from errors import (
    AlreadyExists,
    GatewayError,
    InvalidManifest,
    NotFound,
    NotReady,
    PrerequisiteError,
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
from models.job import ContainerRole, PhaseStatus, ResourceRef

logger = logging.getLogger(__name__)

# --- Configuration ---
DELETE_TIMEOUT_SECONDS = 120
COMMAND_TIMEOUT_SECONDS = 60
CHUNK_SIZE = 4096
STREAM_TERMINATE_TIMEOUT = 5


def run_command(command: List[str], input_data: Optional[bytes] = None,
                timeout: Optional[float] = COMMAND_TIMEOUT_SECONDS, quiet: bool = False) -> subprocess.CompletedProcess:
    """Runs a command, capturing stdout/stderr as bytes. Raises CalledProcessError on failure."""
    log = logger.debug if quiet else logger.info
    try:
        log(f"Running command: {' '.join(command)}")
        return subprocess.run(command, input=input_data, check=True, capture_output=True, timeout=timeout)
    except subprocess.CalledProcessError as e:
        log = logger.debug if quiet else logger.error
        log(f"Command failed with exit code {e.returncode}")
        log(f"STDERR: {_text(e.stderr)}")
        raise


def _text(data: Any) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data or ""


def translate_error(error: subprocess.CalledProcessError, what: str) -> GatewayError:
    """Maps kubectl's stderr onto the gateway error taxonomy."""
    stderr = _text(error.stderr).strip()
    message = f"{what}: {stderr or f'kubectl exited with {error.returncode}'}"
    if is_not_ready_message(stderr):
        return NotReady(message)
    if "AlreadyExists" in stderr or "already exists" in stderr:
        return AlreadyExists(message)
    if "Forbidden" in stderr or "forbidden" in stderr or "Unauthorized" in stderr:
        return Unauthorized(message)
    if "NotFound" in stderr or "not found" in stderr:
        return NotFound(message)
    if "error validating" in stderr or "is invalid" in stderr or "Invalid value" in stderr:
        return InvalidManifest(message)
    return GatewayError(message)


COMMAND_ERRORS = (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError)


def command_error(error: Exception, what: str) -> GatewayError:
    """Maps any failure of a kubectl invocation onto a GatewayError."""
    if isinstance(error, subprocess.CalledProcessError):
        return translate_error(error, what)
    if isinstance(error, subprocess.TimeoutExpired):
        return GatewayError(f"{what}: kubectl timed out after {error.timeout}s")
    return GatewayError(f"{what}: could not run kubectl: {error}")


class _ProcessLogStream(LogStream):
    """Wraps a running ``kubectl logs -f`` process."""

    def __init__(self, process: subprocess.Popen):
        self._process = process

    def __iter__(self):
        stdout = self._process.stdout
        for chunk in iter(lambda: stdout.read1(CHUNK_SIZE), b""):
            yield chunk

    def close(self) -> None:
        process = self._process
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=STREAM_TERMINATE_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning(f"kubectl logs (PID {process.pid}) did not terminate after {STREAM_TERMINATE_TIMEOUT}s. Killing...")
                process.kill()
                process.wait(timeout=2)
        if process.stdout:
            process.stdout.close()


class KubectlGateway(ClusterGateway):

    def __init__(self, binary: str = "kubectl", context: Optional[str] = None):
        self.binary = binary
        self.context = context

    def _cmd(self, *args: str) -> List[str]:
        command = [self.binary]
        if self.context:
            command.append(f"--context={self.context}")
        command.extend(args)
        return command

    def check_available(self) -> str:
        """Returns the kubectl client version line. Raises PrerequisiteError if kubectl is missing."""
        if shutil.which(self.binary) is None:
            raise PrerequisiteError(f"'{self.binary}' is not installed or not in PATH")
        try:
            result = run_command(self._cmd("version", "--client"), quiet=True)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return "installed"
        lines = _text(result.stdout).strip().splitlines()
        return lines[0] if lines else "installed"

    # --- Provisioning ---
    def _create(self, doc: Mapping[str, Any], what: str) -> None:
        try:
            run_command(self._cmd("create", "-f", "-"), input_data=json.dumps(doc).encode("utf-8"))
        except COMMAND_ERRORS as e:
            raise command_error(e, what) from e

    def create_secret(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        # Passed on stdin so credential values never show up in the process list.
        doc = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": namespace},
            "stringData": dict(data),
        }
        self._create(doc, f"create secret {name}")

    def create_config_map(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        doc = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": namespace},
            "data": dict(data),
        }
        self._create(doc, f"create configmap {name}")

    def apply_manifest(self, doc: Mapping[str, Any]) -> ResourceRef:
        ref = pod_ref_from_manifest(doc)
        try:
            run_command(self._cmd("apply", "-f", "-"), input_data=json.dumps(dict(doc)).encode("utf-8"))
        except COMMAND_ERRORS as e:
            raise command_error(e, f"apply {ref}") from e
        return ref

    def delete_resource(self, ref: ResourceRef) -> None:
        command = self._cmd(
            "delete", ref.kind.value, ref.name,
            f"--namespace={ref.namespace}",
            "--ignore-not-found=true",
            "--wait=true",
            f"--timeout={DELETE_TIMEOUT_SECONDS}s",
        )
        try:
            run_command(command, timeout=DELETE_TIMEOUT_SECONDS + 30)
        except COMMAND_ERRORS as e:
            error = command_error(e, f"delete {ref}")
            if isinstance(error, NotFound):
                return
            raise error from e

    # --- Observation ---
    def _get_pod(self, ref: ResourceRef) -> Dict[str, Any]:
        result = run_command(self._cmd("get", "pod", ref.name, f"--namespace={ref.namespace}", "-o", "json"), quiet=True)
        return json.loads(result.stdout)

    def get_phase(self, ref: ResourceRef, role: ContainerRole, index: int = 0) -> PhaseStatus:
        try:
            pod = self._get_pod(ref)
        except COMMAND_ERRORS + (ValueError,) as e:
            logger.debug(f"Phase lookup for {ref} failed, reporting Unknown: {e}")
            return PhaseStatus.unknown()
        return phase_from_pod(pod, role, index)

    def fetch_logs(self, ref: ResourceRef, container: str, tail_lines: Optional[int] = None) -> bytes:
        command = self._cmd("logs", ref.name, f"--namespace={ref.namespace}", "-c", container)
        if tail_lines is not None:
            command.append(f"--tail={tail_lines}")
        try:
            return run_command(command, quiet=True).stdout
        except COMMAND_ERRORS as e:
            raise command_error(e, f"logs {ref} -c {container}") from e

    def stream_logs(self, ref: ResourceRef, container: str) -> LogStream:
        # kubectl logs -f exits immediately for a container that has not started,
        # so check first to surface NotReady to the caller.
        self.fetch_logs(ref, container, tail_lines=0)
        command = self._cmd("logs", "-f", ref.name, f"--namespace={ref.namespace}", "-c", container)
        logger.info(f"Running command: {' '.join(command)}")
        try:
            process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise GatewayError(f"Could not start '{self.binary} logs -f': {e}") from e
        return _ProcessLogStream(process)

    def wait_until_ready(self, ref: ResourceRef, timeout: float) -> bool:
        seconds = max(1, int(timeout))
        command = self._cmd(
            "wait", "--for=condition=Ready", f"pod/{ref.name}",
            f"--namespace={ref.namespace}", f"--timeout={seconds}s",
        )
        try:
            run_command(command, timeout=seconds + 30, quiet=True)
            return True
        except COMMAND_ERRORS:
            pass
        # A container that already exited never reports Ready.
        try:
            return pod_is_ready(self._get_pod(ref))
        except COMMAND_ERRORS + (ValueError,):
            return False

    def describe(self, ref: ResourceRef) -> str:
        try:
            result = run_command(self._cmd("describe", ref.kind.value, ref.name, f"--namespace={ref.namespace}"), quiet=True)
        except COMMAND_ERRORS as e:
            return f"describe {ref} failed: {e}"
        return _text(result.stdout)

    # --- Cluster info ---
    def cluster_reachable(self) -> bool:
        try:
            run_command(self._cmd("cluster-info"), quiet=True)
            return True
        except COMMAND_ERRORS:
            return False

    def current_context(self) -> str:
        if self.context:
            return self.context
        try:
            return _text(run_command(self._cmd("config", "current-context"), quiet=True).stdout).strip() or "unknown"
        except COMMAND_ERRORS:
            return "unknown"

    def _nodes(self) -> List[Dict[str, Any]]:
        try:
            result = run_command(self._cmd("get", "nodes", "-o", "json"), quiet=True)
            return json.loads(result.stdout).get("items", [])
        except COMMAND_ERRORS + (ValueError,) as e:
            logger.warning(f"Could not list nodes: {e}")
            return []

    def node_labels(self) -> List[Dict[str, str]]:
        return [(node.get("metadata") or {}).get("labels") or {} for node in self._nodes()]

    def node_taints(self) -> List[str]:
        taints = []
        for node in self._nodes():
            for taint in (node.get("spec") or {}).get("taints") or []:
                taints.append(f"{taint.get('key')}={taint.get('value', '')}:{taint.get('effect', '')}")
        return taints

    def namespace_exists(self, namespace: str) -> bool:
        try:
            run_command(self._cmd("get", "namespace", namespace), quiet=True)
            return True
        except COMMAND_ERRORS as e:
            error = command_error(e, f"get namespace {namespace}")
            if isinstance(error, NotFound):
                return False
            raise error from e

    def create_namespace(self, namespace: str) -> None:
        try:
            run_command(self._cmd("create", "namespace", namespace))
        except COMMAND_ERRORS as e:
            raise command_error(e, f"create namespace {namespace}") from e
