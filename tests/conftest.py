"""
Test configuration and fixtures for pytest.

Provides an in-memory ClusterGateway with scripted container phases and log
output, and a simulated clock so deadlines can be exercised without waiting.
"""
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest

# Add the project root to sys.path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

from errors import AlreadyExists, InvalidManifest, NotFound, NotReady  # noqa: E402
from gateway import ClusterGateway, LogStream  # noqa: E402
from models.job import (  # noqa: E402
    ContainerRole,
    JobRequest,
    PhaseStatus,
    ResourceKind,
    ResourceRef,
    S3Credentials,
    S3Target,
)


def pytest_configure(config):
    config.addinivalue_line("markers", "kubernetes: exercises a cluster adapter against a mocked client")


class FakeClock:
    """Simulated time: sleep() advances the clock instead of blocking."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Give the log streamer thread a chance to run.
        time.sleep(0.001)


class FakeLogStream(LogStream):
    def __init__(self, chunks: List[bytes], done: threading.Event):
        self.chunks = list(chunks)
        self.done = done
        self.closed = False

    def __iter__(self):
        for chunk in self.chunks:
            if self.closed:
                return
            yield chunk
        self.done.set()

    def close(self) -> None:
        self.closed = True


class FakeGateway(ClusterGateway):
    """
    In-memory cluster.

    ``init_phases`` and ``main_phases`` are scripts consumed one entry per
    get_phase call; the last entry repeats. While ``hold_main_until_streamed``
    is set, the main container reports Running until the log stream has been
    read to the end, so tests see every streamed chunk before completion.
    ``stream_scripts`` gives each stream_logs call its own chunks, one entry
    per call with the last entry repeating; only the last one counts as read
    to the end.
    """

    def __init__(self):
        self.objects: Dict[ResourceRef, Any] = {}
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, BaseException] = {}
        self.delete_failures: Dict[ResourceRef, BaseException] = {}

        self.init_phases: List[PhaseStatus] = [PhaseStatus.terminated(0)]
        self.main_phases: List[PhaseStatus] = [PhaseStatus.terminated(0)]
        self.phase_polls = {ContainerRole.INIT: 0, ContainerRole.MAIN: 0}
        self.hold_main_until_streamed = True

        self.stream_chunks: List[bytes] = []
        self.stream_done = threading.Event()
        self.stream_not_ready = 0
        self.stream_scripts: List[List[bytes]] = []
        self.init_logs = b""
        self.main_logs: Optional[bytes] = None
        self.ready = True
        self.description = "Events:\n  Warning  FailedScheduling  0/3 nodes are available"

        self.reachable = True
        self.context = "minikube"
        self.labels: List[Dict[str, str]] = [{"kubernetes.io/hostname": "minikube"}]
        self.taints: List[str] = []
        self.namespaces = {"default"}

        self._lock = threading.Lock()

    # --- helpers ---
    def _record(self, name: str, *args) -> None:
        with self._lock:
            self.calls.append((name,) + args)
        if name in self.fail_on:
            raise self.fail_on[name]

    def called(self, name: str) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if c[0] == name]

    # --- provisioning ---
    def create_secret(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        ref = ResourceRef(ResourceKind.SECRET, name, namespace)
        self._record("create_secret", ref)
        if ref in self.objects:
            raise AlreadyExists(f"{ref} already exists")
        self.objects[ref] = dict(data)

    def create_config_map(self, name: str, namespace: str, data: Mapping[str, str]) -> None:
        ref = ResourceRef(ResourceKind.CONFIG_MAP, name, namespace)
        self._record("create_config_map", ref)
        if ref in self.objects:
            raise AlreadyExists(f"{ref} already exists")
        self.objects[ref] = dict(data)

    def apply_manifest(self, doc: Mapping[str, Any]) -> ResourceRef:
        metadata = doc.get("metadata") or {}
        if doc.get("kind") != "Pod" or not metadata.get("name"):
            raise InvalidManifest("only named pods")
        ref = ResourceRef(ResourceKind.POD, metadata["name"], metadata.get("namespace", "default"))
        self._record("apply_manifest", ref)
        if ref in self.objects:
            raise AlreadyExists(f"{ref} already exists")
        self.objects[ref] = dict(doc)
        return ref

    def delete_resource(self, ref: ResourceRef) -> None:
        self._record("delete_resource", ref)
        if ref in self.objects and ref in self.delete_failures:
            raise self.delete_failures[ref]
        self.objects.pop(ref, None)

    # --- observation ---
    def get_phase(self, ref: ResourceRef, role: ContainerRole, index: int = 0) -> PhaseStatus:
        self._record("get_phase", ref, role)
        if (role is ContainerRole.MAIN and self.hold_main_until_streamed
                and self.stream_chunks and not self.stream_done.is_set()):
            return PhaseStatus.running()
        script = self.init_phases if role is ContainerRole.INIT else self.main_phases
        with self._lock:
            position = self.phase_polls[role]
            self.phase_polls[role] += 1
        return script[min(position, len(script) - 1)]

    def fetch_logs(self, ref: ResourceRef, container: str, tail_lines: Optional[int] = None) -> bytes:
        self._record("fetch_logs", ref, container)
        if ref not in self.objects:
            raise NotFound(f"{ref} not found")
        if container == "s3-connectivity-check":
            data = self.init_logs
        else:
            data = self.main_logs if self.main_logs is not None else b"".join(self.stream_chunks)
        if tail_lines is not None:
            data = b"".join(data.splitlines(keepends=True)[-tail_lines:]) if tail_lines else b""
        return data

    def stream_logs(self, ref: ResourceRef, container: str) -> LogStream:
        self._record("stream_logs", ref, container)
        with self._lock:
            if self.stream_not_ready > 0:
                self.stream_not_ready -= 1
                raise NotReady(f'container "{container}" in pod "{ref.name}" is waiting to start')
            if len(self.stream_scripts) > 1:
                return FakeLogStream(self.stream_scripts.pop(0), threading.Event())
            if self.stream_scripts:
                return FakeLogStream(self.stream_scripts[0], self.stream_done)
        return FakeLogStream(self.stream_chunks, self.stream_done)

    def wait_until_ready(self, ref: ResourceRef, timeout: float) -> bool:
        self._record("wait_until_ready", ref, timeout)
        return self.ready

    def describe(self, ref: ResourceRef) -> str:
        self._record("describe", ref)
        return self.description

    # --- cluster info ---
    def cluster_reachable(self) -> bool:
        return self.reachable

    def current_context(self) -> str:
        return self.context

    def node_labels(self) -> List[Dict[str, str]]:
        return self.labels

    def node_taints(self) -> List[str]:
        return self.taints

    def namespace_exists(self, namespace: str) -> bool:
        self._record("namespace_exists", namespace)
        return namespace in self.namespaces

    def create_namespace(self, namespace: str) -> None:
        self._record("create_namespace", namespace)
        self.namespaces.add(namespace)


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def request_factory():
    """Builds JobRequests with short deadlines; keyword arguments override fields."""

    def factory(**overrides) -> JobRequest:
        fields = dict(
            credentials=S3Credentials("AKIAEXAMPLE", "secret-example"),
            target=S3Target(endpoint="s3.example.com", bucket="bench-bucket", region="us-east-1"),
            poll_interval=1.0,
            init_deadline=10.0,
            ready_deadline=10.0,
            overall_deadline=100.0,
        )
        fields.update(overrides)
        return JobRequest(**fields)

    return factory


@pytest.fixture
def job_request(request_factory):
    return request_factory()
