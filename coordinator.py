"""
Lifecycle state machine for one benchmark run.

Idle -> Provisioning -> AwaitingInit -> (InitFailed | AwaitingMain -> Streaming
-> Completed) -> CleaningUp -> Done

Every resource created while provisioning is registered with a ResourceTracker
that is used as a context manager around the whole run, so teardown happens on
success, failure, timeout and operator interrupt alike.
"""
import logging
from enum import Enum
from typing import Any, BinaryIO, Dict, Iterator, List, Mapping, Optional

from errors import (
    CleanupError,
    GatewayError,
    InitCheckFailed,
    ProvisioningError,
    RunTimedOut,
    WorkloadFailed,
)
from gateway import ClusterGateway, pod_ref_from_manifest
from manifest import build_pod_manifest, config_data, secret_data
from models.job import ContainerRole, JobRequest, ResourceRef, RunPhase, RunResult
from poller import Clock, PollState, ReadinessPoller
from streamer import LogSink, LogStreamer, missing_suffix

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "Idle"
    PROVISIONING = "Provisioning"
    AWAITING_INIT = "AwaitingInit"
    INIT_FAILED = "InitFailed"
    AWAITING_MAIN = "AwaitingMain"
    STREAMING = "Streaming"
    COMPLETED = "Completed"
    CLEANING_UP = "CleaningUp"
    DONE = "Done"


# --- Resource Tracking ---
class ResourceTracker:
    """
    The set of cluster objects created during one run.

    A resource is added just before it is created and removed only after it
    was deleted. Deletion failures, including an interrupt during a single
    deletion, are logged and leave the resource in the set, where it is
    reported as leaked.
    """

    def __init__(self, gateway: ClusterGateway):
        self.gateway = gateway
        self._resources: Dict[ResourceRef, None] = {}
        self.interrupted = False

    def add(self, ref: ResourceRef) -> None:
        self._resources[ref] = None

    def __contains__(self, ref: ResourceRef) -> bool:
        return ref in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[ResourceRef]:
        return iter(list(self._resources))

    def __enter__(self) -> "ResourceTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        reason = "cleanup" if exc_type is None else f"cleanup after {exc_type.__name__}"
        self.release_all(reason=reason)
        return False

    def release_all(self, reason: str = "cleanup") -> List[ResourceRef]:
        """
        Deletes every tracked resource, newest first, continuing past failures.

        Args:
            reason: Shown in the log lines.

        Returns:
            The resources that could not be deleted.
        """
        logger.info(f"Initiating {reason} for {len(self._resources)} resources...")
        for ref in reversed(list(self._resources)):
            try:
                self.gateway.delete_resource(ref)
            except GatewayError as e:
                logger.error(str(CleanupError(f"Failed to delete {ref}: {e}")))
                continue
            except KeyboardInterrupt:
                self.interrupted = True
                logger.error(str(CleanupError(f"Deletion of {ref} was interrupted; moving on to the rest.")))
                continue
            del self._resources[ref]
            logger.info(f"Deleted {ref}.")

        leaked = list(self._resources)
        if leaked:
            logger.error(f"{len(leaked)} resources were left behind: {', '.join(str(r) for r in leaked)}")
        else:
            logger.info(f"{reason.capitalize()} complete.")
        return leaked


# --- Orchestration ---
class JobOrchestrator:
    """
    Runs one benchmark pod from provisioning to teardown.

    Args:
        gateway: The only path to the cluster.
        request: The immutable run description.
        manifest: Pod manifest to apply. Built from ``request`` when omitted.
        output: Where the benchmark output is relayed live (the operator's stdout).
        artifact: The run's log file; receives init diagnostics then the full output.
        clock: Time source for polling; simulated in tests.
        log_path: Path of ``artifact``, recorded in the result.
    """

    def __init__(self, gateway: ClusterGateway, request: JobRequest, manifest: Optional[Mapping[str, Any]] = None,
                 output: Optional[BinaryIO] = None, artifact: Optional[BinaryIO] = None,
                 clock: Optional[Clock] = None, log_path: Optional[str] = None):
        self.gateway = gateway
        self.request = request
        self.manifest = dict(manifest) if manifest is not None else build_pod_manifest(request)
        self.output = output
        self.artifact = artifact
        self.clock = clock or Clock()
        self.log_path = log_path

        self.resources = ResourceTracker(gateway)
        self.main_sink = LogSink(output, artifact)
        self.state = OrchestratorState.IDLE
        self.history: List[OrchestratorState] = [OrchestratorState.IDLE]
        self.pod_ref: ResourceRef = request.pod_ref

        self._streamer: Optional[LogStreamer] = None
        self._started: Optional[float] = None
        self._phase: Optional[RunPhase] = None
        self._reason = ""
        self._init_exit_code: Optional[int] = None
        self._main_exit_code: Optional[int] = None
        self._init_logs = b""
        self._result: Optional[RunResult] = None

    def _transition(self, state: OrchestratorState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _record(self, phase: RunPhase, reason: str) -> None:
        if self._phase is None:
            self._phase = phase
            self._reason = reason

    # --- Output helpers ---
    def _write_artifact(self, data: bytes) -> None:
        if self.artifact is not None and data:
            self.artifact.write(data)
            self.artifact.flush()

    def _surface(self, data: bytes) -> None:
        """Shows diagnostics to the operator and keeps them in the log file."""
        if self.output is not None and data:
            self.output.write(data)
            self.output.flush()
        self._write_artifact(data)

    def _section(self, title: str) -> bytes:
        return f"\n===== {title} =====\n".encode("utf-8")

    # --- Run ---
    def run(self) -> RunResult:
        """
        Executes the whole lifecycle and returns the terminal RunResult.

        Provisioning and init-check failures short-circuit to cleanup. A
        KeyboardInterrupt (operator abort or SIGTERM) takes the same path and
        yields an Aborted result instead of propagating.
        """
        if self._result is not None:
            raise RuntimeError("A JobOrchestrator runs exactly once.")
        self._started = self.clock.monotonic()
        req = self.request
        logger.info(f"Starting benchmark run for pod '{req.pod_name}' in namespace '{req.namespace}'")

        with self.resources:
            try:
                self.provision()
                self._await_init()
                self._await_main()
                self._stream_until_complete()
                self._record(RunPhase.SUCCEEDED, "Benchmark completed successfully")
            except ProvisioningError as e:
                logger.error(f"Provisioning failed: {e}")
                self._record(RunPhase.ABORTED, str(e))
            except InitCheckFailed as e:
                self._record(RunPhase.INIT_FAILED, str(e))
            except RunTimedOut as e:
                self._record(RunPhase.TIMED_OUT, str(e))
            except WorkloadFailed as e:
                self._record(RunPhase.FAILED, str(e))
            except GatewayError as e:
                logger.error(f"Cluster operation failed during the run: {e}")
                self._record(RunPhase.ABORTED, str(e))
            except KeyboardInterrupt:
                logger.warning("Run interrupted by operator. Cleaning up before exit.")
                self._record(RunPhase.ABORTED, "Interrupted by operator")
            finally:
                try:
                    self._stop_streamer()
                except KeyboardInterrupt:
                    logger.warning("Interrupted while stopping the log stream. Cleaning up before exit.")
                    self._record(RunPhase.ABORTED, "Interrupted by operator")
                self._transition(OrchestratorState.CLEANING_UP)

        self._transition(OrchestratorState.DONE)
        self._result = RunResult(
            phase=self._phase or RunPhase.ABORTED,
            init_exit_code=self._init_exit_code,
            main_exit_code=self._main_exit_code,
            logs=self.main_sink.getvalue(),
            init_logs=self._init_logs,
            duration=self.clock.monotonic() - self._started,
            reason=self._reason,
            leaked=tuple(self.resources),
            log_path=self.log_path,
        )
        logger.info(f"Run finished: {self._result.phase.value} ({self._result.reason}) in {self._result.duration:.1f}s")
        return self._result

    def provision(self) -> ResourceRef:
        """
        Deletes leftovers from an earlier run, then creates the secret, the
        config object and the pod. Each one is registered before its create
        call, so an object the cluster accepted just before a failure or an
        interrupt is still deleted during cleanup.

        Raises:
            ProvisioningError: If any cluster call fails.
        """
        self._transition(OrchestratorState.PROVISIONING)
        req = self.request
        try:
            logger.info("Cleaning up existing resources...")
            for ref in (req.pod_ref, req.config_ref, req.secret_ref):
                self.gateway.delete_resource(ref)

            logger.info(f"Creating secret '{req.secret_name}' for AWS credentials...")
            self.resources.add(req.secret_ref)
            self.gateway.create_secret(req.secret_name, req.namespace, secret_data(req))

            logger.info(f"Creating config object '{req.config_name}' for benchmark settings...")
            self.resources.add(req.config_ref)
            self.gateway.create_config_map(req.config_name, req.namespace, config_data(req))

            logger.info(f"Deploying benchmark pod '{req.pod_name}'...")
            self.pod_ref = pod_ref_from_manifest(self.manifest)
            self.resources.add(self.pod_ref)
            self.gateway.apply_manifest(self.manifest)
        except GatewayError as e:
            raise ProvisioningError(str(e)) from e
        return self.pod_ref

    def _capture_init_logs(self, surface: bool) -> bytes:
        container = self.request.init_container
        try:
            logs = self.gateway.fetch_logs(self.pod_ref, container)
        except GatewayError as e:
            logger.warning(f"Could not fetch logs of init container '{container}': {e}")
            logs = b""
        self._init_logs = logs
        header = self._section(f"Init container: {container}")
        if surface:
            self._surface(header + logs)
        else:
            self._write_artifact(header + logs)
        return logs

    def _await_init(self) -> None:
        self._transition(OrchestratorState.AWAITING_INIT)
        req = self.request
        outcome = ReadinessPoller(
            self.gateway, self.pod_ref, ContainerRole.INIT, req.init_deadline,
            interval=req.poll_interval, clock=self.clock,
        ).wait()

        if outcome.state is PollState.READY:
            self._init_exit_code = 0
            logger.info("S3 connectivity check passed!")
            self._capture_init_logs(surface=False)
            return

        self._transition(OrchestratorState.INIT_FAILED)
        self._init_exit_code = outcome.exit_code
        logger.error("S3 connectivity check FAILED! Init container logs:")
        self._capture_init_logs(surface=True)
        if outcome.state is PollState.TIMED_OUT:
            raise RunTimedOut(f"Init container did not finish within {req.init_deadline:.0f}s")
        raise InitCheckFailed(f"S3 connectivity check exited with code {outcome.exit_code}", outcome.exit_code)

    def _await_main(self) -> None:
        self._transition(OrchestratorState.AWAITING_MAIN)
        req = self.request
        logger.info("Waiting for benchmark container to start...")
        if self.gateway.wait_until_ready(self.pod_ref, req.ready_deadline):
            logger.info("Benchmark container started!")
            return

        logger.error(f"Benchmark container did not become ready within {req.ready_deadline:.0f}s")
        self._surface(self._section(f"Pod description: {self.pod_ref.name}")
                      + self.gateway.describe(self.pod_ref).encode("utf-8"))
        try:
            self._surface(self._section(f"Benchmark container: {req.main_container}")
                          + self.gateway.fetch_logs(self.pod_ref, req.main_container))
        except GatewayError as e:
            logger.debug(f"No benchmark logs available: {e}")
        raise RunTimedOut(f"Benchmark container did not become ready within {req.ready_deadline:.0f}s")

    def _stream_until_complete(self) -> None:
        self._transition(OrchestratorState.STREAMING)
        req = self.request
        remaining = max(0.0, req.overall_deadline - (self.clock.monotonic() - self._started))

        self._write_artifact(self._section(f"Benchmark container: {req.main_container}"))
        logger.info("Streaming benchmark logs...")
        self._streamer = LogStreamer(self.gateway, self.pod_ref, req.main_container, self.main_sink,
                                     retry_interval=req.poll_interval)
        self._streamer.start()
        try:
            outcome = ReadinessPoller(
                self.gateway, self.pod_ref, ContainerRole.MAIN, remaining,
                interval=req.poll_interval, clock=self.clock,
            ).wait()
        finally:
            self._stop_streamer()

        self._transition(OrchestratorState.COMPLETED)
        self._final_log_fetch()

        if outcome.state is PollState.READY:
            self._main_exit_code = 0
            return
        if outcome.state is PollState.FAILED:
            self._main_exit_code = outcome.exit_code
            raise WorkloadFailed(f"Benchmark exited with code {outcome.exit_code}", outcome.exit_code)
        raise RunTimedOut(f"Benchmark did not finish within the overall deadline of {req.overall_deadline:.0f}s")

    def _stop_streamer(self) -> None:
        if self._streamer is not None and self._streamer.running:
            self._streamer.cancel()

    def _final_log_fetch(self) -> None:
        """Catches bytes emitted between the stream closing and the container exiting."""
        logger.info("Capturing final logs...")
        try:
            full = self.gateway.fetch_logs(self.pod_ref, self.request.main_container)
        except GatewayError as e:
            logger.warning(f"Final log fetch failed: {e}")
            return
        self.main_sink.write(missing_suffix(self.main_sink.getvalue(), full))
