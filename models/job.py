"""
Value types passed through a benchmark run.

A JobRequest is built once per invocation (from CLI flags and prompts) and is
never mutated. A RunResult is produced exactly once when the run ends.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

# --- Defaults ---
DEFAULT_POD_NAME = "opendal-bench"
DEFAULT_NAMESPACE = "default"
DEFAULT_SECRET_NAME = "s3-credentials"
DEFAULT_INIT_CONTAINER = "s3-connectivity-check"
DEFAULT_MAIN_CONTAINER = "opendal-bench"
DEFAULT_INIT_IMAGE = "amazon/aws-cli:latest"
DEFAULT_MAIN_IMAGE = "rust:1.75-slim"
DEFAULT_ENDPOINT = "s3.us-east-1.amazonaws.com"
DEFAULT_REGION = "us-east-1"

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_INIT_DEADLINE = 120.0
DEFAULT_READY_DEADLINE = 120.0
DEFAULT_OVERALL_DEADLINE = 4200.0

DEFAULT_MAX_CONCURRENT = 4
DEFAULT_SAMPLE_COUNT = 10
DEFAULT_BENCH_TIMEOUT = 3600
DEFAULT_SKIP_FILTERS = ("concurrent/8", "concurrent/16", "concurrent/32")

# Process exit codes for results that carry no container exit code.
EXIT_TIMED_OUT = 124
EXIT_ABORTED = 125


class ResourceKind(str, Enum):
    SECRET = "secret"
    CONFIG_MAP = "configmap"
    POD = "pod"


@dataclass(frozen=True)
class ResourceRef:
    kind: ResourceKind
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name} (namespace={self.namespace})"


class ContainerRole(str, Enum):
    INIT = "init"
    MAIN = "main"


class PhaseState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATED = "Terminated"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class PhaseStatus:
    """One observation of a container's lifecycle. Never reused across poll cycles."""
    state: PhaseState
    exit_code: Optional[int] = None

    @classmethod
    def pending(cls) -> "PhaseStatus":
        return cls(PhaseState.PENDING)

    @classmethod
    def running(cls) -> "PhaseStatus":
        return cls(PhaseState.RUNNING)

    @classmethod
    def terminated(cls, exit_code: int) -> "PhaseStatus":
        return cls(PhaseState.TERMINATED, exit_code)

    @classmethod
    def unknown(cls) -> "PhaseStatus":
        return cls(PhaseState.UNKNOWN)

    @property
    def is_terminated(self) -> bool:
        return self.state is PhaseState.TERMINATED

    def __str__(self) -> str:
        if self.is_terminated:
            return f"Terminated({self.exit_code})"
        return self.state.value


@dataclass(frozen=True)
class S3Credentials:
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        # Keep secret material out of logs and tracebacks.
        token = "set" if self.session_token else "unset"
        return f"S3Credentials(access_key_id='{self.access_key_id[:4]}...', session_token={token})"


@dataclass(frozen=True)
class S3Target:
    endpoint: str
    bucket: str
    region: str = DEFAULT_REGION


@dataclass(frozen=True)
class Toleration:
    key: str
    value: str
    effect: str = "NoSchedule"
    operator: str = "Equal"

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "operator": self.operator, "value": self.value, "effect": self.effect}


@dataclass(frozen=True)
class BenchmarkSettings:
    """Values handed to the benchmark container through the config object."""
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    sample_count: int = DEFAULT_SAMPLE_COUNT
    timeout_seconds: int = DEFAULT_BENCH_TIMEOUT
    skip_filters: Tuple[str, ...] = DEFAULT_SKIP_FILTERS


@dataclass(frozen=True)
class JobRequest:
    credentials: S3Credentials
    target: S3Target
    pod_name: str = DEFAULT_POD_NAME
    namespace: str = DEFAULT_NAMESPACE
    secret_name: str = DEFAULT_SECRET_NAME
    config_name: Optional[str] = None
    init_container: str = DEFAULT_INIT_CONTAINER
    main_container: str = DEFAULT_MAIN_CONTAINER
    init_image: str = DEFAULT_INIT_IMAGE
    main_image: str = DEFAULT_MAIN_IMAGE
    settings: BenchmarkSettings = field(default_factory=BenchmarkSettings)
    tolerations: Tuple[Toleration, ...] = ()
    require_session_token: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    init_deadline: float = DEFAULT_INIT_DEADLINE
    ready_deadline: float = DEFAULT_READY_DEADLINE
    overall_deadline: float = DEFAULT_OVERALL_DEADLINE

    def __post_init__(self):
        if self.config_name is None:
            object.__setattr__(self, "config_name", f"{self.pod_name}-config")
        for name in ("poll_interval", "init_deadline", "ready_deadline", "overall_deadline"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if not self.target.bucket:
            raise ValueError("S3 bucket is required")
        if not self.credentials.access_key_id or not self.credentials.secret_access_key:
            raise ValueError("AWS access key id and secret access key are required")
        if self.require_session_token and not self.credentials.session_token:
            raise ValueError("A session token is required but none was provided")

    @property
    def pod_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.POD, self.pod_name, self.namespace)

    @property
    def secret_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.SECRET, self.secret_name, self.namespace)

    @property
    def config_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.CONFIG_MAP, self.config_name, self.namespace)


class RunPhase(str, Enum):
    SUCCEEDED = "Succeeded"
    INIT_FAILED = "InitFailed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    ABORTED = "Aborted"


@dataclass(frozen=True)
class RunResult:
    phase: RunPhase
    init_exit_code: Optional[int] = None
    main_exit_code: Optional[int] = None
    logs: bytes = b""
    init_logs: bytes = b""
    duration: float = 0.0
    reason: str = ""
    leaked: Tuple[ResourceRef, ...] = ()
    log_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.phase is RunPhase.SUCCEEDED

    @property
    def exit_code(self) -> int:
        """Process exit status matching the failure, or a fixed sentinel."""
        if self.phase is RunPhase.SUCCEEDED:
            return 0
        if self.phase is RunPhase.INIT_FAILED:
            return self.init_exit_code or 1
        if self.phase is RunPhase.FAILED:
            return self.main_exit_code or 1
        if self.phase is RunPhase.TIMED_OUT:
            return EXIT_TIMED_OUT
        return EXIT_ABORTED
