"""Exception types shared by the gateway adapters, the manifest builder and the coordinator."""
from typing import Optional


# --- Gateway errors ---
class GatewayError(Exception):
    """Base class for failures reported by a ClusterGateway."""


class AlreadyExists(GatewayError):
    pass


class Unauthorized(GatewayError):
    pass


class InvalidManifest(GatewayError):
    pass


class NotReady(GatewayError):
    """The container has not started yet; logs are not available."""


class NotFound(GatewayError):
    pass


# --- Run errors ---
class RunError(Exception):
    """Base class for failures that end a benchmark run."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class ProvisioningError(RunError):
    """Secret, config object or manifest creation failed."""


class InitCheckFailed(RunError):
    """The connectivity pre-check terminated with a non-zero exit code."""


class RunTimedOut(RunError):
    """One of the init, ready or overall deadlines elapsed."""


class WorkloadFailed(RunError):
    """The benchmark container terminated with a non-zero exit code."""


class CleanupError(Exception):
    """A best-effort deletion failed. Logged, never raised past the tracker."""


# --- Setup errors ---
class TemplateError(Exception):
    pass


class PrerequisiteError(Exception):
    """The local tooling or the cluster is not usable."""
