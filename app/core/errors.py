from __future__ import annotations
from typing import Any, Dict, List, Optional


class ControllerError(Exception):
    """Base class for errors raised by the release controller."""


class HandshakeAllocationError(ControllerError):
    """The signaling channel could not be allocated. Process-fatal."""


class HandshakeNotFound(ControllerError):
    pass


class EnvironmentNotReady(ControllerError):
    """The gating handshake resolved to FAILURE or TIMED_OUT."""

    def __init__(self, handshake_id: str, status: str):
        super().__init__(f"environment not ready: handshake {handshake_id} resolved {status}")
        self.handshake_id = handshake_id
        self.status = status


class ExecutionNotFound(ControllerError):
    pass


class ExecutionBusy(ControllerError):
    """Another writer currently holds the execution."""


class GraphCycleError(ControllerError):
    pass


class StageError(ControllerError):
    """A stage-scoped failure. Recorded on the stage, never process-fatal."""

    retryable = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.detail = detail or {}


class SourceUnavailable(StageError):
    retryable = True


class BranchNotFound(StageError):
    pass


class BuildFailed(StageError):
    def __init__(self, message: str, exit_code: int, log_ref: Optional[str] = None):
        super().__init__(message, {"exit_code": exit_code, "log_ref": log_ref})
        self.exit_code = exit_code
        self.log_ref = log_ref


class NoEligibleTargets(StageError):
    def __init__(self, selector: Dict[str, str]):
        super().__init__(f"no eligible targets for selector {selector}", {"selector": dict(selector)})
        self.selector = dict(selector)


class PartialDeployFailure(StageError):
    def __init__(self, failed: Dict[str, str], succeeded: List[str]):
        names = ", ".join(sorted(failed))
        super().__init__(
            f"deployment failed on {len(failed)} target(s): {names}",
            {"failed_targets": dict(failed), "succeeded_targets": list(succeeded)},
        )
        self.failed = dict(failed)
        self.succeeded = list(succeeded)


class CapabilityDenied(StageError):
    def __init__(self, principal: str, action: str, resource: str = "*"):
        super().__init__(f"{principal} may not {action} on {resource}")
        self.principal = principal
        self.action = action
        self.resource = resource
