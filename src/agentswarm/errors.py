"""
Error kinds raised by agentswarm.

Every error carries the operation that failed and, when known, the
resource it was acting on, so a failed pipeline run can be diagnosed
from the message alone.
"""

from __future__ import annotations

from typing import Any, Optional


class AgentSwarmError(Exception):
    """Base class for all agentswarm errors.

    Args:
        message: Human-readable description.
        operation: Name of the operation that failed (e.g. 'ec2 run-instances').
        resource_id: Instance id, mapping UUID, ... if known.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.resource_id = resource_id
        self.teardown_error: Optional[BaseException] = None

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"[{self.operation}]")
        if self.resource_id:
            parts.append(f"({self.resource_id})")
        parts.append(self.message)
        return " ".join(parts)


class InvalidArgumentError(AgentSwarmError):
    """Malformed or missing input, rejected before any remote call."""


class RemoteInvocationError(AgentSwarmError):
    """The control-plane invocation itself failed.

    Args:
        stderr: Tail of the CLI's stderr output.
        exit_code: Process exit status, None for transport failures.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        resource_id: Optional[str] = None,
        stderr: str = "",
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, operation=operation, resource_id=resource_id)
        self.stderr = stderr
        self.exit_code = exit_code


class UnauthenticatedError(RemoteInvocationError):
    """The control plane rejected the credentials."""


class UnavailableError(RemoteInvocationError):
    """The control plane could not be reached or the call failed."""


class UnexpectedResponseError(AgentSwarmError):
    """The call succeeded but the response lacks an expected field."""


class WaitTimeoutError(AgentSwarmError, TimeoutError):
    """A bounded wait or poll ran past its deadline.

    Args:
        last_state: Last state observed before giving up.
        timeout: The deadline in seconds.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        resource_id: Optional[str] = None,
        last_state: Any = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(message, operation=operation, resource_id=resource_id)
        self.last_state = last_state
        self.timeout = timeout

    def __str__(self) -> str:
        return f"{super().__str__()} (last state: {self.last_state})"


class RegistrationTimeoutError(WaitTimeoutError):
    """The agent did not register with the CI controller in time."""


class OperationCancelledError(AgentSwarmError):
    """A bounded wait was aborted through its stop event."""


class ScreenshotError(AgentSwarmError, OSError):
    """The console screenshot could not be decoded or written."""


class TeardownError(AgentSwarmError):
    """Instances could not be stopped or terminated after a run.

    Args:
        instance_ids: The ids that were left behind.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        instance_ids: Optional[list[str]] = None,
    ) -> None:
        ids = list(instance_ids or [])
        super().__init__(
            message, operation=operation, resource_id=",".join(ids) or None,
        )
        self.instance_ids = ids


def attach_teardown_error(exc: BaseException, teardown_exc: BaseException) -> None:
    """Attach a secondary teardown failure to the primary exception.

    The primary exception stays the one that propagates; the teardown
    failure rides along as ``exc.teardown_error`` and, where supported,
    as an exception note.
    """
    try:
        exc.teardown_error = teardown_exc  # type: ignore[attr-defined]
    except AttributeError:
        pass
    if hasattr(exc, "add_note"):
        exc.add_note(f"teardown also failed: {teardown_exc}")
