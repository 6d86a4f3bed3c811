"""
Data models shared by the control-plane client and the services built on it.

Identifiers (instance ids, mapping UUIDs) are always minted by the remote
control plane; nothing here generates them locally.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .errors import InvalidArgumentError

# AWS regions that agentswarm will operate in.
SUPPORTED_REGIONS: tuple[str, ...] = (
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ap-east-1",
    "ap-south-1",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-southeast-1",
    "ap-southeast-2",
    "ca-central-1",
    "eu-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-west-3",
    "eu-north-1",
    "me-south-1",
    "sa-east-1",
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CreditMode(str, Enum):
    """CPU credit billing for burstable (T-family) instances."""

    STANDARD = "standard"
    UNLIMITED = "unlimited"


class TeardownMode(str, Enum):
    """What to do with agent instances once a run is over."""

    STOP = "stop"
    TERMINATE = "terminate"


class AgentPlatform(str, Enum):
    """Operating system family of the agent AMI."""

    WINDOWS = "windows"
    LINUX = "linux"


class TriggerState(str, Enum):
    """Enabled/disabled state of an event-source mapping."""

    ENABLED = "Enabled"
    DISABLED = "Disabled"
    TRANSITIONING = "Transitioning"
    UNKNOWN = "Unknown"

    @classmethod
    def from_remote(cls, value: Optional[str]) -> "TriggerState":
        """Map a Lambda mapping state string onto the four known states."""
        if value == "Enabled":
            return cls.ENABLED
        if value == "Disabled":
            return cls.DISABLED
        if value in _TRANSITIONAL_STATES:
            return cls.TRANSITIONING
        return cls.UNKNOWN


_TRANSITIONAL_STATES = {"Enabling", "Disabling", "Creating", "Updating", "Deleting"}


# ---------------------------------------------------------------------------
# Service context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServiceContext:
    """Region + credential scope for one AWS service.

    Validated on construction; an invalid context can never exist.

    Args:
        region: AWS region, one of SUPPORTED_REGIONS.
        credentials_ref: Opaque credential handle (an AWS CLI profile name).
        service_name: AWS CLI service name ('ec2', 'lambda').
    """

    region: str
    credentials_ref: str
    service_name: str

    def __post_init__(self) -> None:
        if self.region not in SUPPORTED_REGIONS:
            raise InvalidArgumentError(
                f"Region parameter has an invalid value: {self.region!r}. "
                f"Supported regions are: {', '.join(SUPPORTED_REGIONS)}",
                operation="ServiceContext",
            )
        if not self.credentials_ref:
            raise InvalidArgumentError(
                "credentials_ref cannot be empty", operation="ServiceContext",
            )
        if not self.service_name:
            raise InvalidArgumentError(
                "service_name cannot be empty", operation="ServiceContext",
            )

    def for_service(self, service_name: str) -> "ServiceContext":
        """Return a context with the same scope for another service."""
        return ServiceContext(self.region, self.credentials_ref, service_name)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class CommandResult(BaseModel):
    """Output of a single control-plane invocation."""

    service: str
    command: str
    raw_output: str = ""
    parsed: Optional[Union[Dict[str, Any], List[Any]]] = None


class Instance(BaseModel):
    """An EC2 instance as requested by a launch call.

    ``id`` stays None until the control plane has accepted the launch.
    """

    id: Optional[str] = None
    ami_id: str
    instance_type: str
    name: str
    key_pair: str
    tags: Dict[str, str] = Field(default_factory=dict)
    security_group_ids: List[str] = Field(default_factory=list)
    bootstrap_payload: Optional[str] = Field(default=None, repr=False)
    credit_mode: Optional[CreditMode] = None


class TriggerMapping(BaseModel):
    """Snapshot of a Lambda event-source mapping.

    Only authoritative at the moment it was fetched.
    """

    uuid: str
    function_ref: str = ""
    event_source_arn: str = ""
    state: TriggerState = TriggerState.UNKNOWN
    remote_state: Optional[str] = None
    state_transition_reason: Optional[str] = None
    batch_size: Optional[int] = None
    last_modified: Optional[Any] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TriggerMapping":
        """Build a mapping from a parsed Lambda API record.

        Raises:
            KeyError: If the record has no UUID.
        """
        remote_state = record.get("State")
        return cls(
            uuid=record["UUID"],
            function_ref=record.get("FunctionArn", ""),
            event_source_arn=record.get("EventSourceArn", ""),
            state=TriggerState.from_remote(remote_state),
            remote_state=remote_state,
            state_transition_reason=record.get("StateTransitionReason"),
            batch_size=record.get("BatchSize"),
            last_modified=record.get("LastModified"),
        )


class AgentCredential(BaseModel):
    """Username/secret pair used by the swarm client to join the controller."""

    username: str
    secret: str = Field(repr=False, exclude=True)
