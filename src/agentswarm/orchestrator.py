"""
Ephemeral agent orchestrator: launch, await registration, execute, tear down.

Flow of one orchestration:
  1. Launch a swarm instance (nothing to clean up if this fails)
  2. Record the instance id for teardown
  3. Wait for the agent to register with the CI controller
  4. Run the caller's workload on it
  5. Stop or terminate every recorded instance, on every exit path

Failures in steps 3-4 (including KeyboardInterrupt) are re-raised after
teardown. A teardown failure is logged and attached to that primary
exception, never raised in its place.

Usage:
    orchestrator = EphemeralAgentOrchestrator(compute, watcher)
    with orchestrator.agent_session(request) as session:
        run_build_on(session.agent_label)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field

from .collaborators import ExecutionBinder, LocalExecutionBinder, RegistrationWatcher
from .compute import ComputeService
from .errors import (
    InvalidArgumentError,
    RegistrationTimeoutError,
    TeardownError,
    attach_teardown_error,
)
from .models import AgentPlatform, TeardownMode

logger = logging.getLogger(__name__)

DEFAULT_REGISTRATION_TIMEOUT = 600.0  # seconds


class OrchestrationPhase(str, Enum):
    """Lifecycle phase of an orchestration."""

    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_REGISTRATION = "awaiting_registration"
    EXECUTING = "executing"
    TEARING_DOWN = "tearing_down"
    DONE = "done"
    FAILED = "failed"


class SwarmLaunchRequest(BaseModel):
    """Everything needed to launch one swarm agent."""

    ami_id: str
    key_pair: str
    instance_type: str = "m5.large"
    name: str
    tags: Dict[str, str] = Field(default_factory=dict)
    security_groups: List[str] = Field(default_factory=list)
    agent_credentials_ref: str
    agent_binary_path: Optional[str] = None
    platform: AgentPlatform = AgentPlatform.WINDOWS


class AgentSession(BaseModel):
    """A launched, registered agent handed to the workload."""

    agent_label: str
    instance_id: str
    started_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class EphemeralAgentOrchestrator:
    """Run work on a throwaway swarm agent and always clean it up.

    One orchestrator drives one orchestration; create a new one for each
    agent. Orchestrators share nothing, so many can run in parallel.

    Args:
        compute: EC2 service used to launch and tear down.
        registration_watcher: Tells when the agent has connected.
        execution_binder: Runs the workload against the agent.
        teardown_mode: Stop (reusable) or terminate (disposable).
        registration_timeout: Seconds to wait for the agent to connect.
    """

    def __init__(
        self,
        compute: ComputeService,
        registration_watcher: RegistrationWatcher,
        execution_binder: Optional[ExecutionBinder] = None,
        teardown_mode: TeardownMode = TeardownMode.TERMINATE,
        registration_timeout: float = DEFAULT_REGISTRATION_TIMEOUT,
    ) -> None:
        if registration_timeout <= 0:
            raise InvalidArgumentError(
                "registration_timeout must be positive",
                operation="EphemeralAgentOrchestrator",
            )
        self._compute = compute
        self._watcher = registration_watcher
        self._binder = execution_binder or LocalExecutionBinder()
        self._teardown_mode = TeardownMode(teardown_mode)
        self._registration_timeout = registration_timeout

        self._lock = threading.Lock()
        self._live_instances: List[str] = []
        self.phase = OrchestrationPhase.IDLE
        self.history: List[OrchestrationPhase] = [OrchestrationPhase.IDLE]
        self.failure: Optional[BaseException] = None
        self.teardown_failure: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def live_instances(self) -> List[str]:
        """Instance ids that still need teardown."""
        with self._lock:
            return list(self._live_instances)

    def _transition(self, phase: OrchestrationPhase) -> None:
        logger.debug("Orchestration phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        self.history.append(phase)

    def _fail(self, exc: BaseException) -> None:
        self.failure = exc
        self._transition(OrchestrationPhase.FAILED)

    def track_instance(self, instance_id: str) -> None:
        """Record an instance for teardown at the end of the run.

        Safe to call from sub-work running in other threads.
        """
        if not instance_id:
            raise InvalidArgumentError(
                "instance_id cannot be empty", operation="track_instance",
            )
        with self._lock:
            if instance_id not in self._live_instances:
                self._live_instances.append(instance_id)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _launch(self, request: SwarmLaunchRequest) -> str:
        if self.phase != OrchestrationPhase.IDLE:
            raise InvalidArgumentError(
                f"orchestrator already used (phase={self.phase.value})",
                operation="agent_session",
            )
        self._transition(OrchestrationPhase.LAUNCHING)
        try:
            instance_id = self._compute.launch_swarm_instance(
                request.ami_id,
                request.key_pair,
                request.instance_type,
                request.name,
                request.tags,
                request.security_groups,
                request.agent_credentials_ref,
                request.agent_binary_path,
                request.platform,
            )
        except BaseException as exc:
            logger.error("Failed to launch swarm agent %s: %s", request.name, exc)
            self._fail(exc)
            raise
        # Recorded before waiting so a failed wait still tears it down.
        self.track_instance(instance_id)
        return instance_id

    def _await_registration(self, agent_label: str, instance_id: str) -> None:
        self._transition(OrchestrationPhase.AWAITING_REGISTRATION)
        logger.info(
            "Waiting up to %ss for agent %s (%s) to connect",
            self._registration_timeout, agent_label, instance_id,
        )
        connected = self._watcher.await_registration(
            agent_label, self._registration_timeout,
        )
        if not connected:
            raise RegistrationTimeoutError(
                f"agent did not connect within {self._registration_timeout}s",
                operation="await_registration",
                resource_id=instance_id,
                last_state="disconnected",
                timeout=self._registration_timeout,
            )
        logger.info("New machine %s was deployed successfully", agent_label)

    def _tear_down(self) -> Optional[BaseException]:
        """Stop or terminate every recorded instance.

        Returns:
            The teardown exception, or None on success.
        """
        ids = self.live_instances
        if not ids:
            return None
        self._transition(OrchestrationPhase.TEARING_DOWN)
        try:
            if self._teardown_mode == TeardownMode.STOP:
                self._compute.stop_instances(ids)
            else:
                self._compute.terminate_instances(ids)
        except Exception as exc:
            logger.error(
                "Teardown (%s) of %s failed: %s", self._teardown_mode.value, ids, exc,
            )
            self.teardown_failure = exc
            return exc
        with self._lock:
            self._live_instances = [i for i in self._live_instances if i not in ids]
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @contextmanager
    def agent_session(self, request: SwarmLaunchRequest) -> Iterator[AgentSession]:
        """Launch an agent, wait for it, and guarantee its teardown.

        Yields:
            AgentSession for the registered agent.

        Raises:
            RegistrationTimeoutError: If the agent never connected.
            TeardownError: If the body succeeded but teardown failed.
        """
        instance_id = self._launch(request)
        session = AgentSession(agent_label=request.name, instance_id=instance_id)
        try:
            self._await_registration(request.name, instance_id)
            self._transition(OrchestrationPhase.EXECUTING)
            yield session
        except BaseException as exc:
            self._fail(exc)
            teardown_exc = self._tear_down()
            if self.phase != OrchestrationPhase.FAILED:
                self._transition(OrchestrationPhase.FAILED)
            if teardown_exc is not None:
                attach_teardown_error(exc, teardown_exc)
            raise

        teardown_exc = self._tear_down()
        if teardown_exc is not None:
            error = TeardownError(
                f"could not {self._teardown_mode.value} instances: {teardown_exc}",
                operation=f"ec2 {self._teardown_mode.value}-instances",
                instance_ids=self.live_instances,
            )
            self._fail(error)
            raise error from teardown_exc
        self._transition(OrchestrationPhase.DONE)

    def run(self, request: SwarmLaunchRequest, workload: Callable[..., Any]) -> Any:
        """Run ``workload`` on a fresh agent; see ``agent_session``.

        Returns:
            Whatever the execution binder returns for the workload.
        """
        with self.agent_session(request) as session:
            return self._binder.bind_and_run(session.agent_label, workload)
