"""
Trigger reconciler: enable or disable Lambda event-source mappings.

Updating a mapping is asynchronous; the update call returns while the
mapping is still Enabling/Disabling. ``set_trigger_state`` therefore
polls the mapping at a fixed interval until it reports the requested
state or the deadline passes:

    Requested -> Polling -> Converged
                        \\-> TimedOut (raises WaitTimeoutError)

Clock and sleep are injectable so tests can run the loop without real
delays.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, List, Optional

from .control_plane import ControlPlaneClient
from .errors import (
    InvalidArgumentError,
    OperationCancelledError,
    UnexpectedResponseError,
    WaitTimeoutError,
)
from .models import CommandResult, ServiceContext, TriggerMapping, TriggerState

logger = logging.getLogger(__name__)

SERVICE_NAME = "lambda"
DEFAULT_POLL_INTERVAL = 10.0  # seconds
DEFAULT_TIMEOUT = 120.0  # seconds


class ReconcilePhase(str, Enum):
    """Phases of a single trigger state change."""

    REQUESTED = "requested"
    POLLING = "polling"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


class TriggerReconciler:
    """Lambda event-source mapping operations for one region and profile.

    Args:
        client: Control-plane client used for every call.
        context: Service context; its service name must be 'lambda'.
        poll_interval: Seconds between state polls.
        timeout: Seconds before a state change is declared failed.
        clock: Monotonic clock.
        sleep: Sleep function. Defaults to waiting on ``stop_event`` when
            one is given, otherwise ``time.sleep``.
        stop_event: Set it to cancel an in-progress wait.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        context: ServiceContext,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        if context.service_name != SERVICE_NAME:
            raise InvalidArgumentError(
                f"TriggerReconciler needs a '{SERVICE_NAME}' context, "
                f"got '{context.service_name}'",
                operation="TriggerReconciler",
            )
        if poll_interval <= 0 or timeout <= 0:
            raise InvalidArgumentError(
                "poll_interval and timeout must be positive",
                operation="TriggerReconciler",
            )
        self._client = client
        self._context = context
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._clock = clock
        if sleep is None:
            sleep = stop_event.wait if stop_event is not None else time.sleep
        self._sleep = sleep
        self._stop_event = stop_event
        self.phase: Optional[ReconcilePhase] = None
        self.polls = 0

    @classmethod
    def create(
        cls,
        region: str,
        credentials_ref: str,
        client: Optional[ControlPlaneClient] = None,
        **kwargs: Any,
    ) -> "TriggerReconciler":
        """Build a TriggerReconciler with its own lambda ServiceContext."""
        context = ServiceContext(region, credentials_ref, SERVICE_NAME)
        return cls(client or ControlPlaneClient(), context, **kwargs)

    @property
    def context(self) -> ServiceContext:
        return self._context

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_mappings(
        self,
        function_ref: Optional[str] = None,
        event_source_arn: Optional[str] = None,
    ) -> List[TriggerMapping]:
        """List event-source mappings matching the optional filters.

        With no filter, every mapping in the region is returned.

        Args:
            function_ref: Lambda function name or ARN.
            event_source_arn: ARN of the Kinesis stream, DynamoDB stream
                or SQS queue.
        """
        args = ["--no-paginate"]
        if event_source_arn:
            args += ["--event-source-arn", event_source_arn]
        if function_ref:
            args += ["--function-name", function_ref]

        if function_ref or event_source_arn:
            logger.info(
                "Retrieving event source mappings for function=%s source=%s",
                function_ref or "ALL", event_source_arn or "ALL",
            )
        else:
            logger.info(
                "Retrieving all event source mappings in %s", self._context.region,
            )

        result = self._client.execute(
            self._context, "list-event-source-mappings", args,
        )
        try:
            records = result.parsed["EventSourceMappings"]
            mappings = [TriggerMapping.from_record(r) for r in records]
        except (KeyError, TypeError):
            raise UnexpectedResponseError(
                "response has no valid EventSourceMappings",
                operation="lambda list-event-source-mappings",
            )
        logger.debug("Event source mappings: %s", [m.uuid for m in mappings])
        return mappings

    def get_mapping(self, uuid: str) -> TriggerMapping:
        """Fetch a fresh snapshot of one mapping."""
        if not uuid:
            raise InvalidArgumentError(
                "uuid cannot be empty", operation="lambda get-event-source-mapping",
            )
        result = self._client.execute(
            self._context, "get-event-source-mapping", ["--uuid", uuid],
        )
        return self._mapping_from(result, "lambda get-event-source-mapping", uuid)

    @staticmethod
    def _mapping_from(result: CommandResult, operation: str, uuid: str) -> TriggerMapping:
        if not isinstance(result.parsed, dict):
            raise UnexpectedResponseError(
                "response is not a mapping record", operation=operation, resource_id=uuid,
            )
        record = dict(result.parsed)
        record.setdefault("UUID", uuid)
        return TriggerMapping.from_record(record)

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def _wait(self, seconds: float, uuid: str) -> None:
        self._sleep(seconds)
        if self._stop_event is not None and self._stop_event.is_set():
            raise OperationCancelledError(
                "trigger state change cancelled",
                operation="lambda set-trigger-state",
                resource_id=uuid,
            )

    def set_trigger_state(self, uuid: str, enabled: bool) -> TriggerMapping:
        """Enable or disable one mapping and wait until it gets there.

        The state reported by the update call itself is ignored; only
        later polls count.

        Args:
            uuid: Mapping UUID.
            enabled: True to enable, False to disable.

        Returns:
            The mapping snapshot that showed the desired state.

        Raises:
            WaitTimeoutError: If the state was not reached within the
                timeout. ``last_state`` holds the last polled state.
        """
        operation = "lambda set-trigger-state"
        if not uuid:
            raise InvalidArgumentError("uuid cannot be empty", operation=operation)

        desired = TriggerState.ENABLED if enabled else TriggerState.DISABLED
        flag = "--enabled" if enabled else "--no-enabled"

        self.phase = ReconcilePhase.REQUESTED
        self.polls = 0
        logger.info("Setting trigger %s to state '%s'", uuid, desired.value)
        self._client.execute(
            self._context, "update-event-source-mapping", ["--uuid", uuid, flag],
        )

        self.phase = ReconcilePhase.POLLING
        started = self._clock()
        last_state = TriggerState.UNKNOWN
        while True:
            remaining = self._timeout - (self._clock() - started)
            self._wait(max(0.0, min(self._poll_interval, remaining)), uuid)

            mapping = self.get_mapping(uuid)
            self.polls += 1
            last_state = mapping.state
            if last_state == desired:
                self.phase = ReconcilePhase.CONVERGED
                logger.info(
                    "Trigger %s reached state %s after %d polls",
                    uuid, last_state.value, self.polls,
                )
                return mapping

            elapsed = self._clock() - started
            if elapsed >= self._timeout:
                break
            logger.info(
                "Trigger %s is %s (%s), checking again in %ss",
                uuid, last_state.value, mapping.remote_state, self._poll_interval,
            )

        self.phase = ReconcilePhase.TIMED_OUT
        logger.error(
            "Trigger %s is in state %s after %ss, expected %s",
            uuid, last_state.value, self._timeout, desired.value,
        )
        raise WaitTimeoutError(
            f"trigger did not reach {desired.value} within {self._timeout}s",
            operation=operation,
            resource_id=uuid,
            last_state=last_state,
            timeout=self._timeout,
        )

    def enable_trigger(self, uuid: str) -> TriggerMapping:
        return self.set_trigger_state(uuid, True)

    def disable_trigger(self, uuid: str) -> TriggerMapping:
        return self.set_trigger_state(uuid, False)

    def set_triggers_state(
        self,
        function_ref: Optional[str] = None,
        event_source_arn: Optional[str] = None,
        enabled: bool = True,
    ) -> List[TriggerMapping]:
        """Set the state of every mapping matching the filters.

        At least one filter is required. Mappings are processed one at a
        time and the first failure stops the rest.

        Returns:
            Converged snapshots, in processing order.
        """
        if not function_ref and not event_source_arn:
            raise InvalidArgumentError(
                "at least one filter must be set: function_ref or event_source_arn",
                operation="lambda set-triggers-state",
            )
        converged = []
        for mapping in self.list_mappings(function_ref, event_source_arn):
            converged.append(self.set_trigger_state(mapping.uuid, enabled))
        return converged
