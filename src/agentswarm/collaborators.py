"""
Collaborators the orchestrator and compute service call out to.

Each interface is a plain base class; the engine only depends on these
methods. Concrete implementations cover the common Jenkins swarm setup:
credentials from the environment, registration checked through the
Jenkins JSON API, and workloads run in-process.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import quote

from .errors import InvalidArgumentError
from .models import AgentCredential

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class CredentialResolver:
    """Resolve a credential handle into a username/secret pair."""

    def resolve_scoped_credential(self, credentials_ref: str) -> AgentCredential:
        """Return the credential behind ``credentials_ref``.

        The result must only be used to build the bootstrap payload and
        then dropped.
        """
        raise NotImplementedError


class RegistrationWatcher:
    """Wait for a freshly launched agent to show up on the CI controller."""

    def await_registration(self, agent_label: str, timeout: float) -> bool:
        """Block until the agent is connected.

        Args:
            agent_label: Label (and node name) the agent registers with.
            timeout: Seconds to wait before giving up.

        Returns:
            True once connected, False if the timeout passed.
        """
        raise NotImplementedError


class ExecutionBinder:
    """Run a workload against a registered agent."""

    def bind_and_run(self, agent_label: str, workload: Callable[..., Any]) -> Any:
        """Run ``workload`` on the agent and return its result."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------

def _env_prefix(credentials_ref: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", credentials_ref).upper()


class EnvCredentialResolver(CredentialResolver):
    """Read credentials from ``<REF>_USERNAME`` / ``<REF>_PASSWORD``.

    The handle is upper-cased and non-alphanumerics become underscores,
    so ``swarm-creds`` reads ``SWARM_CREDS_USERNAME``.
    """

    def __init__(self, environ: Optional[dict] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def resolve_scoped_credential(self, credentials_ref: str) -> AgentCredential:
        if not credentials_ref:
            raise InvalidArgumentError(
                "agent credentials_ref cannot be empty",
                operation="resolve_scoped_credential",
            )
        prefix = _env_prefix(credentials_ref)
        username = self._environ.get(f"{prefix}_USERNAME", "")
        secret = self._environ.get(f"{prefix}_PASSWORD", "")
        if not username or not secret:
            raise InvalidArgumentError(
                f"credentials not set: {prefix}_USERNAME / {prefix}_PASSWORD",
                operation="resolve_scoped_credential",
                resource_id=credentials_ref,
            )
        return AgentCredential(username=username, secret=secret)


class JenkinsRegistrationWatcher(RegistrationWatcher):
    """Poll the Jenkins computer API until the node is online.

    Args:
        controller_url: Jenkins base URL.
        auth: Optional (user, api_token) for the API.
        poll_interval: Seconds between checks.
        clock: Monotonic clock, injectable for tests.
        sleep: Sleep function, injectable for tests. Defaults to waiting
            on ``stop_event`` when one is given.
        stop_event: Set it to abandon the wait early.
    """

    def __init__(
        self,
        controller_url: str,
        auth: Optional[tuple[str, str]] = None,
        poll_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        if not controller_url:
            raise InvalidArgumentError(
                "controller_url cannot be empty", operation="await_registration",
            )
        self._url = controller_url.rstrip("/")
        self._auth = auth
        self._poll_interval = poll_interval
        self._clock = clock
        if sleep is None:
            sleep = stop_event.wait if stop_event is not None else time.sleep
        self._sleep = sleep
        self._stop_event = stop_event

    def _is_online(self, agent_label: str) -> bool:
        import requests

        url = f"{self._url}/computer/{quote(agent_label)}/api/json"
        try:
            resp = requests.get(url, auth=self._auth, timeout=30)
        except requests.RequestException as exc:
            logger.debug("Registration check for %s failed: %s", agent_label, exc)
            return False
        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            logger.warning(
                "Jenkins API %s: %d %s", url, resp.status_code, resp.text[:200],
            )
            return False
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Jenkins API %s: response is not JSON", url)
            return False
        if not isinstance(data, dict):
            logger.warning("Jenkins API %s: unexpected payload %r", url, type(data).__name__)
            return False
        return not data.get("offline", True)

    def await_registration(self, agent_label: str, timeout: float) -> bool:
        deadline = self._clock() + timeout
        while True:
            if self._is_online(agent_label):
                logger.info("Agent %s is connected", agent_label)
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            wait = min(self._poll_interval, remaining)
            self._sleep(wait)
            if self._stop_event is not None and self._stop_event.is_set():
                logger.info("Stopped waiting for agent %s", agent_label)
                return False


class LocalExecutionBinder(ExecutionBinder):
    """Call ``workload(agent_label)`` in the current process."""

    def bind_and_run(self, agent_label: str, workload: Callable[..., Any]) -> Any:
        logger.info("Running workload against agent %s", agent_label)
        return workload(agent_label)
