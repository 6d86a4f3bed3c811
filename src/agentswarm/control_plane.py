"""
Control-plane client: run one AWS CLI command and parse its JSON output.

Every service module (compute, triggers) goes through ``execute``. The
region and credential profile only ever live in the child process
environment, built fresh for each call, so nothing leaks between calls
or into the parent process.

No retries happen here. A failed invocation is raised to the caller,
which decides whether trying again makes sense.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from typing import Dict, List, Optional, Sequence, Union

from .errors import InvalidArgumentError, UnauthenticatedError, UnavailableError
from .models import CommandResult, ServiceContext

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 300  # seconds

# stderr fragments the AWS CLI prints when credentials are the problem.
_AUTH_FAILURE_MARKERS = (
    "Unable to locate credentials",
    "The config profile",
    "InvalidClientTokenId",
    "ExpiredToken",
    "AuthFailure",
    "UnrecognizedClientException",
    "SignatureDoesNotMatch",
    "UnauthorizedOperation",
    "AccessDenied",
    "security token included in the request is invalid",
)

Args = Union[str, Sequence[str], None]


def _split_args(args: Args) -> List[str]:
    """Normalise command arguments to an argv list."""
    if args is None:
        return []
    if isinstance(args, str):
        return shlex.split(args)
    return [str(a) for a in args]


def _stderr_tail(stderr: Optional[str], limit: int = 2000) -> str:
    text = (stderr or "").strip()
    return text[-limit:]


class ControlPlaneClient:
    """Execute AWS CLI commands scoped to a ServiceContext.

    Args:
        aws_cli: Path or name of the ``aws`` executable.
        timeout: Seconds before a single invocation is abandoned.
        base_env: Environment the child starts from (default: os.environ).
    """

    def __init__(
        self,
        aws_cli: str = "aws",
        timeout: float = _DEFAULT_TIMEOUT,
        base_env: Optional[Dict[str, str]] = None,
    ) -> None:
        self._aws_cli = aws_cli
        self._timeout = timeout
        self._base_env = base_env

    def _scoped_env(self, context: ServiceContext) -> Dict[str, str]:
        """Build the child environment for one call."""
        env = dict(self._base_env if self._base_env is not None else os.environ)
        # Static keys would override the profile, drop them for this call.
        for key in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN"):
            env.pop(key, None)
        env["AWS_DEFAULT_REGION"] = context.region
        env["AWS_REGION"] = context.region
        env["AWS_PROFILE"] = context.credentials_ref
        env["AWS_PAGER"] = ""
        return env

    def execute(
        self,
        context: ServiceContext,
        command: str,
        args: Args = None,
    ) -> CommandResult:
        """Run ``aws <service> <command> <args>`` and parse the output.

        Args:
            context: Region, credential profile and service name.
            command: CLI command, e.g. 'run-instances'.
            args: Extra arguments as a shell-style string or an argv list.

        Returns:
            CommandResult with raw stdout and, when stdout is JSON, the
            parsed record.

        Raises:
            InvalidArgumentError: If command is empty.
            UnauthenticatedError: If the CLI rejected the credentials.
            UnavailableError: If the CLI could not run or failed otherwise.
        """
        operation = f"{context.service_name} {command}".strip()
        if not command or not command.strip():
            raise InvalidArgumentError("command cannot be empty", operation=operation)

        argv = [self._aws_cli, context.service_name, command, *_split_args(args)]
        logger.debug(
            "%s: %s (region=%s)", context.service_name.upper(), command, context.region,
        )

        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                env=self._scoped_env(context),
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise UnavailableError(
                f"AWS CLI not found: {self._aws_cli}", operation=operation,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise UnavailableError(
                f"timed out after {self._timeout}s in {context.region}",
                operation=operation,
            ) from exc
        except OSError as exc:
            raise UnavailableError(
                f"could not run AWS CLI: {exc}", operation=operation,
            ) from exc

        if proc.returncode != 0:
            stderr = _stderr_tail(proc.stderr)
            error_cls = (
                UnauthenticatedError
                if any(marker in stderr for marker in _AUTH_FAILURE_MARKERS)
                else UnavailableError
            )
            logger.error(
                "%s failed in %s (exit %d): %s",
                operation, context.region, proc.returncode, stderr,
            )
            raise error_cls(
                f"exit code {proc.returncode} in {context.region}: {stderr}",
                operation=operation,
                stderr=stderr,
                exit_code=proc.returncode,
            )

        raw = proc.stdout or ""
        parsed = None
        if raw.strip():
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("%s returned non-JSON output", operation)
        if not isinstance(parsed, (dict, list)):
            parsed = None

        return CommandResult(
            service=context.service_name,
            command=command,
            raw_output=raw,
            parsed=parsed,
        )


def run_cli(
    region: str,
    credentials_ref: str,
    command_line: str,
    client: Optional[ControlPlaneClient] = None,
) -> CommandResult:
    """Run a free-form ``aws <command_line>`` in the given scope.

    Region and credentials are validated exactly as for a ServiceContext.

    Args:
        region: AWS region.
        credentials_ref: AWS CLI profile name.
        command_line: Everything after ``aws``, e.g. 's3 ls my-bucket'.
        client: Client to use; a default one is created if omitted.

    Returns:
        CommandResult of the call.
    """
    argv = _split_args(command_line)
    if not argv:
        raise InvalidArgumentError("command cannot be empty", operation="aws")
    context = ServiceContext(region, credentials_ref, argv[0])
    if len(argv) < 2:
        raise InvalidArgumentError(
            f"no command given for service '{argv[0]}'", operation="aws",
        )
    return (client or ControlPlaneClient()).execute(context, argv[1], argv[2:])
