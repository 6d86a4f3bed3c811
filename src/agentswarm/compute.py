"""
Compute service: EC2 instance lifecycle through the AWS CLI.

Launch, stop, terminate, reboot, tag and screenshot instances, and launch
Jenkins swarm agents whose user data connects them back to the
controller on first boot.

Tag specifications and bootstrap payloads are encoded here; the actual
invocation is a single ``ControlPlaneClient.execute`` per operation.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .collaborators import CredentialResolver, EnvCredentialResolver
from .control_plane import ControlPlaneClient
from .errors import InvalidArgumentError, ScreenshotError, UnexpectedResponseError
from .models import (
    AgentCredential,
    AgentPlatform,
    CreditMode,
    Instance,
    ServiceContext,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "ec2"
MAX_TAGS_PER_RESOURCE = 50
DEFAULT_AGENT_BINARY_PATH = "C:\\Swarm"
DEFAULT_LINUX_AGENT_PATH = "/opt/swarm"

# T2, T3, T3a, T4g ... burstable families.
_BURSTABLE_TYPE = re.compile(r"^t\d", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s")


def is_burstable(instance_type: str) -> bool:
    """Whether the instance type bills CPU credits (T family)."""
    return bool(_BURSTABLE_TYPE.match(instance_type.strip()))


def merge_tags(tags: Optional[Dict[str, str]], name: str) -> Dict[str, str]:
    """Copy ``tags`` and add ``Name=name`` unless a Name tag is already set."""
    merged = {str(k): str(v) for k, v in (tags or {}).items()}
    merged.setdefault("Name", name)
    return merged


def _tag_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def _tag_specifications(tags: Dict[str, str]) -> str:
    """Encode tag specifications for both the instance and its volumes."""
    tag_list = _tag_list(tags)
    return json.dumps([
        {"ResourceType": "instance", "Tags": tag_list},
        {"ResourceType": "volume", "Tags": tag_list},
    ])


def _require(value: Any, field: str, operation: str) -> None:
    if not value:
        raise InvalidArgumentError(f"{field} cannot be empty", operation=operation)


# ---------------------------------------------------------------------------
# Swarm bootstrap payloads
# ---------------------------------------------------------------------------

def _build_windows_user_data(
    name: str,
    controller_url: str,
    credential: AgentCredential,
    agent_binary_path: str,
) -> str:
    """Windows user data that writes the swarm-client launcher script."""
    folder = agent_binary_path.rstrip("\\")
    return f"""<script>
echo java.exe -jar {folder}\\swarm-client.jar -master {controller_url} -username {credential.username} -password {credential.secret} -labels {name} -name {name} -disableClientsUniqueId -mode exclusive -executors 1 -fsroot C:\\Jenkins > {folder}\\swarm-client.cmd
</script>"""


def _build_linux_user_data(
    name: str,
    controller_url: str,
    credential: AgentCredential,
    agent_binary_path: str,
) -> str:
    """Cloud-init user data that starts the swarm client on boot."""
    folder = agent_binary_path.rstrip("/")
    return f"""#cloud-config
runcmd:
  - mkdir -p /var/lib/jenkins
  - |
    cat > {folder}/swarm-client.sh << 'SWARM_EOF'
    #!/bin/sh
    exec java -jar {folder}/swarm-client.jar -master {controller_url} -username {credential.username} -password {credential.secret} -labels {name} -name {name} -disableClientsUniqueId -mode exclusive -executors 1 -fsroot /var/lib/jenkins
    SWARM_EOF
  - chmod 700 {folder}/swarm-client.sh
  - nohup {folder}/swarm-client.sh > /var/log/swarm-client.log 2>&1 &
"""


def build_swarm_user_data(
    name: str,
    controller_url: str,
    credential: AgentCredential,
    agent_binary_path: Optional[str] = None,
    platform: AgentPlatform = AgentPlatform.WINDOWS,
) -> str:
    """Render the user data that connects a new instance to the controller.

    Args:
        name: Agent name, also used as its only label.
        controller_url: CI controller URL.
        credential: Username/secret for the swarm client.
        agent_binary_path: Folder holding swarm-client.jar on the AMI.
        platform: Windows ``<script>`` or Linux cloud-init.

    Returns:
        User data text. Contains the secret; never log it.
    """
    platform = AgentPlatform(platform)
    if platform == AgentPlatform.LINUX:
        return _build_linux_user_data(
            name, controller_url, credential,
            agent_binary_path or DEFAULT_LINUX_AGENT_PATH,
        )
    return _build_windows_user_data(
        name, controller_url, credential,
        agent_binary_path or DEFAULT_AGENT_BINARY_PATH,
    )


# ---------------------------------------------------------------------------
# Compute service
# ---------------------------------------------------------------------------

class ComputeService:
    """EC2 operations for one region and credential profile.

    Args:
        client: Control-plane client used for every call.
        context: Service context; its service name must be 'ec2'.
        credit_mode: CPU credit mode applied to burstable instance types.
        credential_resolver: Resolves swarm agent credentials.
        controller_url: CI controller the swarm agents connect to.
        workspace: Directory screenshots are written to (default: cwd).
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        context: ServiceContext,
        credit_mode: CreditMode = CreditMode.STANDARD,
        credential_resolver: Optional[CredentialResolver] = None,
        controller_url: str = "",
        workspace: Optional[Path] = None,
    ) -> None:
        if context.service_name != SERVICE_NAME:
            raise InvalidArgumentError(
                f"ComputeService needs an '{SERVICE_NAME}' context, "
                f"got '{context.service_name}'",
                operation="ComputeService",
            )
        self._client = client
        self._context = context
        self.credit_mode = CreditMode(credit_mode)
        self._credential_resolver = credential_resolver or EnvCredentialResolver()
        self._controller_url = controller_url or os.environ.get("JENKINS_URL", "")
        self._workspace = Path(workspace) if workspace else Path.cwd()

    @classmethod
    def create(
        cls,
        region: str,
        credentials_ref: str,
        client: Optional[ControlPlaneClient] = None,
        **kwargs: Any,
    ) -> "ComputeService":
        """Build a ComputeService with its own ec2 ServiceContext."""
        context = ServiceContext(region, credentials_ref, SERVICE_NAME)
        return cls(client or ControlPlaneClient(), context, **kwargs)

    @property
    def context(self) -> ServiceContext:
        return self._context

    def _run(self, command: str, args: Sequence[str]):
        return self._client.execute(self._context, command, list(args))

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch_instance(
        self,
        ami_id: str,
        key_pair: str,
        instance_type: str,
        name: str,
        tags: Optional[Dict[str, str]] = None,
        security_groups: Optional[Sequence[str]] = None,
        bootstrap_payload: Optional[str] = None,
    ) -> str:
        """Launch one EC2 instance.

        A ``Name`` tag equal to ``name`` is added unless ``tags`` already
        has one. Burstable types get the service's CPU credit mode.

        Args:
            ami_id: AMI to launch.
            key_pair: EC2 key pair name.
            instance_type: e.g. 'm5.large', 't3.micro'.
            name: Instance name.
            tags: Extra tags for the instance and its volumes.
            security_groups: Security group ids, at least one.
            bootstrap_payload: User data text.

        Returns:
            The new instance id.

        Raises:
            InvalidArgumentError: On missing required input.
            UnexpectedResponseError: If no instance id came back.
        """
        operation = "ec2 run-instances"
        _require(ami_id, "ami_id", operation)
        _require(key_pair, "key_pair", operation)
        _require(instance_type, "instance_type", operation)
        _require(name, "name", operation)
        if not security_groups:
            raise InvalidArgumentError(
                "at least one security group is required", operation=operation,
            )

        instance = Instance(
            ami_id=ami_id,
            instance_type=instance_type,
            name=name,
            key_pair=key_pair,
            tags=merge_tags(tags, name),
            security_group_ids=list(security_groups),
            bootstrap_payload=bootstrap_payload,
            credit_mode=self.credit_mode if is_burstable(instance_type) else None,
        )

        logger.info(
            "Deploying EC2 %s instance %s from ami %s (region=%s)",
            instance.instance_type, instance.name, instance.ami_id,
            self._context.region,
        )

        user_data_file: Optional[str] = None
        try:
            args = [
                "--image-id", instance.ami_id,
                "--count", "1",
                "--instance-type", instance.instance_type,
                "--key-name", instance.key_pair,
                "--security-group-ids", *instance.security_group_ids,
                "--tag-specifications", _tag_specifications(instance.tags),
            ]
            if instance.bootstrap_payload:
                user_data_file = self._write_user_data(instance.bootstrap_payload)
                args += ["--user-data", f"file://{user_data_file}"]
            if instance.credit_mode is not None:
                args += [
                    "--credit-specification",
                    f"CpuCredits={instance.credit_mode.value}",
                ]
            result = self._run("run-instances", args)
        finally:
            if user_data_file:
                Path(user_data_file).unlink(missing_ok=True)

        try:
            instance.id = result.parsed["Instances"][0]["InstanceId"]
        except (KeyError, IndexError, TypeError):
            raise UnexpectedResponseError(
                "response has no Instances[0].InstanceId",
                operation=operation,
                resource_id=name,
            )
        if not instance.id:
            raise UnexpectedResponseError(
                "response has an empty InstanceId",
                operation=operation,
                resource_id=name,
            )

        logger.info("Instance ID of the new deployed instance: %s", instance.id)
        return instance.id

    @staticmethod
    def _write_user_data(payload: str) -> str:
        """Write user data to a private temp file and return its path."""
        fd, path = tempfile.mkstemp(prefix="agentswarm-userdata-", suffix=".txt")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        return path

    def launch_swarm_instance(
        self,
        ami_id: str,
        key_pair: str,
        instance_type: str,
        name: str,
        tags: Optional[Dict[str, str]] = None,
        security_groups: Optional[Sequence[str]] = None,
        agent_credentials_ref: str = "",
        agent_binary_path: Optional[str] = None,
        platform: AgentPlatform = AgentPlatform.WINDOWS,
    ) -> str:
        """Launch an instance that joins the CI controller as a swarm agent.

        The AMI must already carry swarm-client.jar. ``name`` is used as
        the instance name, the agent name and its label, so it cannot
        contain whitespace.

        Returns:
            The new instance id.
        """
        operation = "ec2 launch-swarm-instance"
        _require(name, "name", operation)
        if _WHITESPACE.search(name):
            raise InvalidArgumentError(
                "swarm instance name cannot contain whitespace",
                operation=operation,
                resource_id=name,
            )
        _require(agent_credentials_ref, "agent_credentials_ref", operation)
        if not self._controller_url:
            raise InvalidArgumentError(
                "controller_url is not configured (set JENKINS_URL)",
                operation=operation,
            )

        logger.info("Deploying an EC2 swarm instance named %s", name)
        credential = self._credential_resolver.resolve_scoped_credential(
            agent_credentials_ref,
        )
        user_data = build_swarm_user_data(
            name, self._controller_url, credential, agent_binary_path, platform,
        )

        return self.launch_instance(
            ami_id, key_pair, instance_type, name, tags, security_groups,
            bootstrap_payload=user_data,
        )

    # ------------------------------------------------------------------
    # Batched state changes
    # ------------------------------------------------------------------

    def _instances_command(self, command: str, instance_ids: Sequence[str]) -> None:
        ids = [i for i in instance_ids if i]
        if not ids:
            raise InvalidArgumentError(
                "instance_ids cannot be empty", operation=f"ec2 {command}",
            )
        self._run(command, ["--instance-ids", *ids])

    def stop_instances(self, instance_ids: Sequence[str]) -> None:
        """Stop running instances in one request."""
        logger.info("Stopping EC2 instances with ids: %s", list(instance_ids))
        self._instances_command("stop-instances", instance_ids)

    def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        """Terminate instances in one request.

        Idempotent: terminating an already terminated instance succeeds.
        If any id in the batch is invalid, none of them are terminated.
        """
        logger.info("Terminating EC2 instances with ids: %s", list(instance_ids))
        self._instances_command("terminate-instances", instance_ids)

    def reboot_instances(self, instance_ids: Sequence[str]) -> None:
        """Queue a reboot of the given instances in one request."""
        logger.info("Rebooting EC2 instances with ids: %s", list(instance_ids))
        self._instances_command("reboot-instances", instance_ids)

    # ------------------------------------------------------------------
    # Tags and screenshots
    # ------------------------------------------------------------------

    def tag_resource(self, resource_id: str, tags: Dict[str, str]) -> None:
        """Add or overwrite tags on an EC2 resource (max 50 per resource)."""
        operation = "ec2 create-tags"
        _require(resource_id, "resource_id", operation)
        _require(tags, "tags", operation)
        if len(tags) > MAX_TAGS_PER_RESOURCE:
            raise InvalidArgumentError(
                f"{len(tags)} tags given, a resource can have at most "
                f"{MAX_TAGS_PER_RESOURCE}",
                operation=operation,
                resource_id=resource_id,
            )
        logger.info("Tagging resource %s with tags: %s", resource_id, tags)
        tag_list = _tag_list({str(k): str(v) for k, v in tags.items()})
        self._run("create-tags", [
            "--resources", resource_id, "--tags", json.dumps(tag_list),
        ])

    def get_screenshot(self, instance_id: str, file_name: Optional[str] = None) -> Path:
        """Save a JPG console screenshot of a running instance.

        Args:
            instance_id: Instance to capture.
            file_name: Target file name or path; relative paths land in
                the workspace. Defaults to ``Screenshot_<ms>.jpg``.

        Returns:
            Path of the written image.
        """
        operation = "ec2 get-console-screenshot"
        _require(instance_id, "instance_id", operation)
        target = Path(file_name or f"Screenshot_{int(time.time() * 1000)}.jpg")
        if not target.is_absolute():
            target = self._workspace / target

        result = self._run("get-console-screenshot", ["--instance-id", instance_id])
        try:
            image_data = result.parsed["ImageData"]
        except (KeyError, TypeError):
            raise UnexpectedResponseError(
                "response has no ImageData",
                operation=operation,
                resource_id=instance_id,
            )
        if not image_data:
            raise UnexpectedResponseError(
                "response has an empty ImageData",
                operation=operation,
                resource_id=instance_id,
            )

        try:
            image = base64.b64decode(image_data, validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise ScreenshotError(
                f"could not decode screenshot: {exc}",
                operation=operation,
                resource_id=instance_id,
            ) from exc

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(image)
        except OSError as exc:
            raise ScreenshotError(
                f"could not write {target}: {exc}",
                operation=operation,
                resource_id=instance_id,
            ) from exc

        logger.info("Saved screenshot of %s to %s", instance_id, target)
        return target
