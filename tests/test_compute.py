"""Tests for the EC2 ComputeService.

All control-plane calls go to a mocked client; no AWS access needed.
"""

from __future__ import annotations

import base64
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agentswarm.collaborators import CredentialResolver
from agentswarm.compute import (
    ComputeService,
    build_swarm_user_data,
    is_burstable,
    merge_tags,
)
from agentswarm.errors import (
    InvalidArgumentError,
    ScreenshotError,
    UnavailableError,
    UnexpectedResponseError,
)
from agentswarm.models import (
    AgentCredential,
    AgentPlatform,
    CommandResult,
    CreditMode,
    ServiceContext,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _launched(instance_id: str = "i-abc123") -> CommandResult:
    return CommandResult(
        service="ec2", command="run-instances",
        parsed={"Instances": [{"InstanceId": instance_id}]},
    )


def _args(mock_client: MagicMock, call_index: int = -1) -> list:
    return mock_client.execute.call_args_list[call_index][0][2]


def _flag(args: list, name: str) -> str:
    return args[args.index(name) + 1]


def _tags_sent(mock_client: MagicMock) -> dict:
    specs = json.loads(_flag(_args(mock_client), "--tag-specifications"))
    return {t["Key"]: t["Value"] for t in specs[0]["Tags"]}


class _StaticResolver(CredentialResolver):
    def __init__(self):
        self.calls = []

    def resolve_scoped_credential(self, credentials_ref):
        self.calls.append(credentials_ref)
        return AgentCredential(username="swarm-user", secret="s3cret")


@pytest.fixture
def resolver():
    return _StaticResolver()


@pytest.fixture
def compute(mock_client, resolver, tmp_path):
    mock_client.execute.return_value = _launched()
    return ComputeService(
        mock_client,
        ServiceContext("us-west-2", "ci-deployer", "ec2"),
        credential_resolver=resolver,
        controller_url="https://jenkins.example.com/",
        workspace=tmp_path,
    )


# ---------------------------------------------------------------------------
# Helpers under test
# ---------------------------------------------------------------------------


class TestHelpers:
    """Tests for tag merging and burstable detection."""

    def test_name_tag_added(self):
        assert merge_tags({}, "agent-1") == {"Name": "agent-1"}

    def test_explicit_name_tag_wins(self):
        merged = merge_tags({"Name": "custom", "env": "ci"}, "agent-1")
        assert merged == {"Name": "custom", "env": "ci"}

    def test_caller_tags_not_mutated(self):
        tags = {"env": "ci"}
        merge_tags(tags, "agent-1")
        assert tags == {"env": "ci"}

    @pytest.mark.parametrize("itype", ["t2.micro", "t3.large", "T3A.nano", "t4g.small"])
    def test_burstable_types(self, itype):
        assert is_burstable(itype)

    @pytest.mark.parametrize("itype", ["m5.large", "c6i.xlarge", "trn1.2xlarge"])
    def test_non_burstable_types(self, itype):
        assert not is_burstable(itype)


# ---------------------------------------------------------------------------
# launch_instance
# ---------------------------------------------------------------------------


class TestLaunchInstance:
    """Tests for ComputeService.launch_instance."""

    def test_returns_instance_id(self, compute):
        assert compute.launch_instance(
            "ami-1", "kp", "m5.large", "agent-1", {}, ["sg-1"],
        ) == "i-abc123"

    def test_single_run_instances_call(self, compute, mock_client):
        compute.launch_instance("ami-1", "kp", "m5.large", "agent-1", {}, ["sg-1"])
        assert mock_client.execute.call_count == 1
        assert mock_client.execute.call_args[0][1] == "run-instances"

    def test_default_name_tag_only(self, compute, mock_client):
        compute.launch_instance("ami-1", "kp", "m5.large", "agent-1", {}, ["sg-1"])
        assert _tags_sent(mock_client) == {"Name": "agent-1"}

    def test_explicit_name_tag_preserved(self, compute, mock_client):
        compute.launch_instance(
            "ami-1", "kp", "m5.large", "agent-1", {"Name": "custom", "env": "ci"}, ["sg-1"],
        )
        assert _tags_sent(mock_client) == {"Name": "custom", "env": "ci"}

    def test_tags_applied_to_instance_and_volume(self, compute, mock_client):
        compute.launch_instance("ami-1", "kp", "m5.large", "agent-1", {}, ["sg-1"])
        specs = json.loads(_flag(_args(mock_client), "--tag-specifications"))
        assert [s["ResourceType"] for s in specs] == ["instance", "volume"]

    def test_security_groups_in_order(self, compute, mock_client):
        compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-2", "sg-1"])
        args = _args(mock_client)
        start = args.index("--security-group-ids") + 1
        assert args[start:start + 2] == ["sg-2", "sg-1"]

    def test_standard_credits_for_burstable(self, compute, mock_client):
        compute.launch_instance("ami-1", "kp", "t3.micro", "a", {}, ["sg-1"])
        assert _flag(_args(mock_client), "--credit-specification") == "CpuCredits=standard"

    def test_unlimited_credits_when_configured(self, compute, mock_client):
        compute.credit_mode = CreditMode.UNLIMITED
        compute.launch_instance("ami-1", "kp", "t2.medium", "a", {}, ["sg-1"])
        assert _flag(_args(mock_client), "--credit-specification") == "CpuCredits=unlimited"

    def test_no_credit_flag_for_other_families(self, compute, mock_client):
        compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-1"])
        assert "--credit-specification" not in _args(mock_client)

    def test_user_data_passed_as_file_and_cleaned_up(self, compute, mock_client):
        seen = {}

        def execute(context, command, args):
            path = Path(_flag(args, "--user-data")[len("file://"):])
            seen["path"] = path
            seen["content"] = path.read_text(encoding="utf-8")
            return _launched()

        mock_client.execute.side_effect = execute
        compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-1"], "echo hi")
        assert seen["content"] == "echo hi"
        assert not seen["path"].exists()

    def test_user_data_cleaned_up_on_failure(self, compute, mock_client):
        seen = {}

        def execute(context, command, args):
            seen["path"] = Path(_flag(args, "--user-data")[len("file://"):])
            raise UnavailableError("boom", operation="ec2 run-instances")

        mock_client.execute.side_effect = execute
        with pytest.raises(UnavailableError):
            compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-1"], "x")
        assert not seen["path"].exists()

    def test_missing_instance_id_is_unexpected(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="run-instances", parsed={"Instances": []},
        )
        with pytest.raises(UnexpectedResponseError, match="InstanceId"):
            compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-1"])

    def test_unparsed_output_is_unexpected(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="run-instances", raw_output="oops",
        )
        with pytest.raises(UnexpectedResponseError):
            compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-1"])

    def test_security_groups_required(self, compute, mock_client):
        with pytest.raises(InvalidArgumentError, match="security group"):
            compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, [])
        mock_client.execute.assert_not_called()

    def test_remote_error_propagates(self, compute, mock_client):
        mock_client.execute.side_effect = UnavailableError("down")
        with pytest.raises(UnavailableError):
            compute.launch_instance("ami-1", "kp", "m5.large", "a", {}, ["sg-1"])


# ---------------------------------------------------------------------------
# launch_swarm_instance
# ---------------------------------------------------------------------------


class TestLaunchSwarmInstance:
    """Tests for ComputeService.launch_swarm_instance."""

    def test_whitespace_name_rejected_without_remote_call(self, compute, mock_client, resolver):
        with pytest.raises(InvalidArgumentError, match="whitespace"):
            compute.launch_swarm_instance(
                "ami-1", "kp", "m5.large", "bad name", {}, ["sg-1"], "swarm-creds",
            )
        mock_client.execute.assert_not_called()
        assert resolver.calls == []

    def test_tab_in_name_rejected(self, compute):
        with pytest.raises(InvalidArgumentError):
            compute.launch_swarm_instance(
                "ami-1", "kp", "m5.large", "bad\tname", {}, ["sg-1"], "swarm-creds",
            )

    def test_launches_with_bootstrap_payload(self, compute, mock_client, resolver):
        captured = {}

        def execute(context, command, args):
            path = Path(_flag(args, "--user-data")[len("file://"):])
            captured["user_data"] = path.read_text(encoding="utf-8")
            return _launched("i-swarm")

        mock_client.execute.side_effect = execute
        instance_id = compute.launch_swarm_instance(
            "ami-1", "kp", "m5.large", "win-agent-1", {"project": "ci"}, ["sg-1"],
            "swarm-creds",
        )
        assert instance_id == "i-swarm"
        assert resolver.calls == ["swarm-creds"]
        user_data = captured["user_data"]
        assert user_data.startswith("<script>")
        assert "-labels win-agent-1 -name win-agent-1" in user_data
        assert "-master https://jenkins.example.com/" in user_data
        assert "-username swarm-user -password s3cret" in user_data

    def test_secret_not_logged(self, compute, caplog):
        import logging

        caplog.set_level(logging.DEBUG)
        compute.launch_swarm_instance(
            "ami-1", "kp", "m5.large", "agent-1", {}, ["sg-1"], "swarm-creds",
        )
        assert "s3cret" not in caplog.text

    def test_controller_url_required(self, mock_client, resolver, monkeypatch):
        monkeypatch.delenv("JENKINS_URL", raising=False)
        compute = ComputeService(
            mock_client, ServiceContext("us-west-2", "ci", "ec2"),
            credential_resolver=resolver,
        )
        with pytest.raises(InvalidArgumentError, match="controller_url"):
            compute.launch_swarm_instance(
                "ami-1", "kp", "m5.large", "agent-1", {}, ["sg-1"], "swarm-creds",
            )


class TestBuildSwarmUserData:
    """Tests for bootstrap payload rendering."""

    def _cred(self):
        return AgentCredential(username="u", secret="p")

    def test_windows_default_folder(self):
        data = build_swarm_user_data("a1", "http://ci/", self._cred())
        assert "C:\\Swarm\\swarm-client.jar" in data
        assert "> C:\\Swarm\\swarm-client.cmd" in data

    def test_linux_cloud_init(self):
        data = build_swarm_user_data(
            "a1", "http://ci/", self._cred(), platform=AgentPlatform.LINUX,
        )
        assert data.startswith("#cloud-config")
        assert "/opt/swarm/swarm-client.jar" in data
        assert "-executors 1" in data


# ---------------------------------------------------------------------------
# Batched operations
# ---------------------------------------------------------------------------


class TestBatchedOperations:
    """Tests for stop/terminate/reboot."""

    @pytest.mark.parametrize("method, command", [
        ("stop_instances", "stop-instances"),
        ("terminate_instances", "terminate-instances"),
        ("reboot_instances", "reboot-instances"),
    ])
    def test_single_batched_call(self, compute, mock_client, method, command):
        getattr(compute, method)(["i-1", "i-2", "i-3"])
        assert mock_client.execute.call_count == 1
        _, sent_command, args = mock_client.execute.call_args[0]
        assert sent_command == command
        assert args == ["--instance-ids", "i-1", "i-2", "i-3"]

    def test_terminate_twice_succeeds(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="terminate-instances",
            parsed={"TerminatingInstances": [{"InstanceId": "i-1"}]},
        )
        compute.terminate_instances(["i-1"])
        compute.terminate_instances(["i-1"])
        assert mock_client.execute.call_count == 2

    def test_empty_ids_rejected(self, compute, mock_client):
        with pytest.raises(InvalidArgumentError):
            compute.stop_instances([])
        mock_client.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Tags and screenshots
# ---------------------------------------------------------------------------


class TestTagResource:
    """Tests for ComputeService.tag_resource."""

    def test_sends_tag_list(self, compute, mock_client):
        compute.tag_resource("i-1", {"env": "ci", "owner": "build"})
        _, command, args = mock_client.execute.call_args[0]
        assert command == "create-tags"
        assert _flag(args, "--resources") == "i-1"
        assert json.loads(_flag(args, "--tags")) == [
            {"Key": "env", "Value": "ci"}, {"Key": "owner", "Value": "build"},
        ]

    def test_fifty_tags_allowed(self, compute, mock_client):
        compute.tag_resource("i-1", {f"k{i}": "v" for i in range(50)})
        assert mock_client.execute.call_count == 1

    def test_more_than_fifty_rejected(self, compute, mock_client):
        with pytest.raises(InvalidArgumentError, match="at most 50"):
            compute.tag_resource("i-1", {f"k{i}": "v" for i in range(51)})
        mock_client.execute.assert_not_called()


class TestGetScreenshot:
    """Tests for ComputeService.get_screenshot."""

    def test_decodes_to_file(self, compute, mock_client, tmp_path):
        image = b"\xff\xd8\xff\xe0fake-jpeg"
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="get-console-screenshot",
            parsed={"ImageData": base64.b64encode(image).decode(), "InstanceId": "i-1"},
        )
        path = compute.get_screenshot("i-1", "shot.jpg")
        assert path == tmp_path / "shot.jpg"
        assert path.read_bytes() == image

    def test_generated_name(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="get-console-screenshot",
            parsed={"ImageData": base64.b64encode(b"x").decode()},
        )
        path = compute.get_screenshot("i-1")
        assert path.name.startswith("Screenshot_")
        assert path.suffix == ".jpg"

    def test_bad_base64_is_screenshot_error(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="get-console-screenshot",
            parsed={"ImageData": "not base64 !!!"},
        )
        with pytest.raises(ScreenshotError):
            compute.get_screenshot("i-1", "shot.jpg")

    def test_screenshot_error_is_os_error(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="get-console-screenshot",
            parsed={"ImageData": "@@@"},
        )
        with pytest.raises(OSError):
            compute.get_screenshot("i-1", "shot.jpg")

    def test_empty_image_data_writes_nothing(self, compute, mock_client, tmp_path):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="get-console-screenshot",
            parsed={"ImageData": "", "InstanceId": "i-1"},
        )
        with pytest.raises(UnexpectedResponseError, match="empty ImageData"):
            compute.get_screenshot("i-1", "shot.jpg")
        assert not (tmp_path / "shot.jpg").exists()

    def test_missing_image_data(self, compute, mock_client):
        mock_client.execute.return_value = CommandResult(
            service="ec2", command="get-console-screenshot", parsed={},
        )
        with pytest.raises(UnexpectedResponseError):
            compute.get_screenshot("i-1")


class TestConstruction:
    """Tests for ComputeService construction."""

    def test_wrong_service_context_rejected(self, mock_client):
        with pytest.raises(InvalidArgumentError):
            ComputeService(mock_client, ServiceContext("us-west-2", "ci", "lambda"))

    def test_create_validates_region(self, mock_client):
        with pytest.raises(InvalidArgumentError):
            ComputeService.create("atlantis-1", "ci", client=mock_client)

    def test_create_builds_ec2_context(self, mock_client):
        compute = ComputeService.create("eu-west-1", "ci", client=mock_client)
        assert compute.context == ServiceContext("eu-west-1", "ci", "ec2")
