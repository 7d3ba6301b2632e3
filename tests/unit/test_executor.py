"""Unit tests for the provisioning executor with Terraform stubbed out."""

import json
import subprocess

import pytest
from botocore.exceptions import ClientError

from auroralab.engine import executor as executor_module
from auroralab.engine.executor import CDKTFExecutor, destroy_infra, plan_infra, submit
from auroralab.engine.state import configure_backend
from auroralab.exceptions import InvalidGraph, ProvisioningFailure
from auroralab.graph.deployment import build_deployment_graph


OUTPUTS = {
    "vpc_id": {"value": "vpc-0123", "sensitive": False},
    "cluster_identifier": {"value": "auroralab-sysbench-aurora", "sensitive": False},
    "rds_master_user_secret_arn": {"value": "arn:aws:secretsmanager:x", "sensitive": True},
}


class FakeTerraform:
    """Records terraform invocations and replays canned results."""

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    def __call__(self, cmd, cwd=None, capture_output=False, check=False, env=None):
        self.calls.append(cmd[1:])
        assert env["TF_IN_AUTOMATION"] == "1"

        if self.fail_on and cmd[1] == self.fail_on:
            raise subprocess.CalledProcessError(
                1, cmd, output=b"partial", stderr=b"Error: InvalidParameterCombination"
            )

        stdout = b""
        if cmd[1] == "output":
            stdout = json.dumps(OUTPUTS).encode()
        elif cmd[1] == "plan":
            stdout = b"Plan: 20 to add, 0 to change, 0 to destroy."

        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr=b"")


@pytest.fixture
def graph(infra):
    return build_deployment_graph(infra)


@pytest.fixture
def terraform(monkeypatch, tmp_path):
    fake = FakeTerraform()
    stack_dir = tmp_path / "stack"

    def fake_synth(self, graph, infra):
        graph.validate()
        stack_dir.mkdir(exist_ok=True)
        return stack_dir

    monkeypatch.setattr(CDKTFExecutor, "synth", fake_synth)
    monkeypatch.setattr(executor_module, "ensure_state_backend", lambda infra: None)
    monkeypatch.setattr(executor_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(executor_module.subprocess, "run", fake)

    return fake


class TestSubmit:
    """Test handing the graph to the engine."""

    def test_apply_sequence(self, graph, infra, terraform, tmp_path):
        result = submit(graph, infra, tmp_path / "work")

        assert [call[0] for call in terraform.calls] == ["init", "apply", "output"]
        assert "-auto-approve" in terraform.calls[1]
        assert result.graph_fingerprint == graph.fingerprint()
        assert result.outputs == {
            "vpc_id": "vpc-0123",
            "cluster_identifier": "auroralab-sysbench-aurora",
            "rds_master_user_secret_arn": "arn:aws:secretsmanager:x",
        }

    def test_submit_twice_leaves_graph_untouched(self, graph, infra, terraform, tmp_path):
        fingerprint = graph.fingerprint()
        edges = graph.edges

        first = submit(graph, infra, tmp_path / "work")
        second = submit(graph, infra, tmp_path / "work")

        assert first.graph_fingerprint == second.graph_fingerprint == fingerprint
        assert graph.edges == edges
        assert first.outputs == second.outputs

    def test_invalid_graph_never_reaches_engine(self, graph, infra, terraform, tmp_path):
        graph._dependencies["Vpc"].add("ServerlessInstance")

        with pytest.raises(InvalidGraph):
            submit(graph, infra, tmp_path / "work")

        assert terraform.calls == []

    def test_engine_failure(self, graph, infra, terraform, tmp_path):
        terraform.fail_on = "apply"

        with pytest.raises(ProvisioningFailure) as exc_info:
            submit(graph, infra, tmp_path / "work")

        details = exc_info.value.details
        assert details["returncode"] == 1
        assert "InvalidParameterCombination" in details["stderr"]
        assert details["command"][1] == "apply"
        assert [call[0] for call in terraform.calls] == ["init", "apply"]

    def test_terraform_missing(self, graph, infra, terraform, monkeypatch, tmp_path):
        monkeypatch.setattr(executor_module.shutil, "which", lambda name: None)

        with pytest.raises(ProvisioningFailure) as exc_info:
            submit(graph, infra, tmp_path / "work")

        assert "command not found" in str(exc_info.value)
        assert terraform.calls == []

    def test_state_backend_failure(self, graph, infra, terraform, monkeypatch, tmp_path):
        def denied(infra):
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "CreateBucket"
            )

        monkeypatch.setattr(executor_module, "ensure_state_backend", denied)

        with pytest.raises(ProvisioningFailure) as exc_info:
            submit(graph, infra, tmp_path / "work")

        assert exc_info.value.details["bucket"] == infra.state_backend_bucket
        assert "AccessDenied" in exc_info.value.details["error"]
        assert terraform.calls == []


class TestConfirmedApply:
    """Test applying through a saved plan when auto-approve is off."""

    @pytest.fixture(autouse=True)
    def manual_approval(self, monkeypatch):
        monkeypatch.setattr(executor_module.settings, "auto_approve", False)

    def test_confirmed_plan_is_applied(self, graph, infra, terraform, tmp_path):
        shown = []

        def confirm(plan_output):
            shown.append(plan_output)
            return True

        result = submit(graph, infra, tmp_path / "work", confirm=confirm)

        assert [call[0] for call in terraform.calls] == ["init", "plan", "apply", "output"]
        assert "-out=tfplan" in terraform.calls[1]
        assert terraform.calls[2] == ["apply", "-json", "-input=false", "tfplan"]
        assert shown == ["Plan: 20 to add, 0 to change, 0 to destroy."]
        assert result.applied
        assert result.outputs["vpc_id"] == "vpc-0123"

    def test_declined_plan_applies_nothing(self, graph, infra, terraform, tmp_path):
        result = submit(graph, infra, tmp_path / "work", confirm=lambda plan_output: False)

        assert [call[0] for call in terraform.calls] == ["init", "plan"]
        assert not result.applied
        assert result.outputs == {}
        assert result.graph_fingerprint == graph.fingerprint()

    def test_nothing_applied_without_confirm(self, graph, infra, terraform, tmp_path):
        result = submit(graph, infra, tmp_path / "work")

        assert all(call[0] != "apply" for call in terraform.calls)
        assert not result.applied

    def test_confirmed_destroy(self, graph, infra, terraform, tmp_path):
        workdir = tmp_path / "work"

        assert destroy_infra(graph, infra, workdir, confirm=lambda plan_output: True)

        assert [call[0] for call in terraform.calls] == ["init", "plan", "apply"]
        assert "-destroy" in terraform.calls[1]
        assert "-auto-approve" not in terraform.calls[2]
        assert not workdir.exists()

    def test_declined_destroy_keeps_workdir(self, graph, infra, terraform, tmp_path):
        workdir = tmp_path / "work"

        assert not destroy_infra(graph, infra, workdir, confirm=lambda plan_output: False)

        assert [call[0] for call in terraform.calls] == ["init", "plan"]
        assert workdir.exists()


class TestStateBackend:
    """Test the S3 backend settings passed to the stack."""

    def test_configure_backend(self, infra):
        config = configure_backend(infra)

        assert config == {
            "bucket": "auroralab-tf-state-123456789012-us-east-1",
            "key": "deployments/sysbench/terraform.tfstate",
            "region": "us-east-1",
            "encrypt": True,
            "dynamodb_table": "auroralab-tf-state-123456789012-us-east-1-lock",
            "role_arn": "arn:aws:iam::123456789012:role/AuroraLab",
        }

    def test_configure_backend_without_role(self, infra):
        infra.role_arn = None

        assert "role_arn" not in configure_backend(infra)


class TestPlanAndDestroy:
    """Test the other engine operations."""

    def test_plan(self, graph, infra, terraform, tmp_path):
        output = plan_infra(graph, infra, tmp_path / "work")

        assert "Plan: 20 to add" in output
        assert [call[0] for call in terraform.calls] == ["init", "plan"]

    def test_destroy_cleans_workdir(self, graph, infra, terraform, tmp_path):
        workdir = tmp_path / "work"

        destroy_infra(graph, infra, workdir)

        assert [call[0] for call in terraform.calls] == ["init", "apply"]
        assert "-destroy" in terraform.calls[1]
        assert "-auto-approve" in terraform.calls[1]
        assert not workdir.exists()

    def test_failed_destroy_keeps_workdir(self, graph, infra, terraform, tmp_path):
        terraform.fail_on = "apply"
        workdir = tmp_path / "work"

        with pytest.raises(ProvisioningFailure):
            destroy_infra(graph, infra, workdir)

        assert workdir.exists()

    def test_stack_dir(self, tmp_path):
        executor = CDKTFExecutor(tmp_path / "work", terraform_bin="tofu")

        assert executor.terraform_bin == "tofu"
        assert executor.stack_dir == tmp_path / "work" / "cdktf.out" / "stacks" / "aurora-serverless-v2"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
