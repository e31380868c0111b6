"""
Tests for the deploy workflow: step selection, stop/confirm behaviour and
the multi-node steps.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import SecretStr

from conftest import FakeRemoteClient
from nestedlab.errors import StepFailedError
from nestedlab.schemas.models import CommandResult, NodeInfo, StepResult, StepStatus, TerraformOutputs
from nestedlab.services.lab_workflow import STEP_NAMES, LabWorkflow, cluster_client_for, combine_results
from nestedlab.services.terraform import TerraformRunner

OUTPUTS = TerraformOutputs(
    resource_group="rg-nestedlab",
    nodes=[
        NodeInfo("nestedlab-node1", "20.1.1.1", "10.10.1.10"),
        NodeInfo("nestedlab-node2", "20.1.1.2", "10.10.1.11"),
    ],
    witness_storage_account="labwitness",
    witness_storage_key=SecretStr("a2V5"),
)


def result(status, name="x", message=""):
    return StepResult(name=name, status=status, message=message)


@pytest.fixture
def terraform():
    mock = MagicMock()
    mock.init = AsyncMock(return_value=CommandResult(True, "", "", 0))
    mock.plan = AsyncMock(return_value=CommandResult(True, "Plan: 9 to add, 0 to change, 0 to destroy.", "", 0))
    mock.apply = AsyncMock(return_value=CommandResult(True, "", "", 0))
    mock.destroy = AsyncMock(return_value=CommandResult(True, "", "", 0))
    mock.outputs = AsyncMock(return_value=OUTPUTS)
    return mock


@pytest.fixture
def provisioner():
    mock = MagicMock()
    mock.wait_for_ssh = AsyncMock(return_value=True)
    mock.run_postinstall = AsyncMock(return_value=result(StepStatus.SUCCESS, "postinstall"))
    return mock


@pytest.fixture
def workflow(lab_config, fake_client, terraform, provisioner):
    return LabWorkflow(
        lab_config,
        client=fake_client,
        cluster_client=FakeRemoteClient(),
        terraform=terraform,
        provisioner=provisioner,
        outputs=OUTPUTS,
    )


def stub_steps(workflow, **statuses):
    """Replace every step with a mock; unnamed steps succeed."""
    mocks = {}
    for name in STEP_NAMES:
        status = statuses.get(name.replace("-", "_"), StepStatus.SUCCESS)
        if isinstance(status, Exception):
            mocks[name] = AsyncMock(side_effect=status)
        else:
            mocks[name] = AsyncMock(return_value=result(status, message=f"{name} {status.value}"))
    workflow.steps = mocks
    return mocks


class TestCombineResults:
    def test_empty(self):
        assert combine_results("s", []).status == StepStatus.SKIPPED

    def test_worst_status_wins(self):
        combined = combine_results("s", [
            result(StepStatus.SKIPPED, "a"),
            result(StepStatus.WARNING, "b", "careful"),
            result(StepStatus.SUCCESS, "c"),
        ])
        assert combined.status == StepStatus.WARNING
        assert combined.message == "careful"
        assert set(combined.details) == {"a", "b", "c"}

    def test_failed_over_warning(self):
        combined = combine_results("s", [result(StepStatus.WARNING, "a"), result(StepStatus.FAILED, "b", "broke")])
        assert combined.status == StepStatus.FAILED
        assert combined.message == "broke"

    def test_all_skipped(self):
        combined = combine_results("s", [result(StepStatus.SKIPPED, "a"), result(StepStatus.SKIPPED, "b")])
        assert combined.status == StepStatus.SKIPPED
        assert combined.message == "2 item(s) skipped"


class TestClusterClient:
    def test_forces_credssp(self, lab_config):
        client = cluster_client_for(lab_config)
        assert client.settings.auth == "credssp"
        assert lab_config.remoting.auth == "ntlm"
        assert client.username == lab_config.azure.admin_username


class TestSelectSteps:
    def test_all(self, workflow):
        assert workflow.select_steps() == list(STEP_NAMES)

    def test_only_keeps_workflow_order(self, workflow):
        assert workflow.select_steps(only=["volumes", "firewall"]) == ["firewall", "volumes"]

    def test_start_at(self, workflow):
        assert workflow.select_steps(start_at="witness") == ["witness", "s2d", "volumes"]

    def test_unknown(self, workflow):
        with pytest.raises(ValueError, match="Unknown step"):
            workflow.select_steps(only=["teleport"])
        with pytest.raises(ValueError, match="Unknown step"):
            workflow.select_steps(start_at="nope")

    def test_every_step_has_a_handler(self, workflow):
        assert set(workflow.steps) == set(STEP_NAMES)


class TestRun:
    @pytest.mark.asyncio
    async def test_all_succeed(self, workflow):
        stub_steps(workflow)
        report = await workflow.run()
        assert [s.name for s in report.steps] == list(STEP_NAMES)
        assert report.succeeded
        assert report.stopped_at is None
        assert report.events[-1]["data"]["description"] == "🎉 16 step(s) completed"
        assert len(report.events) == len(STEP_NAMES) + 1

    @pytest.mark.asyncio
    async def test_stops_on_failure(self, workflow):
        mocks = stub_steps(workflow, hyperv=StepStatus.FAILED)
        report = await workflow.run()

        assert report.steps[-1].name == "hyperv"
        assert report.stopped_at == "hyperv"
        assert not report.succeeded
        mocks["nat"].assert_not_awaited()
        assert report.events[-1]["data"]["level"] == "error"
        assert report.to_dict()["stopped_at"] == "hyperv"

    @pytest.mark.asyncio
    async def test_exception_becomes_failed_step(self, workflow):
        stub_steps(workflow, iso=RuntimeError("disk full"))
        report = await workflow.run(start_at="iso")

        assert len(report.steps) == 1
        assert report.steps[0].status == StepStatus.FAILED
        assert report.steps[0].message == "disk full"
        assert report.stopped_at == "iso"

    @pytest.mark.asyncio
    async def test_warning_declined(self, workflow):
        mocks = stub_steps(workflow, cluster_features=StepStatus.WARNING)
        confirm = MagicMock(return_value=False)
        report = await workflow.run(start_at="cluster-features", confirm=confirm)

        confirm.assert_called_once()
        assert confirm.call_args.args[0].name == "cluster-features"
        assert report.stopped_at == "cluster-features"
        assert report.succeeded
        mocks["cluster-validate"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_warning_accepted(self, workflow):
        stub_steps(workflow, cluster_features=StepStatus.WARNING)
        report = await workflow.run(start_at="cluster-features", confirm=lambda r: True)
        assert report.stopped_at is None
        assert len(report.steps) == 6

    @pytest.mark.asyncio
    async def test_warning_without_confirm_continues(self, workflow):
        stub_steps(workflow, s2d=StepStatus.WARNING)
        report = await workflow.run(only=["s2d", "volumes"])
        assert [s.name for s in report.steps] == ["s2d", "volumes"]

    @pytest.mark.asyncio
    async def test_results_renamed_and_timed(self, workflow):
        stub_steps(workflow)
        report = await workflow.run(only=["firewall"])
        assert report.steps[0].name == "firewall"
        assert report.steps[0].duration_ms >= 0


class TestProvisionApproval:
    """provision against a real TerraformRunner; only the terraform process is faked."""

    NODES_JSON = json.dumps({
        "resource_group": {"value": "rg-nestedlab"},
        "node_names": {"value": ["nestedlab-node1", "nestedlab-node2"]},
        "node_public_ips": {"value": ["20.1.1.1", "20.1.1.2"]},
        "node_private_ips": {"value": ["10.10.1.10", "10.10.1.11"]},
    })

    @pytest.fixture
    def executor(self):
        def reply(argv, **kwargs):
            stdout = {
                "plan": "Terraform will perform the following actions:\n\nPlan: 9 to add, 0 to change, 0 to destroy.\n",
                "output": self.NODES_JSON,
            }.get(argv[1], "")
            return CommandResult(True, stdout, "", 0)

        mock = MagicMock()
        mock.execute = AsyncMock(side_effect=reply)
        return mock

    def _workflow(self, lab_config, fake_client, provisioner, executor):
        lab_config.terraform_dir.mkdir(parents=True, exist_ok=True)
        return LabWorkflow(lab_config, client=fake_client, cluster_client=FakeRemoteClient(),
                           terraform=TerraformRunner(lab_config, executor), provisioner=provisioner)

    @staticmethod
    def _argv(executor, command):
        return [c.args[0] for c in executor.execute.call_args_list if c.args[0][1] == command]

    @pytest.mark.asyncio
    async def test_default_applies_saved_plan_after_confirm(self, lab_config, fake_client, provisioner, executor):
        assert lab_config.terraform.auto_approve is False
        workflow = self._workflow(lab_config, fake_client, provisioner, executor)
        confirm = MagicMock(return_value=True)

        with patch("nestedlab.services.terraform.shutil.which", return_value="/usr/bin/terraform"):
            report = await workflow.run(only=["provision"], confirm=confirm)

        assert report.steps[0].status == StepStatus.SUCCESS
        assert "Plan: 9 to add" in confirm.call_args.args[0].message
        assert "-out=lab.tfplan" in self._argv(executor, "plan")[0]
        assert self._argv(executor, "apply") == [["terraform", "apply", "-input=false", "-no-color", "lab.tfplan"]]

    @pytest.mark.asyncio
    async def test_declined_plan_is_not_applied(self, lab_config, fake_client, provisioner, executor):
        workflow = self._workflow(lab_config, fake_client, provisioner, executor)

        with patch("nestedlab.services.terraform.shutil.which", return_value="/usr/bin/terraform"):
            report = await workflow.run(only=["provision"], confirm=lambda r: False)

        assert report.stopped_at == "provision"
        assert report.steps[0].status == StepStatus.FAILED
        assert self._argv(executor, "apply") == []

    @pytest.mark.asyncio
    async def test_yes_applies_saved_plan_without_asking(self, lab_config, fake_client, provisioner, executor):
        workflow = self._workflow(lab_config, fake_client, provisioner, executor)

        with patch("nestedlab.services.terraform.shutil.which", return_value="/usr/bin/terraform"):
            report = await workflow.run(only=["provision"])

        assert report.succeeded
        assert self._argv(executor, "apply")[0][-1] == "lab.tfplan"

    @pytest.mark.asyncio
    async def test_auto_approve(self, lab_config, fake_client, provisioner, executor):
        lab_config.terraform.auto_approve = True
        workflow = self._workflow(lab_config, fake_client, provisioner, executor)

        with patch("nestedlab.services.terraform.shutil.which", return_value="/usr/bin/terraform"):
            report = await workflow.run(only=["provision"], confirm=MagicMock(return_value=False))

        assert report.succeeded
        assert self._argv(executor, "plan") == []
        assert "-auto-approve" in self._argv(executor, "apply")[0]


class TestSteps:
    @pytest.mark.asyncio
    async def test_provision(self, lab_config, fake_client, terraform, provisioner):
        workflow = LabWorkflow(lab_config, client=fake_client, cluster_client=FakeRemoteClient(),
                               terraform=terraform, provisioner=provisioner)
        step = await workflow.step_provision()

        terraform.init.assert_awaited_once()
        terraform.apply.assert_awaited_once()
        assert step.status == StepStatus.SUCCESS
        assert "nestedlab-node1=20.1.1.1" in step.message
        assert await workflow.hosts() == ["20.1.1.1", "20.1.1.2"]

    @pytest.mark.asyncio
    async def test_outputs_read_lazily(self, lab_config, fake_client, terraform, provisioner):
        workflow = LabWorkflow(lab_config, client=fake_client, cluster_client=FakeRemoteClient(),
                               terraform=terraform, provisioner=provisioner)
        assert await workflow.node_names() == ["nestedlab-node1", "nestedlab-node2"]
        assert await workflow.hosts() == ["20.1.1.1", "20.1.1.2"]
        terraform.outputs.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_nodes_fails_the_step(self, lab_config, fake_client, terraform, provisioner):
        terraform.outputs.return_value = TerraformOutputs(resource_group="rg-nestedlab", nodes=[])
        workflow = LabWorkflow(lab_config, client=fake_client, cluster_client=FakeRemoteClient(),
                               terraform=terraform, provisioner=provisioner)
        with pytest.raises(StepFailedError, match="no nodes"):
            await workflow.hosts()

        report = await workflow.run(only=["firewall"])
        assert report.steps[0].status == StepStatus.FAILED
        assert report.stopped_at == "firewall"

    @pytest.mark.asyncio
    async def test_wait_remoting(self, workflow, fake_client):
        fake_client.reachable = False
        step = await workflow.step_wait_remoting()
        assert step.status == StepStatus.FAILED
        assert fake_client.reachability_checks == ["20.1.1.1", "20.1.1.2"]

    @pytest.mark.asyncio
    async def test_firewall_includes_extra_rules(self, workflow, fake_client, lab_config):
        lab_config.firewall.extra_rules = [{"name": "Lab-Web", "port": 8080}]
        step = await workflow.step_firewall()
        assert step.status == StepStatus.SUCCESS
        assert all("Lab-Web" in s for s in fake_client.scripts)
        assert [h for h, _, _ in fake_client.calls] == ["20.1.1.1", "20.1.1.2"]

    @pytest.mark.asyncio
    async def test_remoting_peers(self, workflow, fake_client):
        await workflow.step_remoting()
        assert "@('nestedlab-node2', '10.10.1.11')" in fake_client.scripts[0]
        assert "@('nestedlab-node1', '10.10.1.10')" in fake_client.scripts[1]

    @pytest.mark.asyncio
    async def test_wmi_permissions_skipped_without_grants(self, workflow, fake_client):
        step = await workflow.step_wmi_permissions()
        assert step.status == StepStatus.SKIPPED
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_hyperv_stops_after_failed_feature(self, workflow):
        workflow.hyperv.ensure_feature = AsyncMock(return_value=result(StepStatus.FAILED, "hyperv-feature:20.1.1.1", "no reboot"))
        workflow.hyperv.ensure_switch = AsyncMock()
        step = await workflow.step_hyperv()
        assert step.status == StepStatus.FAILED
        workflow.hyperv.ensure_feature.assert_awaited_once()
        workflow.hyperv.ensure_switch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nat_maps_each_guest_on_its_node(self, workflow, fake_client):
        fake_client.queue_json(
            {"gateway": "created", "nat": "created"},
            {"gateway": "exists", "nat": "exists"},
            {"NestedLab-Guest-SSH-2200": "created"},
        )
        fake_client.queue_text("created")
        fake_client.queue_json({"NestedLab-Guest-SSH-2201": "created"})
        fake_client.queue_text("exists")

        # json and text queues are independent; order within each is what matters
        step = await workflow.step_nat()

        assert step.status == StepStatus.SUCCESS
        hosts = [h for h, _, _ in fake_client.calls]
        assert hosts == ["20.1.1.1", "20.1.1.2", "20.1.1.1", "20.1.1.1", "20.1.1.2", "20.1.1.2"]
        assert "-ExternalPort 2201" in fake_client.scripts[5]
        assert "'192.168.100.11'" in fake_client.scripts[5]

    @pytest.mark.asyncio
    async def test_guests(self, workflow, lab_config, ssh_key_file):
        lab_config.guests.ssh_public_key_path = str(ssh_key_file)
        workflow.hyperv.create_guest = AsyncMock(side_effect=lambda host, name, ks: result(StepStatus.SUCCESS, f"guest:{name}"))

        step = await workflow.step_guests()

        assert step.status == StepStatus.SUCCESS
        calls = workflow.hyperv.create_guest.await_args_list
        assert [(c.args[0], c.args[1]) for c in calls] == [("20.1.1.1", "alma01"), ("20.1.1.2", "alma02")]
        assert "--hostname=alma02" in calls[1].args[2]

    @pytest.mark.asyncio
    async def test_guests_none_configured(self, workflow, lab_config):
        lab_config.guests.count = 0
        assert (await workflow.step_guests()).status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_postinstall_stops_when_ssh_never_comes_up(self, workflow, provisioner):
        provisioner.wait_for_ssh.return_value = False
        step = await workflow.step_guest_postinstall()
        assert step.status == StepStatus.FAILED
        provisioner.wait_for_ssh.assert_awaited_once_with("20.1.1.1", 2200)
        provisioner.run_postinstall.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_postinstall(self, workflow, provisioner):
        step = await workflow.step_guest_postinstall()
        assert step.status == StepStatus.SUCCESS
        assert provisioner.run_postinstall.await_args_list[1].args == ("20.1.1.2", 2201, "alma02")

    @pytest.mark.asyncio
    async def test_postinstall_disabled(self, workflow, lab_config, provisioner):
        lab_config.guests.run_postinstall = False
        assert (await workflow.step_guest_postinstall()).status == StepStatus.SKIPPED
        provisioner.wait_for_ssh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cluster_steps_use_first_node(self, workflow):
        workflow.cluster.create = AsyncMock(return_value=result(StepStatus.SUCCESS))
        await workflow.step_cluster_create()
        workflow.cluster.create.assert_awaited_once_with("20.1.1.1", ["nestedlab-node1", "nestedlab-node2"])

    @pytest.mark.asyncio
    async def test_witness_gets_outputs(self, workflow):
        workflow.cluster.configure_witness = AsyncMock(return_value=result(StepStatus.SUCCESS))
        await workflow.step_witness()
        workflow.cluster.configure_witness.assert_awaited_once_with(
            "20.1.1.1", "labwitness", OUTPUTS.witness_storage_key,
        )

    @pytest.mark.asyncio
    async def test_destroy(self, workflow, terraform):
        step = await workflow.destroy()
        assert step.status == StepStatus.SUCCESS
        terraform.destroy.assert_awaited_once_with(auto_approve=True)
