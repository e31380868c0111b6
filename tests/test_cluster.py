"""
Tests for ClusterService against a fake remoting client.
"""

import pytest
from pydantic import SecretStr

from nestedlab.config import ClusterSettings, VolumeSpec
from nestedlab.schemas.models import StepStatus
from nestedlab.services.cluster import ClusterService, classify_validation
from nestedlab.services.helpers.powershell_utils import PowerShellValidator

NODES = ["nestedlab-node1", "nestedlab-node2"]


def service(fake_client, **settings) -> ClusterService:
    return ClusterService(fake_client, ClusterSettings(**settings))


class TestClassifyValidation:
    def test_success(self):
        assert classify_validation([]) == "Success"

    def test_warning(self):
        assert classify_validation(["The node has no default gateway"]) == "Warning"

    def test_failed(self):
        assert classify_validation(["Test 'List Disks' FAILED on node1", "minor"]) == "Failed"

    def test_failover_is_not_a_failure(self):
        warnings = ["Failover Clustering validation reported warnings for node nestedlab-node1"]
        assert classify_validation(warnings) == "Warning"

    def test_conditionally_approved(self):
        warnings = [
            "Network - Validate IP Configuration: a test failed to reach the gateway",
            "Test Result:\r\nClusterConditionallyApproved\r\nTesting has completed successfully.",
        ]
        assert classify_validation(warnings) == "Warning"

    def test_not_approved(self):
        warnings = ["Test Result:\nHadUnselectedTests, ClusterNotApproved\nTesting has completed for the tests you selected."]
        assert classify_validation(warnings) == "Failed"


class TestFeatures:
    @pytest.mark.asyncio
    async def test_all_present(self, fake_client):
        fake_client.queue_json(
            {"Failover-Clustering": "exists", "FS-FileServer": "exists"},
            {"Failover-Clustering": "created", "FS-FileServer": "exists"},
        )
        result = await service(fake_client).install_features(["h1", "h2"])
        assert result.status == StepStatus.SUCCESS
        assert set(result.details) == {"h1", "h2"}
        assert [host for host, _, _ in fake_client.calls] == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_restart_needed_is_warning(self, fake_client):
        fake_client.queue_json(
            {"Failover-Clustering": "created", "restart_needed": True},
            {"Failover-Clustering": "exists"},
        )
        result = await service(fake_client).install_features(["h1", "h2"])
        assert result.status == StepStatus.WARNING
        assert "h1" in result.message
        assert "h2" not in result.message


class TestValidate:
    @pytest.mark.asyncio
    async def test_disabled(self, fake_client):
        result = await service(fake_client, validate=False).validate("h", NODES)
        assert result.status == StepStatus.SKIPPED
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_clean(self, fake_client):
        fake_client.queue_json({"Report": "C:\\report.htm", "Warnings": []})
        result = await service(fake_client).validate("h", NODES)
        assert result.status == StepStatus.SUCCESS
        assert "-Node @('nestedlab-node1', 'nestedlab-node2')" in fake_client.scripts[0]
        assert "'Storage Spaces Direct'" in fake_client.scripts[0]

    @pytest.mark.asyncio
    async def test_warnings_ignored(self, fake_client):
        fake_client.queue_json({"Report": "r", "Warnings": "single warning"})
        result = await service(fake_client).validate("h", NODES)
        assert result.status == StepStatus.SUCCESS
        assert result.details["warnings"] == ["single warning"]
        assert result.details["result"] == "Warning"

    @pytest.mark.asyncio
    async def test_warnings_not_ignored(self, fake_client):
        fake_client.queue_json({"Report": "r", "Warnings": ["w1", "w2"]})
        result = await service(fake_client, ignore_validation_warnings=False).validate("h", NODES)
        assert result.status == StepStatus.WARNING

    @pytest.mark.asyncio
    async def test_failed(self, fake_client):
        fake_client.queue_json({"Report": "r", "Warnings": ["Validation failed for Network"]})
        result = await service(fake_client).validate("h", NODES)
        assert result.status == StepStatus.FAILED


class TestCreate:
    @pytest.mark.asyncio
    async def test_created(self, fake_client):
        fake_client.queue_json({"State": "created", "Name": "s2dlab-clu"})
        result = await service(fake_client).create("h", NODES)

        assert result.status == StepStatus.SUCCESS
        script = fake_client.scripts[0]
        assert "-StaticAddress '10.10.1.50'" in script
        assert "-NoStorage" in script
        assert "-AdministrativeAccessPoint DNS" in script
        assert PowerShellValidator.validate_syntax(script) == []

    @pytest.mark.asyncio
    async def test_exists(self, fake_client):
        fake_client.queue_json({"State": "exists", "Name": "S2DLAB-CLU"})
        result = await service(fake_client).create("h", NODES)
        assert result.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_other_cluster(self, fake_client):
        fake_client.queue_json({"State": "exists", "Name": "someone-else"})
        result = await service(fake_client).create("h", NODES)
        assert result.status == StepStatus.FAILED
        assert "someone-else" in result.message


class TestWitness:
    @pytest.mark.asyncio
    async def test_none(self, fake_client):
        result = await service(fake_client, witness="none").configure_witness("h")
        assert result.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cloud_requires_outputs(self, fake_client):
        result = await service(fake_client).configure_witness("h", None, None)
        assert result.status == StepStatus.FAILED
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_cloud_key_marked_secret(self, fake_client):
        fake_client.queue_text("created")
        result = await service(fake_client).configure_witness("h", "labwitness", SecretStr("a2V5LXZhbHVl"))

        assert result.status == StepStatus.SUCCESS
        assert result.details == {"type": "Cloud Witness", "state": "created"}
        _, script, secrets = fake_client.calls[0]
        assert "-CloudWitness -AccountName 'labwitness'" in script
        assert secrets == ("a2V5LXZhbHVl",)
        assert "a2V5LXZhbHVl" not in str(result.to_dict())

    @pytest.mark.asyncio
    async def test_fileshare(self, fake_client):
        fake_client.queue_text("exists")
        result = await service(fake_client, witness="fileshare", witness_share="\\\\fs\\witness").configure_witness("h")
        assert result.status == StepStatus.SKIPPED
        assert "-FileShareWitness '\\\\fs\\witness'" in fake_client.scripts[0]
        assert fake_client.calls[0][2] == ()


class TestStorage:
    @pytest.mark.asyncio
    async def test_s2d_enabled(self, fake_client):
        fake_client.queue_text("created")
        result = await service(fake_client).enable_s2d("h")
        assert result.status == StepStatus.SUCCESS
        assert "-PoolFriendlyName 'S2D on s2dlab-clu'" in fake_client.scripts[0]

    @pytest.mark.asyncio
    async def test_s2d_disabled(self, fake_client):
        result = await service(fake_client, enable_s2d=False).enable_s2d("h")
        assert result.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_volumes(self, fake_client):
        fake_client.queue_json({"Volume01": "created", "Logs": "exists"})
        volumes = [VolumeSpec(friendly_name="Volume01", size_gb=100), VolumeSpec(friendly_name="Logs", size_gb=20, resiliency="Simple")]
        result = await service(fake_client, volumes=volumes).create_volumes("h")

        assert result.status == StepStatus.SUCCESS
        assert result.message == "1 volume(s) created"
        script = fake_client.scripts[0]
        assert "-Size (100 * 1GB)" in script
        assert "-ResiliencySettingName Simple" in script
        assert PowerShellValidator.validate_syntax(script) == []

    @pytest.mark.asyncio
    async def test_no_volumes(self, fake_client):
        result = await service(fake_client, volumes=[]).create_volumes("h")
        assert result.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_status_normalizes_lists(self, fake_client):
        fake_client.queue_json({
            "Name": "s2dlab-clu",
            "Nodes": {"Name": "nestedlab-node1", "State": "Up"},
            "S2DState": "Enabled",
            "PoolHealth": "Healthy",
            "Volumes": None,
        })
        status = await service(fake_client).status("h")
        assert status["Nodes"] == [{"Name": "nestedlab-node1", "State": "Up"}]
        assert status["Volumes"] == []
