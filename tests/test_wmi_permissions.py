"""
Tests for WmiPermissionService against a fake remoting client.
"""

import pytest

from conftest import remote_failure
from nestedlab.config import WmiGrantSpec
from nestedlab.errors import RemoteExecutionError
from nestedlab.schemas.models import StepStatus
from nestedlab.services.helpers.powershell_utils import PowerShellValidator
from nestedlab.services.wmi_permissions import WmiPermissionService, normalize_namespace

SID = "S-1-5-21-1004336348-1177238915-682003330-1001"
CIMV2 = "O:BAG:BAD:(A;CI;CCDCLCSWRPWPRCWD;;;BA)(A;CI;CCDCRP;;;AU)"


class TestNormalizeNamespace:
    def test_forward_slashes(self):
        assert normalize_namespace("root/cimv2") == "root\\cimv2"

    def test_strips_outer_separators(self):
        assert normalize_namespace("\\root\\MSCluster\\") == "root\\MSCluster"

    def test_must_start_with_root(self):
        with pytest.raises(ValueError, match="root"):
            normalize_namespace("cimv2")


class TestResolveSid:
    @pytest.mark.asyncio
    async def test_sid_passes_through(self, fake_client):
        assert await WmiPermissionService(fake_client).resolve_sid("h", SID.lower()) == SID
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_account_translated_remotely(self, fake_client):
        fake_client.queue_text(SID)
        assert await WmiPermissionService(fake_client).resolve_sid("h", "labadmin") == SID
        assert "NTAccount('labadmin')" in fake_client.scripts[0]

    @pytest.mark.asyncio
    async def test_unresolvable(self, fake_client):
        fake_client.queue_text("garbage")
        with pytest.raises(RemoteExecutionError, match="could not resolve SID"):
            await WmiPermissionService(fake_client).resolve_sid("h", "nobody")


class TestGrant:
    @pytest.mark.asyncio
    async def test_writes_new_ace(self, fake_client):
        fake_client.queue_text(SID, CIMV2, "")
        result = await WmiPermissionService(fake_client).grant("h", "root/cimv2", "labadmin", ["Enable", "RemoteAccess"])

        assert result.status == StepStatus.SUCCESS
        assert result.name == "wmi:h:root/cimv2:labadmin"
        assert result.details["mask"] == "0x21"
        assert result.details["after"] == CIMV2 + f"(A;CI;0x21;;;{SID})"

        get_script, set_script = fake_client.scripts[1], fake_client.scripts[2]
        assert "GetSecurityDescriptor" in get_script
        assert "-Namespace 'root\\cimv2'" in get_script
        assert "SetSecurityDescriptor" in set_script
        assert f"(A;CI;0x21;;;{SID})" in set_script
        assert PowerShellValidator.validate_syntax(get_script) == []
        assert PowerShellValidator.validate_syntax(set_script) == []

    @pytest.mark.asyncio
    async def test_existing_permissions_skip_write(self, fake_client):
        fake_client.queue_text(CIMV2)
        result = await WmiPermissionService(fake_client).grant("h", "root/cimv2", "AU", ["Enable"])

        assert result.status == StepStatus.SKIPPED
        assert len(fake_client.calls) == 1  # read only

    @pytest.mark.asyncio
    async def test_deny(self, fake_client):
        fake_client.queue_text(SID, CIMV2, "")
        result = await WmiPermissionService(fake_client).grant(
            "h", "root/cimv2", "labadmin", ["RemoteAccess"], allow=False,
        )
        assert result.details["after"].startswith(f"O:BAG:BAD:(D;CI;0x20;;;{SID})")

    @pytest.mark.asyncio
    async def test_unknown_permission(self, fake_client):
        with pytest.raises(ValueError):
            await WmiPermissionService(fake_client).grant("h", "root/cimv2", "labadmin", ["Fly"])
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_remote_failure_propagates(self, fake_client):
        fake_client.queue_text(SID, remote_failure("GetSecurityDescriptor returned 2"))
        with pytest.raises(RemoteExecutionError):
            await WmiPermissionService(fake_client).grant("h", "root/cimv2", "labadmin", ["Enable"])


class TestRevokeAndMask:
    @pytest.mark.asyncio
    async def test_revoke(self, fake_client):
        fake_client.queue_text(CIMV2 + f"(A;CI;0x21;;;{SID})", "")
        result = await WmiPermissionService(fake_client).revoke("h", "root/cimv2", SID)
        assert result.status == StepStatus.SUCCESS
        assert result.details["after"] == CIMV2

    @pytest.mark.asyncio
    async def test_revoke_nothing(self, fake_client):
        fake_client.queue_text(CIMV2)
        result = await WmiPermissionService(fake_client).revoke("h", "root/cimv2", SID)
        assert result.status == StepStatus.SKIPPED


class TestEnsureGrants:
    @pytest.mark.asyncio
    async def test_combined(self, fake_client):
        fake_client.queue_text(
            SID, CIMV2, "",      # first grant writes
            CIMV2,               # second grant (AU already has Enable)
        )
        grants = [
            WmiGrantSpec(account="labadmin"),
            WmiGrantSpec(account="AU", permissions=["Enable"]),
        ]
        result = await WmiPermissionService(fake_client).ensure_grants("h", grants)
        assert result.status == StepStatus.SUCCESS
        assert result.name == "wmi:h"
        assert result.message == "1 of 2 grant(s) changed on h"
        assert len(result.details["grants"]) == 2

    @pytest.mark.asyncio
    async def test_empty(self, fake_client):
        assert await WmiPermissionService(fake_client).ensure_grants("h", []) is None
